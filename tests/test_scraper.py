import asyncio

import pytest

from conftest import (
    GROUP_URL,
    FakeSession,
    SessionFactory,
    flyer_images,
    flyer_url,
    make_harvester,
    nav_timeout_session,
)
from showparser.errors import AuthRequired, JobCancelled, NavigationTimeout
from showparser.logchannel import JobLog
from showparser.scraper import Credentials, filter_image_sources, is_login_url, media_url

CDN = ["scontent", "fbcdn", "cdninstagram"]


def test_media_url():
    assert media_url("https://www.facebook.com/groups/abc/") == "https://www.facebook.com/groups/abc/media"
    assert media_url("https://www.facebook.com/groups/abc?ref=share") == "https://www.facebook.com/groups/abc/media"
    assert media_url("https://www.facebook.com/page/photos") == "https://www.facebook.com/page/photos"


def test_is_login_url():
    assert is_login_url("https://www.facebook.com/login/?next=x")
    assert is_login_url("https://www.facebook.com/checkpoint/123")
    assert not is_login_url("https://www.facebook.com/groups/loginless-karaoke")


def test_filter_keeps_cdn_flyers_and_drops_ui_images():
    sources = [
        {"src": flyer_url(0), "width": 800, "height": 800},
        {"src": "https://static.xx.fbcdn.net/rsrc.php/emoji/heart.png", "width": 16, "height": 16},
        {"src": "https://scontent.xx.fbcdn.net/v/profile_pic.jpg", "width": 0, "height": 0},
        {"src": "https://example.com/ad.jpg", "width": 800, "height": 800},
        {"src": flyer_url(1), "width": 90, "height": 400},
        {"src": flyer_url(2), "width": 0, "height": 0},
        {"src": flyer_url(0), "width": 800, "height": 800},
        {"src": "data:image/png;base64,AAAA", "width": 800, "height": 800},
    ]
    refs = filter_image_sources(sources, cdn_patterns=CDN)
    assert [r.url for r in refs] == [flyer_url(0), flyer_url(2)]
    assert [r.ordinal for r in refs] == [0, 1]


def test_filter_caps_at_max_images():
    refs = filter_image_sources(flyer_images(300), cdn_patterns=CDN, max_images=200)
    assert len(refs) == 200
    assert refs[-1].url == flyer_url(199)


def test_harvest_collects_images_and_header(session_store):
    session = FakeSession(images=flyer_images(4), counts=[2, 3, 4])
    harvester = make_harvester(session_store, SessionFactory(session))
    log = JobLog()

    result = asyncio.run(harvester.harvest(GROUP_URL, log))

    assert result.image_urls == [flyer_url(i) for i in range(4)]
    assert "Karaoke Nights Tampa" in result.header_text
    assert session.gotos == [GROUP_URL + "/media"]
    assert session.exited
    assert harvester.active_sessions == 0
    messages = [e.message for e in log.entries]
    assert "Scroll 1/3: 2 images (+2)" in messages
    assert "Scroll 3/3: 4 images (+1)" in messages
    # Cookies from a good session are written back.
    assert asyncio.run(session_store.load())[0]["name"] == "c_user"


def test_stored_cookies_are_loaded_into_the_browser(session_store):
    asyncio.run(session_store.save([{"name": "xs", "value": "1", "expires": -1}]))
    session = FakeSession(images=flyer_images(1))
    harvester = make_harvester(session_store, SessionFactory(session))

    asyncio.run(harvester.harvest(GROUP_URL, JobLog()))

    assert [c["name"] for c in session.added_cookies] == ["xs"]


def test_login_wall_raises_and_closes_browser(session_store):
    session = FakeSession(images=flyer_images(3), login_wall=True)
    harvester = make_harvester(session_store, SessionFactory(session))

    with pytest.raises(AuthRequired):
        asyncio.run(harvester.harvest(GROUP_URL, JobLog()))
    assert session.exited
    assert harvester.active_sessions == 0


def test_navigation_timeout_is_fatal(session_store):
    session = nav_timeout_session()
    harvester = make_harvester(session_store, SessionFactory(session))

    with pytest.raises(NavigationTimeout):
        asyncio.run(harvester.harvest(GROUP_URL, JobLog()))
    assert session.exited


def test_cancel_between_scroll_cycles(session_store):
    session = FakeSession(images=flyer_images(3))
    harvester = make_harvester(session_store, SessionFactory(session))

    async def scenario():
        cancel = asyncio.Event()
        cancel.set()
        await harvester.harvest(GROUP_URL, JobLog(), cancel)

    with pytest.raises(JobCancelled):
        asyncio.run(scenario())
    assert session.exited


def test_sessions_never_overlap(session_store):
    sessions = [FakeSession(images=flyer_images(2)) for _ in range(3)]
    factory = SessionFactory(*sessions)
    harvester = make_harvester(session_store, factory, scroll_wait_seconds=0.01)
    peak = []

    async def watch():
        for _ in range(50):
            peak.append(harvester.active_sessions)
            await asyncio.sleep(0.002)

    async def scenario():
        await asyncio.gather(
            watch(),
            *(harvester.harvest(GROUP_URL, JobLog()) for _ in range(3)),
        )

    asyncio.run(scenario())
    assert max(peak) == 1
    assert all(s.exited for s in sessions)


def test_login_saves_session_and_discards_secret(session_store):
    session = FakeSession(login_wall=True)
    harvester = make_harvester(session_store, SessionFactory(session))
    credentials = Credentials(identifier="admin@example.com", secret="hunter2")
    log = JobLog()

    asyncio.run(harvester.login(credentials, log))

    assert credentials.secret == ""
    assert asyncio.run(session_store.load())
    assert not any("hunter2" in e.message for e in log.entries)
    assert "hunter2" not in repr(credentials)


def test_failed_login_raises(session_store):
    session = FakeSession(login_wall=True, login_succeeds=False)
    harvester = make_harvester(session_store, SessionFactory(session))
    credentials = Credentials(identifier="admin@example.com", secret="wrong")

    with pytest.raises(AuthRequired):
        asyncio.run(harvester.login(credentials, JobLog()))
    assert credentials.secret == ""
    assert asyncio.run(session_store.load()) is None


def test_login_cancelled_while_waiting_for_browser_discards_secret(session_store):
    factory = SessionFactory(FakeSession(images=flyer_images(2)), FakeSession(login_wall=True))
    harvester = make_harvester(session_store, factory, scroll_wait_seconds=0.05)
    credentials = Credentials(identifier="admin@example.com", secret="hunter2")

    async def scenario():
        harvest = asyncio.create_task(harvester.harvest(GROUP_URL, JobLog()))
        await asyncio.sleep(0)
        login = asyncio.create_task(harvester.login(credentials, JobLog()))
        await asyncio.sleep(0.01)
        login.cancel()
        with pytest.raises(asyncio.CancelledError):
            await login
        await harvest

    asyncio.run(scenario())
    assert credentials.secret == ""
    assert len(factory.created) == 1
