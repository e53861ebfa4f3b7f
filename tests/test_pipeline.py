import asyncio

import httpx
import pytest

from conftest import (
    GROUP_URL,
    FakeClassifier,
    FakeSession,
    FlakyReviewQueue,
    SessionFactory,
    flyer_images,
    flyer_url,
    make_service,
    nav_timeout_session,
)
from showparser.credentials import CredentialBroker
from showparser.errors import ClassifierRejected, DuplicateRecord, PersistenceFailure
from showparser.extractor import VisionClassifier
from showparser.models import JobState, LogLevel
from showparser.pipeline import JobManager
from showparser.review import InMemoryReviewQueue


def _show(venue, day, dj):
    return ("show", {"venue": venue, "day": day, "time": "9pm", "dj": dj, "vendor": "Big Mic"}, 0.85)


TEN_IMAGE_ANSWERS = {
    flyer_url(0): _show("The Pub", "Friday", "DJ Ace"),
    flyer_url(1): _show("The Pub", "Friday", "DJ Ace"),
    flyer_url(2): _show("Rocky's", "Saturday", "DJ Bee"),
    flyer_url(3): ("venue", {"name": "Lucky Star", "phone": "555-0100"}, 0.7),
    flyer_url(4): ("dj", {"name": "DJ Cee"}, 0.9),
    flyer_url(5): ("vendor", {"name": "Big Mic", "website": "bigmic.example"}, 0.6),
    flyer_url(6): None,
    flyer_url(7): None,
    flyer_url(8): None,
    flyer_url(9): ClassifierRejected("unsupported image"),
}


def test_ten_image_end_to_end(session_store):
    session = FakeSession(images=flyer_images(10))
    reviews = InMemoryReviewQueue()
    service = make_service(
        session_store, SessionFactory(session), FakeClassifier(TEN_IMAGE_ANSWERS), reviews=reviews
    )

    job = asyncio.run(service.run_job(GROUP_URL))

    assert job.state == JobState.PENDING_REVIEW
    assert job.canonical_name == "Karaoke Nights Tampa"
    assert (job.image_count, job.skipped_images, job.irrelevant_images) == (10, 1, 3)
    assert job.dataset.counts() == {"vendors": 1, "djs": 3, "venues": 3, "shows": 2}
    assert job.finished_at is not None
    assert session.exited

    pending = asyncio.run(reviews.list_pending())
    assert [r.id for r in pending] == [job.record_id]
    record = pending[0]
    assert record.url == GROUP_URL
    assert record.canonical_name == "Karaoke Nights Tampa"
    assert record.stats["skipped_images"] == 1
    assert record.logs
    assert job.logs[-1].level == LogLevel.SUCCESS


def test_login_wall_fails_without_aggregation(session_store):
    session = FakeSession(images=flyer_images(3), login_wall=True)
    classifier = FakeClassifier()
    reviews = InMemoryReviewQueue()
    service = make_service(session_store, SessionFactory(session), classifier, reviews=reviews)

    job = asyncio.run(service.run_job(GROUP_URL))

    assert job.state == JobState.FAILED
    assert "Login required" in job.error
    assert job.dataset is None
    assert classifier.calls == []
    assert asyncio.run(reviews.list_pending()) == []
    assert session.exited
    assert any(e.level == LogLevel.ERROR for e in job.logs)


def test_navigation_timeout_fails_job(session_store):
    service = make_service(session_store, SessionFactory(nav_timeout_session()), FakeClassifier())
    job = asyncio.run(service.run_job(GROUP_URL))
    assert job.state == JobState.FAILED
    assert "Timed out" in job.error


def test_no_images_still_stores_empty_dataset(session_store):
    reviews = InMemoryReviewQueue()
    service = make_service(
        session_store, SessionFactory(FakeSession(images=[])), FakeClassifier(), reviews=reviews
    )

    job = asyncio.run(service.run_job(GROUP_URL))

    assert job.state == JobState.PENDING_REVIEW
    assert job.dataset.counts() == {"vendors": 0, "djs": 0, "venues": 0, "shows": 0}
    assert any("No flyer images" in e.message for e in job.logs)


def test_all_units_failing_still_completes(session_store):
    answers = {flyer_url(i): ClassifierRejected("nope") for i in range(3)}
    service = make_service(
        session_store, SessionFactory(FakeSession(images=flyer_images(3))), FakeClassifier(answers)
    )

    job = asyncio.run(service.run_job(GROUP_URL))

    assert job.state == JobState.PENDING_REVIEW
    assert job.skipped_images == 3


def test_persistence_failure_keeps_dataset_for_retry(session_store):
    reviews = FlakyReviewQueue(failures=1)
    service = make_service(
        session_store,
        SessionFactory(FakeSession(images=flyer_images(2))),
        FakeClassifier({flyer_url(0): _show("The Pub", "Friday", "DJ Ace")}),
        reviews=reviews,
    )

    async def scenario():
        with pytest.raises(PersistenceFailure) as exc:
            await service.run_job(GROUP_URL)
        job = exc.value.job
        failed_state = job.state
        assert exc.value.dataset is job.dataset
        await service.persist(job)
        return job, failed_state

    job, failed_state = asyncio.run(scenario())

    assert failed_state == JobState.FAILED
    assert job.state == JobState.PENDING_REVIEW
    assert job.error is None
    assert len(job.dataset.shows) == 1
    assert asyncio.run(reviews.get(job.record_id)).dataset == job.dataset


def test_persist_requires_retained_dataset(session_store):
    service = make_service(
        session_store, SessionFactory(FakeSession(login_wall=True)), FakeClassifier()
    )
    job = asyncio.run(service.run_job(GROUP_URL))
    with pytest.raises(ValueError):
        asyncio.run(service.persist(job))


def test_cancel_during_classification(session_store):
    session = FakeSession(images=flyer_images(8))
    cancel = asyncio.Event()

    class CancellingClassifier(FakeClassifier):
        async def classify(self, image_bytes, mime_type, source_image):
            cancel.set()
            return await super().classify(image_bytes, mime_type, source_image)

    reviews = InMemoryReviewQueue()
    service = make_service(session_store, SessionFactory(session), CancellingClassifier(), reviews=reviews)

    job = asyncio.run(service.run_job(GROUP_URL, cancel=cancel))

    assert job.state == JobState.CANCELLED
    assert session.exited
    assert asyncio.run(reviews.list_pending()) == []
    assert "cancelled during classifying" in job.logs[-1].message


def test_duplicate_url_fails_unless_allowed(session_store):
    reviews = InMemoryReviewQueue()
    factory = SessionFactory(*(FakeSession(images=flyer_images(1)) for _ in range(2)))
    service = make_service(session_store, factory, FakeClassifier(), reviews=reviews)

    async def scenario():
        first = await service.run_job(GROUP_URL)
        second = await service.run_job(GROUP_URL)
        third = await service.run_job(GROUP_URL, allow_duplicate=True)
        return first, second, third

    first, second, third = asyncio.run(scenario())

    assert first.state == JobState.PENDING_REVIEW
    assert second.state == JobState.FAILED
    assert "pending review record" in second.error
    assert third.state == JobState.PENDING_REVIEW
    assert len(factory.created) == 2


def test_interactive_login_retries_harvest_once(session_store):
    factory = SessionFactory(
        FakeSession(images=flyer_images(2), login_wall=True),
        FakeSession(login_wall=True),
        FakeSession(images=flyer_images(2)),
    )
    service = make_service(
        session_store,
        factory,
        FakeClassifier({flyer_url(0): _show("The Pub", "Friday", "DJ Ace")}),
        interactive_login=True,
        credential_timeout_seconds=5,
    )
    service.broker = CredentialBroker(service.channel)

    async def scenario():
        task = asyncio.create_task(service.run_job(GROUP_URL))
        while not service.broker.waiting:
            await asyncio.sleep(0.001)
        assert service.broker.submit("admin@example.com", "s3cret")
        return await task

    job = asyncio.run(asyncio.wait_for(scenario(), 5))

    assert job.state == JobState.PENDING_REVIEW
    assert len(factory.created) == 3
    assert all(s.exited for s in factory.created)
    assert not any("s3cret" in e.message for e in job.logs)


def test_interactive_login_times_out(session_store):
    service = make_service(
        session_store,
        SessionFactory(FakeSession(login_wall=True)),
        FakeClassifier(),
        interactive_login=True,
        credential_timeout_seconds=0.01,
    )
    service.broker = CredentialBroker(service.channel)

    job = asyncio.run(service.run_job(GROUP_URL))

    assert job.state == JobState.FAILED
    assert "no credentials" in job.error


def test_job_timeout_fails_and_closes_browser(session_store):
    class StuckClassifier:
        async def classify(self, image_bytes, mime_type, source_image):
            await asyncio.sleep(10)

    session = FakeSession(images=flyer_images(1))
    service = make_service(
        session_store, SessionFactory(session), StuckClassifier(), job_timeout_seconds=0.05
    )

    job = asyncio.run(service.run_job(GROUP_URL))

    assert job.state == JobState.FAILED
    assert "timed out" in job.error
    assert session.exited


def test_job_manager_submit_cancel_and_list(session_store):
    class SlowClassifier:
        async def classify(self, image_bytes, mime_type, source_image):
            await asyncio.sleep(0.02)

    factory = SessionFactory(*(FakeSession(images=flyer_images(20)) for _ in range(2)))
    service = make_service(session_store, factory, SlowClassifier())
    manager = JobManager(service)

    async def scenario():
        job = manager.submit(GROUP_URL)
        assert job.state == JobState.PENDING
        with pytest.raises(DuplicateRecord) as exc:
            manager.submit(GROUP_URL + "  ")
        while job.state != JobState.CLASSIFYING:
            await asyncio.sleep(0.001)
        assert manager.cancel(job.id)
        await manager.shutdown()
        assert not manager.cancel(job.id)
        other = await manager.run("https://www.facebook.com/groups/other")
        return job, other, exc.value

    job, other, error = asyncio.run(asyncio.wait_for(scenario(), 10))

    assert error.existing_id == job.id
    assert job.state == JobState.CANCELLED
    assert other.state == JobState.PENDING_REVIEW
    assert [j.id for j in manager.list()] == [other.id, job.id]
    assert manager.get(job.id) is job
    assert manager.get("missing") is None


def test_malformed_model_content_does_not_fail_job(session_store):
    def handler(request):
        return httpx.Response(200, json={"choices": [{"message": {"content": {"relevant": True}}}]})

    classifier = VisionClassifier(
        base_url="http://llm.test/v1",
        model="vision",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    service = make_service(
        session_store, SessionFactory(FakeSession(images=flyer_images(3))), classifier
    )

    job = asyncio.run(service.run_job(GROUP_URL))

    assert job.state == JobState.PENDING_REVIEW
    assert job.irrelevant_images == 3
    assert job.dataset.counts() == {"vendors": 0, "djs": 0, "venues": 0, "shows": 0}
