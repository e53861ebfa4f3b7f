from pathlib import Path
import sys

sys.path.append(str(Path(__file__).resolve().parents[1]))

import httpx
import pytest

from showparser.errors import NavigationTimeout, PersistenceFailure
from showparser.logchannel import LogChannel
from showparser.models import CandidateKind, ExtractionCandidate
from showparser.orchestrator import ClassificationOrchestrator
from showparser.pipeline import ParseService
from showparser.review import InMemoryReviewQueue
from showparser.scraper import (
    COLLECT_IMAGES_JS,
    COUNT_IMAGES_JS,
    HEADER_TEXT_JS,
    LOGIN_PROBE_JS,
    BrowserHarvester,
)
from showparser.session_store import FileSessionStore

JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 64

GROUP_URL = "https://www.facebook.com/groups/karaoke-nights"


def flyer_url(i: int) -> str:
    return f"https://scontent.xx.fbcdn.net/v/t39/flyer-{i}.jpg"


def flyer_images(n: int) -> list[dict]:
    return [{"src": flyer_url(i), "width": 800, "height": 1000} for i in range(n)]


class FakeSession:
    """In-memory stand-in for a Playwright page."""

    def __init__(
        self,
        *,
        images=None,
        header_text="(2) Karaoke Nights Tampa | Facebook\nHome",
        login_wall=False,
        login_succeeds=True,
        nav_error=None,
        counts=None,
    ):
        self.images = images if images is not None else []
        self.header_text = header_text
        self.login_wall = login_wall
        self.login_succeeds = login_succeeds
        self.nav_error = nav_error
        self.counts = list(counts) if counts else None
        self.entered = False
        self.exited = False
        self.gotos: list[str] = []
        self.added_cookies: list[dict] = []
        self.filled: dict[str, str] = {}
        self._url = "about:blank"

    async def __aenter__(self):
        self.entered = True
        return self

    async def __aexit__(self, *exc):
        self.exited = True

    @property
    def url(self) -> str:
        return self._url

    async def add_cookies(self, cookies):
        self.added_cookies.extend(cookies)

    async def cookies(self):
        return [{"name": "c_user", "value": "42", "domain": ".facebook.com", "path": "/", "expires": -1}]

    async def goto(self, url, timeout_seconds):
        self.gotos.append(url)
        if self.nav_error is not None:
            raise self.nav_error
        self._url = url

    async def evaluate(self, script, arg=None):
        if script == LOGIN_PROBE_JS:
            return {
                "hasLoginForm": self.login_wall,
                "hasEmailInput": self.login_wall,
                "hasPasswordInput": self.login_wall,
                "hasUserNav": not self.login_wall,
            }
        if script == HEADER_TEXT_JS:
            return self.header_text
        if script == COUNT_IMAGES_JS:
            if self.counts:
                return self.counts.pop(0)
            return len(self.images)
        if script == COLLECT_IMAGES_JS:
            return self.images
        return None

    async def click_if_visible(self, selector):
        return False

    async def fill(self, selector, value):
        self.filled[selector] = value

    async def submit(self, selector, timeout_seconds):
        if self.login_succeeds:
            self.login_wall = False
            self._url = "https://www.facebook.com/"


class SessionFactory:
    """Hands out prepared sessions in order and remembers them."""

    def __init__(self, *sessions):
        self._queue = list(sessions)
        self.created: list[FakeSession] = []

    def __call__(self):
        session = self._queue.pop(0) if self._queue else FakeSession()
        self.created.append(session)
        return session


class FakeClassifier:
    """
    Answers keyed by image URL: ``(kind, fields, confidence)``, ``None`` for
    not relevant, an exception to raise, or a list consumed one per call.
    """

    def __init__(self, answers=None):
        self.answers = dict(answers or {})
        self.calls: list[str] = []

    async def classify(self, image_bytes, mime_type, source_image):
        self.calls.append(source_image.url)
        answer = self.answers.get(source_image.url)
        if isinstance(answer, list):
            answer = answer.pop(0)
        if isinstance(answer, BaseException):
            raise answer
        if answer is None:
            return None
        kind, fields, confidence = answer
        return ExtractionCandidate(
            kind=CandidateKind(kind), fields=fields, confidence=confidence, source_image=source_image
        )


def image_transport(broken: tuple[str, ...] = ()) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if any(part in str(request.url) for part in broken):
            return httpx.Response(404)
        return httpx.Response(200, content=JPEG_BYTES, headers={"content-type": "image/jpeg"})

    return httpx.MockTransport(handler)


@pytest.fixture
def session_store(tmp_path):
    return FileSessionStore(tmp_path / "cookies.json", required_cookies=["c_user"])


def make_harvester(session_store, factory, **overrides):
    kwargs = dict(session_factory=factory, scroll_cycles=3, scroll_wait_seconds=0)
    kwargs.update(overrides)
    return BrowserHarvester(session_store, **kwargs)


def make_orchestrator(classifier, broken: tuple[str, ...] = (), **overrides):
    kwargs = dict(
        http_client=httpx.AsyncClient(transport=image_transport(broken)),
        max_workers=4,
        max_attempts=3,
        backoff_seconds=0,
        attempt_timeout_seconds=5,
    )
    kwargs.update(overrides)
    return ClassificationOrchestrator(classifier, **kwargs)


def make_service(session_store, factory, classifier, *, reviews=None, broken=(), **overrides):
    return ParseService(
        make_harvester(session_store, factory),
        make_orchestrator(classifier, broken),
        reviews if reviews is not None else InMemoryReviewQueue(),
        LogChannel(),
        **overrides,
    )


def nav_timeout_session():
    return FakeSession(nav_error=NavigationTimeout("Timed out loading page"))


class FlakyReviewQueue(InMemoryReviewQueue):
    """Fails the first *failures* saves like an unreachable database."""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    async def create_pending(self, job, dataset, *, allow_duplicate=False):
        if self.failures:
            self.failures -= 1
            raise PersistenceFailure("database unavailable")
        return await super().create_pending(job, dataset, allow_duplicate=allow_duplicate)
