"""Harvest flyer image URLs and header text from a social events page.

One browser, one page, one job at a time: the harvester serializes every
session behind a lock so the scraping identity never drives two browsers at
once.
"""

import asyncio
import logging
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from showparser.errors import (
    AuthRequired,
    HarvestFailed,
    JobCancelled,
    NavigationTimeout,
    SessionStoreError,
)
from showparser.logchannel import JobLog
from showparser.models import ImageRef

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0 Safari/537.36"
)
DEFAULT_VIEWPORT = {"width": 1920, "height": 1080}

# Substrings marking profile pictures and UI chrome rather than posted flyers.
UI_IMAGE_MARKERS = ("profile", "avatar", "icon", "emoji", "reaction")

# ---------------------------------------------------------------------------
# Page scripts
# ---------------------------------------------------------------------------

LOGIN_PROBE_JS = """() => ({
    hasLoginForm: !!document.querySelector('#login_form, form[action*="login"]'),
    hasEmailInput: !!document.querySelector('#email, input[name="email"]'),
    hasPasswordInput: !!document.querySelector('#pass, input[type="password"]'),
    hasUserNav: !!document.querySelector('[role="navigation"]'),
})"""

HEADER_TEXT_JS = """() => {
    const selectors = [
        'h1',
        '[data-pagelet="GroupHeader"]',
        '[data-pagelet="GroupsRHCHeader"]',
        '[data-testid="group_name"]',
        '[role="banner"]',
        'header',
    ];
    const texts = [];
    for (const selector of selectors) {
        const el = document.querySelector(selector);
        const text = el && el.innerText ? el.innerText.trim() : '';
        if (text && text.length < 200) texts.push(text);
    }
    document.querySelectorAll('h1, h2, h3').forEach((el) => {
        const text = el.innerText ? el.innerText.trim() : '';
        if (text && text.length < 100) texts.push(text);
    });
    if (document.title) texts.push(document.title.trim());
    return [...new Set(texts)].join('\\n');
}"""

SCROLL_JS = """() => { window.scrollBy(0, window.innerHeight * 0.8); }"""

ZOOM_OUT_JS = """() => { document.body.style.zoom = '0.5'; }"""

COUNT_IMAGES_JS = """(patterns) => {
    const imgs = Array.from(document.querySelectorAll('img'));
    return imgs.filter((img) => {
        const src = img.currentSrc || img.src || img.getAttribute('data-src') || '';
        return patterns.some((p) => src.includes(p));
    }).length;
}"""

COLLECT_IMAGES_JS = """() => Array.from(document.querySelectorAll('img')).map((img) => ({
    src: img.currentSrc || img.src || img.getAttribute('data-src') || '',
    width: img.naturalWidth || img.width || 0,
    height: img.naturalHeight || img.height || 0,
}))"""

DIALOG_DISMISS_SELECTORS = (
    'div[role="dialog"] [aria-label="Not now"]',
    'div[role="dialog"] [aria-label="Not Now"]',
    'div[role="dialog"] [aria-label="Close"]',
    'div[role="dialog"] [aria-label="Decline optional cookies"]',
    'button[data-cookiebanner="accept_only_essential_button"]',
    '[data-testid="cookie-policy-banner-decline"]',
)

LOGIN_EMAIL_SELECTOR = '#email, input[name="email"]'
LOGIN_PASSWORD_SELECTOR = '#pass, input[type="password"]'
LOGIN_SUBMIT_SELECTOR = '[name="login"], button[type="submit"]'


# ---------------------------------------------------------------------------
# Browser session contract
# ---------------------------------------------------------------------------


class BrowserSession(Protocol):
    """The slice of a browser page the harvester needs.

    Used as an async context manager: entering launches the browser, exiting
    must close it whatever happened in between.
    """

    async def __aenter__(self) -> "BrowserSession": ...

    async def __aexit__(self, *exc: Any) -> None: ...

    @property
    def url(self) -> str: ...

    async def add_cookies(self, cookies: list[dict]) -> None: ...

    async def cookies(self) -> list[dict]: ...

    async def goto(self, url: str, timeout_seconds: float) -> None: ...

    async def evaluate(self, script: str, arg: Any = None) -> Any: ...

    async def click_if_visible(self, selector: str) -> bool: ...

    async def fill(self, selector: str, value: str) -> None: ...

    async def submit(self, selector: str, timeout_seconds: float) -> None: ...


class PlaywrightSession:
    """Chromium page driven through Playwright's async API."""

    def __init__(
        self,
        *,
        headless: bool = True,
        user_agent: str = DEFAULT_USER_AGENT,
        viewport: Optional[dict] = None,
    ) -> None:
        self._headless = headless
        self._user_agent = user_agent
        self._viewport = viewport or DEFAULT_VIEWPORT
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    async def __aenter__(self) -> "PlaywrightSession":
        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._playwright.chromium.launch(
                headless=self._headless,
                args=["--no-sandbox", "--disable-dev-shm-usage"],
            )
            self._context = await self._browser.new_context(
                viewport=self._viewport, user_agent=self._user_agent
            )
            self._page = await self._context.new_page()
        except BaseException:
            await self._shutdown()
            raise
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self._shutdown()

    async def _shutdown(self) -> None:
        try:
            if self._context is not None:
                await self._context.close()
            if self._browser is not None:
                await self._browser.close()
        finally:
            if self._playwright is not None:
                await self._playwright.stop()
            self._page = self._context = self._browser = self._playwright = None

    @property
    def url(self) -> str:
        return self._page.url if self._page is not None else ""

    async def add_cookies(self, cookies: list[dict]) -> None:
        await self._context.add_cookies(cookies)

    async def cookies(self) -> list[dict]:
        return await self._context.cookies()

    async def goto(self, url: str, timeout_seconds: float) -> None:
        try:
            await self._page.goto(url, wait_until="networkidle", timeout=timeout_seconds * 1000)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(f"Navigation to {url} timed out after {timeout_seconds:.0f}s") from e

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if arg is None:
            return await self._page.evaluate(script)
        return await self._page.evaluate(script, arg)

    async def click_if_visible(self, selector: str) -> bool:
        locator = self._page.locator(selector).first
        try:
            if await locator.is_visible():
                await locator.click(timeout=2000)
                return True
        except PlaywrightError:
            return False
        return False

    async def fill(self, selector: str, value: str) -> None:
        await self._page.locator(selector).first.fill(value, timeout=10_000)

    async def submit(self, selector: str, timeout_seconds: float) -> None:
        await self._page.locator(selector).first.click(timeout=10_000)
        try:
            await self._page.wait_for_load_state("networkidle", timeout=timeout_seconds * 1000)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout("Login did not finish loading in time") from e


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def media_url(url: str) -> str:
    """Point a group/page URL at its media tab, where the flyers are."""
    url = url.strip()
    base = url.split("?", 1)[0].rstrip("/")
    if "/media" in base or "/photos" in base:
        return url
    return f"{base}/media"


def filter_image_sources(
    sources: list[dict],
    *,
    cdn_patterns: list[str],
    max_images: int = 200,
    min_dimension: int = 100,
) -> list[ImageRef]:
    """
    Keep content-delivery-network flyer images, drop UI chrome, dedupe and cap.

    Each source is ``{"src": str, "width": int, "height": int}``; a width or
    height of 0 means "unknown" and does not disqualify the image.
    """
    seen: set[str] = set()
    refs: list[ImageRef] = []
    for item in sources:
        src = (item.get("src") or "").strip()
        if not src.startswith("http") or src in seen:
            continue
        if not any(pattern in src for pattern in cdn_patterns):
            continue
        lowered = src.lower()
        if any(marker in lowered for marker in UI_IMAGE_MARKERS):
            continue
        width = int(item.get("width") or 0)
        height = int(item.get("height") or 0)
        if (width and width <= min_dimension) or (height and height <= min_dimension):
            continue
        seen.add(src)
        refs.append(ImageRef(url=src, ordinal=len(refs)))
        if len(refs) >= max_images:
            break
    return refs


def is_login_url(url: str) -> bool:
    return bool(re.search(r"/(login|checkpoint)(\b|/|\.php)", url or ""))


# ---------------------------------------------------------------------------
# Harvester
# ---------------------------------------------------------------------------


@dataclass
class HarvestResult:
    image_refs: list[ImageRef] = field(default_factory=list)
    header_text: str = ""

    @property
    def image_urls(self) -> list[str]:
        return [ref.url for ref in self.image_refs]


@dataclass
class Credentials:
    """Login secret handed over once by an admin. Never logged."""

    identifier: str
    secret: str = field(repr=False)

    def discard(self) -> None:
        self.secret = ""


class BrowserHarvester:
    def __init__(
        self,
        session_store,
        *,
        session_factory: Optional[Callable[[], BrowserSession]] = None,
        cdn_patterns: Optional[list[str]] = None,
        scroll_cycles: int = 5,
        scroll_wait_seconds: float = 3.0,
        navigation_timeout_seconds: float = 30.0,
        max_images: int = 200,
        min_image_dimension: int = 100,
        login_url: str = "https://www.facebook.com/login",
        headless: bool = True,
    ) -> None:
        self._session_store = session_store
        self._session_factory = session_factory or (lambda: PlaywrightSession(headless=headless))
        self._cdn_patterns = cdn_patterns or ["scontent", "fbcdn", "cdninstagram"]
        self._scroll_cycles = scroll_cycles
        self._scroll_wait = scroll_wait_seconds
        self._nav_timeout = navigation_timeout_seconds
        self._max_images = max_images
        self._min_dimension = min_image_dimension
        self._login_url = login_url
        self._lock = asyncio.Lock()
        self._active_sessions = 0

    @classmethod
    def from_settings(cls, settings, session_store, **overrides) -> "BrowserHarvester":
        kwargs = dict(
            cdn_patterns=settings.cdn_patterns,
            scroll_cycles=settings.scroll_cycles,
            scroll_wait_seconds=settings.scroll_wait_seconds,
            navigation_timeout_seconds=settings.navigation_timeout_seconds,
            max_images=settings.max_images,
            min_image_dimension=settings.min_image_dimension,
            login_url=settings.login_url,
            headless=settings.browser_headless,
        )
        kwargs.update(overrides)
        return cls(session_store, **kwargs)

    @property
    def session_store(self):
        return self._session_store

    @property
    def active_sessions(self) -> int:
        """Browsers currently open; 0 whenever no job is harvesting."""
        return self._active_sessions

    async def harvest(
        self,
        url: str,
        log: JobLog,
        cancel: Optional[asyncio.Event] = None,
    ) -> HarvestResult:
        """
        Load *url* in a fresh browser and collect flyer image URLs.

        Raises:
            AuthRequired: the page is behind a login wall.
            NavigationTimeout: the page did not load in time.
            JobCancelled: *cancel* fired between scroll cycles.
            HarvestFailed: any other browser failure.
        """
        if self._lock.locked():
            log.info("Waiting for the browser session held by another job...")
        async with self._lock:
            return await self._run_session(self._harvest_in, log, url, log, cancel)

    async def login(self, credentials: Credentials, log: JobLog) -> None:
        """Sign in with one-time credentials and store the resulting session."""
        try:
            async with self._lock:
                await self._run_session(self._login_in, log, credentials, log)
        finally:
            credentials.discard()

    async def _run_session(self, body, log: JobLog, *args):
        log.info("Launching browser...")
        try:
            async with self._session_factory() as session:
                self._active_sessions += 1
                try:
                    return await body(session, *args)
                finally:
                    self._active_sessions -= 1
                    log.info("Closing browser...")
        except (AuthRequired, NavigationTimeout, JobCancelled):
            raise
        except PlaywrightError as e:
            raise HarvestFailed(f"Browser error: {e}") from e

    async def _harvest_in(
        self,
        session: BrowserSession,
        url: str,
        log: JobLog,
        cancel: Optional[asyncio.Event],
    ) -> HarvestResult:
        cookies = await self._session_store.load()
        if cookies:
            await session.add_cookies(cookies)
            log.info(f"Loaded {len(cookies)} session cookies")
        else:
            log.warning("No saved session cookies found")

        target = media_url(url)
        log.info(f"Navigating to: {target}")
        await session.goto(target, self._nav_timeout)
        await self._dismiss_dialogs(session, log)

        if await self._is_login_wall(session):
            log.error("Login wall detected - credentials required")
            raise AuthRequired(f"Login required to view {target}")
        log.success("Session is logged in")
        await self._refresh_session(session, log)

        header_text = await session.evaluate(HEADER_TEXT_JS) or ""
        log.info(f"Extracted {len(header_text)} chars of header text")

        await session.evaluate(ZOOM_OUT_JS)
        previous = 0
        for cycle in range(1, self._scroll_cycles + 1):
            if cancel is not None and cancel.is_set():
                raise JobCancelled("Cancelled while scrolling")
            await session.evaluate(SCROLL_JS)
            await asyncio.sleep(self._scroll_wait)
            count = int(await session.evaluate(COUNT_IMAGES_JS, self._cdn_patterns) or 0)
            log.info(f"Scroll {cycle}/{self._scroll_cycles}: {count} images (+{count - previous})")
            previous = count

        sources = await session.evaluate(COLLECT_IMAGES_JS) or []
        refs = filter_image_sources(
            sources,
            cdn_patterns=self._cdn_patterns,
            max_images=self._max_images,
            min_dimension=self._min_dimension,
        )
        log.success(f"Harvested {len(refs)} flyer images from {len(sources)} <img> elements")
        return HarvestResult(image_refs=refs, header_text=header_text)

    async def _login_in(self, session: BrowserSession, credentials: Credentials, log: JobLog) -> None:
        log.info("Opening login page...")
        await session.goto(self._login_url, self._nav_timeout)
        await self._dismiss_dialogs(session, log)
        await session.fill(LOGIN_EMAIL_SELECTOR, credentials.identifier)
        await session.fill(LOGIN_PASSWORD_SELECTOR, credentials.secret)
        log.info("Submitting credentials...")
        await session.submit(LOGIN_SUBMIT_SELECTOR, self._nav_timeout)

        if await self._is_login_wall(session):
            log.error("Login failed - still on the login page")
            raise AuthRequired("Login failed")
        await self._session_store.save(await session.cookies())
        log.success("Login successful, session saved")

    async def _is_login_wall(self, session: BrowserSession) -> bool:
        if is_login_url(session.url):
            return True
        probe = await session.evaluate(LOGIN_PROBE_JS) or {}
        if probe.get("hasPasswordInput") or probe.get("hasLoginForm"):
            return True
        return bool(probe.get("hasEmailInput")) and not probe.get("hasUserNav")

    async def _dismiss_dialogs(self, session: BrowserSession, log: JobLog) -> None:
        closed = 0
        for selector in DIALOG_DISMISS_SELECTORS:
            if await session.click_if_visible(selector):
                closed += 1
        if closed:
            log.info(f"Dismissed {closed} popup(s)")

    async def _refresh_session(self, session: BrowserSession, log: JobLog) -> None:
        try:
            await self._session_store.save(await session.cookies())
        except (SessionStoreError, PlaywrightError) as e:
            log.warning(f"Could not refresh stored session: {e}")


async def main() -> None:
    """CLI: harvest a page and print the image URLs."""
    if len(sys.argv) < 2:
        print("Usage: python -m showparser.scraper <url>")
        print('Example: python -m showparser.scraper "https://www.facebook.com/groups/123456"')
        sys.exit(1)

    from showparser.config import settings
    from showparser.resolver import resolve_name
    from showparser.session_store import FileSessionStore

    store = FileSessionStore(
        settings.session_cookies_path,
        env_cookies=settings.session_cookies_json,
        timeout_seconds=settings.session_store_timeout_seconds,
    )
    harvester = BrowserHarvester.from_settings(settings, store)
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    log = JobLog()

    result = await harvester.harvest(sys.argv[1], log)
    print("\n" + "=" * 60)
    print(f"HARVEST RESULT: {resolve_name(result.header_text)}")
    print("=" * 60)
    for ref in result.image_refs:
        print(f"  {ref.ordinal:>3}. {ref.url[:120]}")


if __name__ == "__main__":
    asyncio.run(main())
