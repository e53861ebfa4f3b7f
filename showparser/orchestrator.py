"""Bounded-concurrency download + classify over harvested images.

Each image is an independent unit of work. A unit that fails (download error,
classifier outage past the retry budget, rejected input) is logged and
skipped; the batch always runs to completion unless cancelled.
"""

import asyncio
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Optional, Protocol

import httpx

from showparser.errors import ClassifierUnavailable, DownloadFailed, UnitError
from showparser.logchannel import JobLog
from showparser.models import ExtractionCandidate, ImageRef

logger = logging.getLogger(__name__)

_MAGIC_MIME = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


class ImageClassifier(Protocol):
    async def classify(
        self, image_bytes: bytes, mime_type: str, source_image: ImageRef
    ) -> Optional[ExtractionCandidate]: ...


def large_scale_url(url: str) -> str:
    """Strip CDN thumbnail sizing so the full-resolution flyer is fetched."""
    if "scontent" in url or "fbcdn" in url:
        large = re.sub(r"([?&])stp=[^&]*&?", r"\1", url)
        large = re.sub(r"/[sp]\d+x\d+/", "/", large)
        large = re.sub(r"[?&](w|width)=\d+&(h|height)=\d+", "", large)
        large = re.sub(r"&&+", "&", large)
        large = large.replace("?&", "?").rstrip("&?")
        return large
    if "cdninstagram" in url:
        return re.sub(r"/s\d+x\d+/", "/", url)
    return url


def sniff_mime_type(data: bytes, header: Optional[str] = None) -> str:
    if header:
        mime = header.split(";", 1)[0].strip().lower()
        if mime.startswith("image/"):
            return mime
    for magic, mime in _MAGIC_MIME:
        if data.startswith(magic):
            return mime
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


@dataclass
class UnitResult:
    ref: ImageRef
    candidate: Optional[ExtractionCandidate] = None
    error: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.error is not None


@dataclass
class ClassificationOutcome:
    candidates: list[ExtractionCandidate] = field(default_factory=list)
    processed: int = 0
    skipped: int = 0
    irrelevant: int = 0
    not_started: int = 0
    errors: dict[str, str] = field(default_factory=dict)


class ClassificationOrchestrator:
    def __init__(
        self,
        classifier: ImageClassifier,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        max_workers: Optional[int] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        attempt_timeout_seconds: float = 60.0,
        download_timeout_seconds: float = 10.0,
        max_image_bytes: int = 10 * 1024 * 1024,
    ) -> None:
        self._classifier = classifier
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=download_timeout_seconds, follow_redirects=True
        )
        self.max_workers = max(1, max_workers or os.cpu_count() or 4)
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff_seconds
        self._attempt_timeout = attempt_timeout_seconds
        self._max_image_bytes = max_image_bytes

    @classmethod
    def from_settings(
        cls, settings, classifier: ImageClassifier, http_client: Optional[httpx.AsyncClient] = None
    ) -> "ClassificationOrchestrator":
        return cls(
            classifier,
            http_client=http_client,
            max_workers=settings.max_workers,
            max_attempts=settings.classifier_max_attempts,
            backoff_seconds=settings.classifier_backoff_seconds,
            attempt_timeout_seconds=settings.classifier_timeout_seconds,
            download_timeout_seconds=settings.download_timeout_seconds,
            max_image_bytes=settings.max_image_bytes,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def run(
        self,
        image_refs: list[ImageRef],
        log: JobLog,
        cancel: Optional[asyncio.Event] = None,
    ) -> list[ExtractionCandidate]:
        outcome = await self.run_with_stats(image_refs, log, cancel)
        return outcome.candidates

    async def run_with_stats(
        self,
        image_refs: list[ImageRef],
        log: JobLog,
        cancel: Optional[asyncio.Event] = None,
    ) -> ClassificationOutcome:
        """
        Classify every image with at most ``max_workers`` units in flight.

        When *cancel* fires, workers stop taking new units; units already in
        flight run to completion (or their attempt timeout).
        """
        cancel = cancel or asyncio.Event()
        total = len(image_refs)
        tasks: asyncio.Queue[ImageRef] = asyncio.Queue()
        for ref in image_refs:
            tasks.put_nowait(ref)
        results: asyncio.Queue[UnitResult] = asyncio.Queue()

        workers = min(self.max_workers, total)
        log.info(f"Classifying {total} images with {workers} workers")
        progress = _Progress(total, log)

        async def worker() -> None:
            while not cancel.is_set():
                try:
                    ref = tasks.get_nowait()
                except asyncio.QueueEmpty:
                    return
                result = await self._process(ref)
                progress.report(result)
                results.put_nowait(result)

        await asyncio.gather(*(worker() for _ in range(workers)))

        outcome = ClassificationOutcome(not_started=tasks.qsize())
        while not results.empty():
            result = results.get_nowait()
            outcome.processed += 1
            if result.skipped:
                outcome.skipped += 1
                outcome.errors[result.ref.url] = result.error
            elif result.candidate is None:
                outcome.irrelevant += 1
            else:
                outcome.candidates.append(result.candidate)

        if outcome.not_started:
            log.warning(f"Cancelled: {outcome.not_started} images were not classified")
        log.info(
            f"Classification done: {len(outcome.candidates)} candidates, "
            f"{outcome.irrelevant} not relevant, {outcome.skipped} skipped"
        )
        return outcome

    async def _process(self, ref: ImageRef) -> UnitResult:
        try:
            data, mime_type = await self._download(ref.url)
            candidate = await self._classify_with_retry(data, mime_type, ref)
        except UnitError as e:
            return UnitResult(ref=ref, error=f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception("Unexpected failure classifying %s", ref.url[:80])
            return UnitResult(ref=ref, error=f"{type(e).__name__}: {e}")
        return UnitResult(ref=ref, candidate=candidate)

    async def _download(self, url: str) -> tuple[bytes, str]:
        """Fetch the full-size image, falling back to the URL as harvested."""
        urls = [large_scale_url(url)]
        if urls[0] != url:
            urls.append(url)
        last_error = ""
        for candidate_url in urls:
            try:
                resp = await self._http.get(candidate_url)
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
                continue
            if resp.status_code != 200:
                last_error = f"HTTP {resp.status_code}"
                continue
            if len(resp.content) > self._max_image_bytes:
                raise DownloadFailed(f"Image too large ({len(resp.content)} bytes)")
            if not resp.content:
                last_error = "empty body"
                continue
            return resp.content, sniff_mime_type(resp.content, resp.headers.get("content-type"))
        raise DownloadFailed(last_error or "download failed")

    async def _classify_with_retry(
        self, data: bytes, mime_type: str, ref: ImageRef
    ) -> Optional[ExtractionCandidate]:
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await asyncio.wait_for(
                    self._classifier.classify(data, mime_type, ref), self._attempt_timeout
                )
            except (ClassifierUnavailable, asyncio.TimeoutError) as e:
                if attempt == self._max_attempts:
                    if isinstance(e, asyncio.TimeoutError):
                        raise ClassifierUnavailable(
                            f"timed out after {self._attempt_timeout:.0f}s ({attempt} attempts)"
                        ) from e
                    raise
                await asyncio.sleep(self._backoff * 2 ** (attempt - 1))
        return None


class _Progress:
    """Per-unit progress line: one log entry per finished image."""

    def __init__(self, total: int, log: JobLog) -> None:
        self._total = total
        self._done = 0
        self._log = log

    def report(self, result: UnitResult) -> None:
        self._done += 1
        prefix = f"[{self._done}/{self._total}]"
        if result.skipped:
            self._log.warning(f"{prefix} Skipped image {result.ref.ordinal}: {result.error}")
        elif result.candidate is None:
            self._log.info(f"{prefix} Image {result.ref.ordinal}: not relevant")
        else:
            c = result.candidate
            name = c.fields.get("venue") or c.fields.get("name") or "?"
            self._log.success(
                f"{prefix} Image {result.ref.ordinal}: {c.kind.value} '{name}' ({c.confidence:.2f})"
            )
