"""Full parse pipeline: harvest a page, classify its flyers, store for review."""

import asyncio
import logging
import sys
from typing import Optional

from showparser.aggregator import aggregate
from showparser.credentials import CredentialBroker
from showparser.errors import (
    AuthRequired,
    DuplicateRecord,
    FatalJobError,
    JobCancelled,
    PersistenceFailure,
)
from showparser.extractor import VisionClassifier
from showparser.logchannel import JobLog, LogChannel
from showparser.models import JobState, ParseJob
from showparser.orchestrator import ClassificationOrchestrator
from showparser.resolver import resolve_name
from showparser.review import ReviewQueue
from showparser.scraper import BrowserHarvester, HarvestResult
from showparser.session_store import FileSessionStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ParseService:
    def __init__(
        self,
        harvester: BrowserHarvester,
        orchestrator: ClassificationOrchestrator,
        reviews: ReviewQueue,
        channel: Optional[LogChannel] = None,
        *,
        broker: Optional[CredentialBroker] = None,
        interactive_login: bool = False,
        credential_timeout_seconds: float = 300.0,
        job_timeout_seconds: float = 1800.0,
    ) -> None:
        self.harvester = harvester
        self.orchestrator = orchestrator
        self.reviews = reviews
        self.channel = channel
        self.broker = broker
        self._interactive_login = interactive_login
        self._credential_timeout = credential_timeout_seconds
        self._job_timeout = job_timeout_seconds

    async def aclose(self) -> None:
        await self.orchestrator.aclose()

    async def run_job(
        self,
        url: str,
        *,
        allow_duplicate: bool = False,
        job: Optional[ParseJob] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> ParseJob:
        """
        Run every stage for *url* and return the job in a terminal state.

        Fatal errors (login wall, navigation timeout, browser failure, job
        timeout) end in FAILED with the reason in the transcript. A cancelled
        job ends in CANCELLED.

        Raises:
            PersistenceFailure: the review record could not be written. The
                job is FAILED but keeps its dataset, so ``persist`` can retry.
        """
        job = job or ParseJob(source_url=url.strip())
        cancel = cancel or asyncio.Event()
        log = JobLog(self.channel, job.logs)
        log.info(f"Starting parse of {job.source_url}")

        try:
            await asyncio.wait_for(
                self._run_stages(job, log, cancel, allow_duplicate), self._job_timeout
            )
        except JobCancelled:
            stage = job.state.value
            job.transition(JobState.CANCELLED)
            log.warning(f"Parse cancelled during {stage}")
        except asyncio.TimeoutError:
            self._fail(job, log, f"Job timed out after {self._job_timeout:.0f}s")
        except PersistenceFailure as e:
            self._fail(job, log, f"Could not save results: {e}")
            if job.dataset is None:
                return job
            e.dataset = job.dataset
            e.job = job
            raise
        except (FatalJobError, DuplicateRecord) as e:
            self._fail(job, log, str(e))
        except Exception as e:
            logger.exception("Unexpected error in job %s", job.id)
            self._fail(job, log, f"Unexpected error: {e}")
        return job

    async def persist(self, job: ParseJob, *, allow_duplicate: bool = False) -> ParseJob:
        """Retry saving a job whose dataset survived a persistence failure."""
        if job.state != JobState.FAILED or job.dataset is None:
            raise ValueError(f"Job {job.id} has no retained dataset to save")
        log = JobLog(self.channel, job.logs)
        log.info("Retrying save for review...")
        try:
            await self._persist(job, log, allow_duplicate)
        except (PersistenceFailure, DuplicateRecord) as e:
            self._fail(job, log, f"Could not save results: {e}")
            raise
        return job

    # -- stages ------------------------------------------------------------

    async def _run_stages(
        self, job: ParseJob, log: JobLog, cancel: asyncio.Event, allow_duplicate: bool
    ) -> None:
        if not allow_duplicate:
            existing = await self.reviews.find_pending_by_url(job.source_url)
            if existing is not None:
                raise DuplicateRecord(
                    f"{job.source_url} already has a pending review record ({existing.id})",
                    existing_id=existing.id,
                )

        _check_cancel(cancel)
        job.transition(JobState.HARVESTING)
        harvest = await self._harvest(job, log, cancel)
        job.canonical_name = resolve_name(harvest.header_text)
        job.image_count = len(harvest.image_refs)
        log.info(f"Source name: {job.canonical_name}")
        if not harvest.image_refs:
            log.warning("No flyer images found on the page")

        _check_cancel(cancel)
        job.transition(JobState.CLASSIFYING)
        outcome = await self.orchestrator.run_with_stats(harvest.image_refs, log, cancel)
        job.skipped_images = outcome.skipped
        job.irrelevant_images = outcome.irrelevant

        _check_cancel(cancel)
        job.transition(JobState.AGGREGATING)
        job.dataset = aggregate(outcome.candidates)
        counts = job.dataset.counts()
        log.info(
            f"Aggregated {len(outcome.candidates)} candidates into "
            f"{counts['shows']} shows, {counts['venues']} venues, "
            f"{counts['djs']} DJs, {counts['vendors']} vendors"
        )

        _check_cancel(cancel)
        await self._persist(job, log, allow_duplicate)

    async def _harvest(self, job: ParseJob, log: JobLog, cancel: asyncio.Event) -> HarvestResult:
        try:
            return await self.harvester.harvest(job.source_url, log, cancel)
        except AuthRequired:
            if not self._interactive_login or self.broker is None:
                raise
        log.warning("Waiting for an admin to provide login credentials...")
        credentials = await self.broker.await_credentials(self._credential_timeout)
        if credentials is None:
            raise AuthRequired("Login required and no credentials were provided in time")
        await self.harvester.login(credentials, log)
        log.info("Retrying harvest with the new session")
        return await self.harvester.harvest(job.source_url, log, cancel)

    async def _persist(self, job: ParseJob, log: JobLog, allow_duplicate: bool) -> None:
        job.transition(JobState.PERSISTING)
        log.info("Saving results for review...")
        record = await self.reviews.create_pending(
            job, job.dataset, allow_duplicate=allow_duplicate
        )
        job.record_id = record.id
        job.transition(JobState.PENDING_REVIEW)
        log.success(f"Saved for review as record {record.id}")

    @staticmethod
    def _fail(job: ParseJob, log: JobLog, message: str) -> None:
        job.error = message
        log.error(message)
        if job.can_transition(JobState.FAILED):
            job.transition(JobState.FAILED)


def _check_cancel(cancel: asyncio.Event) -> None:
    if cancel.is_set():
        raise JobCancelled("Job cancelled")


# ---------------------------------------------------------------------------
# Job manager
# ---------------------------------------------------------------------------


class JobManager:
    """Runs parse jobs as background tasks and keeps them addressable by id."""

    def __init__(self, service: ParseService) -> None:
        self.service = service
        self._jobs: dict[str, ParseJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancels: dict[str, asyncio.Event] = {}

    def submit(self, url: str, *, allow_duplicate: bool = False) -> ParseJob:
        """
        Start a job for *url* and return it without waiting.

        Raises:
            DuplicateRecord: a job for the same URL is still running.
        """
        url = url.strip()
        for job in self._jobs.values():
            if job.source_url == url and not job.is_terminal:
                raise DuplicateRecord(f"{url} is already being parsed", existing_id=job.id)

        job = ParseJob(source_url=url)
        cancel = asyncio.Event()
        self._jobs[job.id] = job
        self._cancels[job.id] = cancel
        self._tasks[job.id] = asyncio.create_task(
            self._run(job, cancel, allow_duplicate), name=f"parse-job-{job.id}"
        )
        return job

    async def run(self, url: str, *, allow_duplicate: bool = False) -> ParseJob:
        """Like ``submit`` but waits for the job to finish."""
        job = self.submit(url, allow_duplicate=allow_duplicate)
        await self._tasks[job.id]
        return job

    def get(self, job_id: str) -> Optional[ParseJob]:
        return self._jobs.get(job_id)

    def list(self) -> list[ParseJob]:
        return sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)

    def cancel(self, job_id: str) -> bool:
        """Signal cancellation. Returns False if the job is unknown or finished."""
        job = self._jobs.get(job_id)
        if job is None or job.is_terminal:
            return False
        self._cancels[job_id].set()
        return True

    async def persist(self, job_id: str, *, allow_duplicate: bool = False) -> ParseJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(job_id)
        return await self.service.persist(job, allow_duplicate=allow_duplicate)

    async def shutdown(self) -> None:
        for cancel in self._cancels.values():
            cancel.set()
        pending = [task for task in self._tasks.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run(self, job: ParseJob, cancel: asyncio.Event, allow_duplicate: bool) -> None:
        try:
            await self.service.run_job(
                job.source_url, allow_duplicate=allow_duplicate, job=job, cancel=cancel
            )
        except PersistenceFailure:
            # Job is FAILED with its dataset retained; POST .../persist retries.
            logger.warning("Job %s finished without saving its dataset", job.id)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_service(
    settings,
    reviews: ReviewQueue,
    channel: Optional[LogChannel] = None,
) -> ParseService:
    """Assemble the production pipeline from *settings*."""
    store = FileSessionStore(
        settings.session_cookies_path,
        env_cookies=settings.session_cookies_json,
        timeout_seconds=settings.session_store_timeout_seconds,
        required_cookies=settings.required_session_cookies,
    )
    classifier = VisionClassifier.from_settings(settings)
    return ParseService(
        BrowserHarvester.from_settings(settings, store),
        ClassificationOrchestrator.from_settings(settings, classifier),
        reviews,
        channel,
        broker=CredentialBroker(channel),
        interactive_login=settings.interactive_login,
        credential_timeout_seconds=settings.credential_timeout_seconds,
        job_timeout_seconds=settings.job_timeout_seconds,
    )


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _parse_main_args() -> tuple[Optional[str], bool, bool]:
    """Return (url, allow_duplicate, in_memory)."""
    positionals = [a for a in sys.argv[1:] if not a.startswith("--")]
    url = positionals[0] if positionals else None
    return url, "--allow-duplicate" in sys.argv, "--memory" in sys.argv


async def main() -> None:
    """CLI entry point."""
    url, allow_duplicate, in_memory = _parse_main_args()
    if not url:
        print("Usage: python -m showparser.pipeline <url> [--allow-duplicate] [--memory]")
        print('Example: python -m showparser.pipeline "https://www.facebook.com/groups/123456"')
        sys.exit(1)

    from showparser.config import settings
    from showparser.db import close_db, get_db, init_db
    from showparser.review import InMemoryReviewQueue, MongoReviewQueue

    logging.basicConfig(level=logging.INFO, format="%(message)s")

    if in_memory:
        reviews: ReviewQueue = InMemoryReviewQueue()
    else:
        await init_db()
        reviews = MongoReviewQueue(get_db())

    service = build_service(settings, reviews)
    try:
        job = await service.run_job(url, allow_duplicate=allow_duplicate)
    except PersistenceFailure as e:
        job = e.job
    finally:
        await service.aclose()
        if not in_memory:
            await close_db()

    print(f"\n{'=' * 60}")
    print(f"{job.state.value.upper()}: {job.canonical_name or url}")
    print(f"{'=' * 60}")
    if job.error:
        print(f"  Error: {job.error}")
    print(
        f"  Images: {job.image_count} "
        f"(skipped {job.skipped_images}, not relevant {job.irrelevant_images})"
    )
    if job.dataset is not None:
        for kind, count in job.dataset.counts().items():
            print(f"  {kind:<8} {count}")
        for show in job.dataset.shows:
            when = " ".join(p for p in (show.day, show.time or show.start_time) if p)
            print(f"    - {show.venue} {when} (DJ: {show.dj or '?'})")
    if job.record_id:
        print(f"  Review record: {job.record_id}")


if __name__ == "__main__":
    asyncio.run(main())
