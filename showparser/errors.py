"""Exception hierarchy for the parse pipeline.

Fatal errors abort the whole job; unit errors are recovered inside the
classification worker pool and never escalate past it.
"""

from typing import Any, Optional


class ParserError(Exception):
    """Base class for every error raised by this package."""


class FatalJobError(ParserError):
    """Aborts the job and moves it to FAILED."""


class AuthRequired(FatalJobError):
    """The target page is behind a login wall; fresh credentials are needed."""


class NavigationTimeout(FatalJobError):
    """The page did not finish loading in time."""


class HarvestFailed(FatalJobError):
    """The browser session broke for a reason other than login or timeout."""


class PersistenceFailure(FatalJobError):
    """The review record could not be written.

    The aggregated dataset travels with the exception so the caller can retry
    the save without re-running the pipeline.
    """

    def __init__(self, message: str, *, dataset: Any = None, job: Any = None) -> None:
        super().__init__(message)
        self.dataset = dataset
        self.job = job


class JobCancelled(ParserError):
    """Raised inside a stage when the job's cancel signal fired."""


class UnitError(ParserError):
    """A single image failed; the batch continues."""


class ClassifierUnavailable(UnitError):
    """Transient model failure (network, timeout, 429, 5xx). Retryable."""


class ClassifierRejected(UnitError):
    """The model refused the input (bad request, unsupported media). Not retryable."""


class UnparseableResult(UnitError):
    """The model answered but not in the expected structure."""


class DownloadFailed(UnitError):
    """The image bytes could not be fetched."""


class ReviewError(ParserError):
    pass


class RecordNotFound(ReviewError):
    pass


class InvalidTransition(ReviewError):
    """Only pending records can be approved or rejected."""


class DuplicateRecord(ReviewError):
    """A pending record for the same URL already exists."""

    def __init__(self, message: str, *, existing_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.existing_id = existing_id


class SessionStoreError(ParserError):
    """Cookies could not be written or removed."""
