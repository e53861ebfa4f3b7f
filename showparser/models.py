import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class LogLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class LogEntry(BaseModel):
    """One progress/diagnostic line. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    timestamp: datetime = Field(default_factory=_now)
    level: LogLevel = LogLevel.INFO
    message: str


class CandidateKind(str, Enum):
    VENDOR = "vendor"
    DJ = "dj"
    VENUE = "venue"
    SHOW = "show"


class ImageRef(BaseModel):
    """A harvested image URL and its position on the page."""

    model_config = ConfigDict(frozen=True)

    url: str
    ordinal: int = Field(..., ge=0)


class ExtractionCandidate(BaseModel):
    """An unconfirmed, confidence-scored record read off a single image."""

    model_config = ConfigDict(frozen=True)

    kind: CandidateKind
    fields: dict[str, str] = Field(default_factory=dict)
    confidence: float = Field(..., ge=0.0, le=1.0)
    source_image: ImageRef


# ---------------------------------------------------------------------------
# Aggregated dataset
# ---------------------------------------------------------------------------


class DatasetRecord(BaseModel):
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    sources: list[str] = Field(
        default_factory=list, description="URLs of the images this record was read from"
    )


class VendorRecord(DatasetRecord):
    name: str
    website: Optional[str] = None


class DjRecord(DatasetRecord):
    name: str
    vendor: Optional[str] = None


class VenueRecord(DatasetRecord):
    name: str
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    lat: Optional[str] = None
    lng: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None


class ShowRecord(DatasetRecord):
    venue: str
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    day: Optional[str] = None
    time: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    dj: Optional[str] = None
    vendor: Optional[str] = None
    venue_phone: Optional[str] = None
    venue_website: Optional[str] = None


class AggregatedDataset(BaseModel):
    vendors: list[VendorRecord] = Field(default_factory=list)
    djs: list[DjRecord] = Field(default_factory=list)
    venues: list[VenueRecord] = Field(default_factory=list)
    shows: list[ShowRecord] = Field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "vendors": len(self.vendors),
            "djs": len(self.djs),
            "venues": len(self.venues),
            "shows": len(self.shows),
        }


# ---------------------------------------------------------------------------
# Parse jobs
# ---------------------------------------------------------------------------


class JobState(str, Enum):
    """Lifecycle state of a parse job."""

    PENDING = "pending"
    HARVESTING = "harvesting"
    CLASSIFYING = "classifying"
    AGGREGATING = "aggregating"
    PERSISTING = "persisting"

    PENDING_REVIEW = "pending_review"
    """Dataset stored for admin review. The pipeline never goes further."""

    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({JobState.PENDING_REVIEW, JobState.FAILED, JobState.CANCELLED})

_FORWARD = {
    JobState.PENDING: JobState.HARVESTING,
    JobState.HARVESTING: JobState.CLASSIFYING,
    JobState.CLASSIFYING: JobState.AGGREGATING,
    JobState.AGGREGATING: JobState.PERSISTING,
    JobState.PERSISTING: JobState.PENDING_REVIEW,
}


class ParseJob(BaseModel):
    """One end-to-end run of the extraction pipeline for a single source URL."""

    id: str = Field(default_factory=_new_id)
    source_url: str
    state: JobState = JobState.PENDING
    created_at: datetime = Field(default_factory=_now)
    finished_at: Optional[datetime] = None
    canonical_name: Optional[str] = None
    logs: list[LogEntry] = Field(default_factory=list)

    error: Optional[str] = None
    image_count: int = 0
    skipped_images: int = 0
    irrelevant_images: int = 0
    record_id: Optional[str] = None
    dataset: Optional[AggregatedDataset] = Field(
        None, description="Kept in memory so a failed save can be retried."
    )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_transition(self, target: JobState) -> bool:
        if target in (JobState.FAILED, JobState.CANCELLED):
            return not self.is_terminal
        if self.state == JobState.FAILED and target == JobState.PERSISTING:
            return self.dataset is not None
        return _FORWARD.get(self.state) == target

    def transition(self, target: JobState) -> None:
        if not self.can_transition(target):
            raise ValueError(f"Illegal job transition {self.state.value} -> {target.value}")
        self.state = target
        if target in TERMINAL_STATES:
            self.finished_at = _now()
        elif target == JobState.PERSISTING:
            self.error = None
            self.finished_at = None


# ---------------------------------------------------------------------------
# Review records
# ---------------------------------------------------------------------------


class ReviewStatus(str, Enum):
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewRecord(BaseModel):
    """Persisted parse result awaiting an admin decision."""

    id: str = Field(default_factory=_new_id)
    job_id: str
    url: str
    canonical_name: str
    dataset: AggregatedDataset
    status: ReviewStatus = ReviewStatus.PENDING_REVIEW
    logs: list[LogEntry] = Field(default_factory=list)
    stats: dict[str, Any] = Field(default_factory=dict)
    rejection_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    reviewed_at: Optional[datetime] = None

    @field_validator("url")
    @classmethod
    def _strip_url(cls, value: str) -> str:
        return value.strip()
