"""Pending-review storage for parsed datasets.

A parse job never publishes its results directly: it stores a
``pending_review`` record that an admin approves (optionally with edits) or
rejects. Approved records are handed to an ``ApprovalSink``, the system that
owns vendors, venues and shows.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from showparser.errors import DuplicateRecord, InvalidTransition, PersistenceFailure, RecordNotFound
from showparser.models import AggregatedDataset, ParseJob, ReviewRecord, ReviewStatus

logger = logging.getLogger(__name__)

COLLECTION = "parsed_schedules"


class ApprovalSink(Protocol):
    async def accept(self, record: ReviewRecord) -> None: ...


def build_stats(job: ParseJob, dataset: AggregatedDataset) -> dict[str, Any]:
    return {
        "image_count": job.image_count,
        "skipped_images": job.skipped_images,
        "irrelevant_images": job.irrelevant_images,
        **dataset.counts(),
    }


def new_record(job: ParseJob, dataset: AggregatedDataset) -> ReviewRecord:
    return ReviewRecord(
        job_id=job.id,
        url=job.source_url,
        canonical_name=job.canonical_name or "",
        dataset=dataset,
        logs=list(job.logs),
        stats=build_stats(job, dataset),
    )


class ReviewQueue(ABC):
    def __init__(self, sink: Optional[ApprovalSink] = None) -> None:
        self._sink = sink

    @abstractmethod
    async def create_pending(
        self, job: ParseJob, dataset: AggregatedDataset, *, allow_duplicate: bool = False
    ) -> ReviewRecord:
        """
        Store *dataset* as a pending record for *job*.

        Calling this twice for the same job returns the first record.

        Raises:
            DuplicateRecord: another job's record for the same URL is still
                pending and *allow_duplicate* is False.
            PersistenceFailure: the storage backend failed.
        """

    @abstractmethod
    async def find_pending_by_url(self, url: str) -> Optional[ReviewRecord]: ...

    @abstractmethod
    async def list_pending(self) -> list[ReviewRecord]: ...

    @abstractmethod
    async def get(self, record_id: str) -> ReviewRecord: ...

    @abstractmethod
    async def _set_status(
        self, record_id: str, status: ReviewStatus, changes: dict[str, Any]
    ) -> ReviewRecord:
        """Move a pending record to *status*; raise if it is missing or not pending."""

    async def approve(
        self, record_id: str, edited_dataset: Optional[AggregatedDataset] = None
    ) -> ReviewRecord:
        changes: dict[str, Any] = {}
        if edited_dataset is not None:
            changes["dataset"] = edited_dataset
        record = await self._set_status(record_id, ReviewStatus.APPROVED, changes)
        logger.info("Approved review record %s (%s)", record.id, record.canonical_name)
        if self._sink is not None:
            await self._sink.accept(record)
        return record

    async def reject(self, record_id: str, reason: str) -> ReviewRecord:
        record = await self._set_status(
            record_id, ReviewStatus.REJECTED, {"rejection_reason": reason}
        )
        logger.info("Rejected review record %s: %s", record.id, reason)
        return record


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryReviewQueue(ReviewQueue):
    """Process-local queue; used by tests and when no database is configured."""

    def __init__(self, sink: Optional[ApprovalSink] = None) -> None:
        super().__init__(sink)
        self._records: dict[str, ReviewRecord] = {}

    async def create_pending(
        self, job: ParseJob, dataset: AggregatedDataset, *, allow_duplicate: bool = False
    ) -> ReviewRecord:
        for record in self._records.values():
            if record.job_id == job.id:
                return record
        if not allow_duplicate:
            existing = await self.find_pending_by_url(job.source_url)
            if existing is not None:
                raise DuplicateRecord(
                    f"A pending record for {job.source_url} already exists",
                    existing_id=existing.id,
                )
        record = new_record(job, dataset)
        self._records[record.id] = record
        return record

    async def find_pending_by_url(self, url: str) -> Optional[ReviewRecord]:
        url = url.strip()
        for record in self._records.values():
            if record.url == url and record.status == ReviewStatus.PENDING_REVIEW:
                return record
        return None

    async def list_pending(self) -> list[ReviewRecord]:
        pending = [r for r in self._records.values() if r.status == ReviewStatus.PENDING_REVIEW]
        return sorted(pending, key=lambda r: r.created_at, reverse=True)

    async def get(self, record_id: str) -> ReviewRecord:
        try:
            return self._records[record_id]
        except KeyError:
            raise RecordNotFound(f"Review record {record_id} not found") from None

    async def _set_status(
        self, record_id: str, status: ReviewStatus, changes: dict[str, Any]
    ) -> ReviewRecord:
        record = await self.get(record_id)
        if record.status != ReviewStatus.PENDING_REVIEW:
            raise InvalidTransition(
                f"Record {record_id} is {record.status.value}, not pending_review"
            )
        updated = record.model_copy(
            update={"status": status, "reviewed_at": datetime.now(timezone.utc), **changes}
        )
        self._records[record_id] = updated
        return updated


# ---------------------------------------------------------------------------
# MongoDB
# ---------------------------------------------------------------------------


def _to_doc(record: ReviewRecord) -> dict:
    doc = record.model_dump(mode="json", exclude={"id"})
    doc["_id"] = record.id
    doc["created_at"] = record.created_at
    doc["reviewed_at"] = record.reviewed_at
    return doc


def _from_doc(doc: dict) -> ReviewRecord:
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return ReviewRecord.model_validate(doc)


class MongoReviewQueue(ReviewQueue):
    def __init__(self, db: AsyncIOMotorDatabase, sink: Optional[ApprovalSink] = None) -> None:
        super().__init__(sink)
        self._collection = db[COLLECTION]

    async def create_pending(
        self, job: ParseJob, dataset: AggregatedDataset, *, allow_duplicate: bool = False
    ) -> ReviewRecord:
        try:
            existing = await self._collection.find_one({"job_id": job.id})
            if existing:
                return _from_doc(existing)
            if not allow_duplicate:
                pending = await self.find_pending_by_url(job.source_url)
                if pending is not None:
                    raise DuplicateRecord(
                        f"A pending record for {job.source_url} already exists",
                        existing_id=pending.id,
                    )
            record = new_record(job, dataset)
            try:
                await self._collection.insert_one(_to_doc(record))
            except DuplicateKeyError:
                # Lost a race with a concurrent save of the same job.
                return _from_doc(await self._collection.find_one({"job_id": job.id}))
            return record
        except PyMongoError as e:
            raise PersistenceFailure(
                f"Could not store review record: {e}", dataset=dataset, job=job
            ) from e

    async def find_pending_by_url(self, url: str) -> Optional[ReviewRecord]:
        doc = await self._collection.find_one(
            {"url": url.strip(), "status": ReviewStatus.PENDING_REVIEW.value}
        )
        return _from_doc(doc) if doc else None

    async def list_pending(self) -> list[ReviewRecord]:
        cursor = self._collection.find({"status": ReviewStatus.PENDING_REVIEW.value}).sort(
            "created_at", DESCENDING
        )
        return [_from_doc(doc) for doc in await cursor.to_list(500)]

    async def get(self, record_id: str) -> ReviewRecord:
        doc = await self._collection.find_one({"_id": record_id})
        if not doc:
            raise RecordNotFound(f"Review record {record_id} not found")
        return _from_doc(doc)

    async def _set_status(
        self, record_id: str, status: ReviewStatus, changes: dict[str, Any]
    ) -> ReviewRecord:
        update: dict[str, Any] = {
            "status": status.value,
            "reviewed_at": datetime.now(timezone.utc),
        }
        for name, value in changes.items():
            update[name] = value.model_dump(mode="json") if hasattr(value, "model_dump") else value
        try:
            doc = await self._collection.find_one_and_update(
                {"_id": record_id, "status": ReviewStatus.PENDING_REVIEW.value},
                {"$set": update},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise PersistenceFailure(f"Could not update review record {record_id}: {e}") from e
        if doc is None:
            current = await self.get(record_id)
            raise InvalidTransition(
                f"Record {record_id} is {current.status.value}, not pending_review"
            )
        return _from_doc(doc)
