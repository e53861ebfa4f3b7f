"""FastAPI backend for parse jobs, review records and the live parser log."""

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from showparser.config import settings
from showparser.errors import (
    AuthRequired,
    DuplicateRecord,
    FatalJobError,
    InvalidTransition,
    NavigationTimeout,
    PersistenceFailure,
    RecordNotFound,
    SessionStoreError,
)
from showparser.logchannel import JobLog, LogChannel
from showparser.models import AggregatedDataset, ParseJob
from showparser.pipeline import JobManager, ParseService, build_service
from showparser.scraper import Credentials


class ParseRequest(BaseModel):
    source_url: str = Field(..., min_length=1)
    wait: bool = False
    allow_duplicate: bool = False


class ApproveRequest(BaseModel):
    dataset: Optional[AggregatedDataset] = None


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class CredentialsRequest(BaseModel):
    identifier: str = Field(..., min_length=1)
    secret: str = Field(..., min_length=1, repr=False)


def _job_summary(job: ParseJob) -> dict:
    return job.model_dump(mode="json", exclude={"logs", "dataset"})


def _job_detail(job: ParseJob) -> dict:
    return job.model_dump(mode="json")


def create_app(service: Optional[ParseService] = None) -> FastAPI:
    """
    Build the API around *service*.

    Without a service, the lifespan wires the production pipeline against
    MongoDB from ``settings``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        from showparser.db import close_db, get_db, init_db
        from showparser.review import MongoReviewQueue

        owns_service = service is None
        if owns_service:
            await init_db()
            channel = LogChannel(
                max_entries=settings.log_buffer_size, ttl_seconds=settings.log_ttl_seconds
            )
            svc = build_service(settings, MongoReviewQueue(get_db()), channel)
        else:
            svc = service
            if svc.channel is None:
                svc.channel = LogChannel(
                    max_entries=settings.log_buffer_size, ttl_seconds=settings.log_ttl_seconds
                )
            channel = svc.channel
        channel.start()
        app.state.service = svc
        app.state.channel = channel
        app.state.jobs = JobManager(svc)
        yield
        await app.state.jobs.shutdown()
        await channel.close()
        if owns_service:
            await svc.aclose()
            await close_db()

    app = FastAPI(title="Show Parser API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RecordNotFound)
    async def _not_found(request: Request, exc: RecordNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransition)
    async def _conflict(request: Request, exc: InvalidTransition):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(PersistenceFailure)
    async def _storage_down(request: Request, exc: PersistenceFailure):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(DuplicateRecord)
    async def _duplicate(request: Request, exc: DuplicateRecord):
        return JSONResponse(
            status_code=409, content={"detail": str(exc), "existing_id": exc.existing_id}
        )

    # ── Parse jobs ──────────────────────────────────────────────

    def _get_job(request: Request, job_id: str) -> ParseJob:
        job = request.app.state.jobs.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    @app.post("/parse-jobs")
    async def create_parse_job(body: ParseRequest, request: Request):
        """Start a parse. Returns immediately unless ``wait`` is set."""
        jobs: JobManager = request.app.state.jobs
        if body.wait:
            job = await jobs.run(body.source_url, allow_duplicate=body.allow_duplicate)
            return _job_detail(job)
        job = jobs.submit(body.source_url, allow_duplicate=body.allow_duplicate)
        return {"job_id": job.id, "state": job.state.value}

    @app.get("/parse-jobs")
    async def list_parse_jobs(request: Request):
        return [_job_summary(j) for j in request.app.state.jobs.list()]

    @app.get("/parse-jobs/{job_id}")
    async def get_parse_job(job_id: str, request: Request):
        return _job_detail(_get_job(request, job_id))

    @app.post("/parse-jobs/{job_id}/cancel")
    async def cancel_parse_job(job_id: str, request: Request):
        job = _get_job(request, job_id)
        if not request.app.state.jobs.cancel(job_id):
            raise HTTPException(status_code=409, detail=f"Job is already {job.state.value}")
        return {"job_id": job_id, "cancelling": True}

    @app.post("/parse-jobs/{job_id}/persist")
    async def persist_parse_job(job_id: str, request: Request, allow_duplicate: bool = False):
        """Retry saving a job that failed while storing its results."""
        _get_job(request, job_id)
        try:
            job = await request.app.state.jobs.persist(job_id, allow_duplicate=allow_duplicate)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except PersistenceFailure as e:
            raise HTTPException(status_code=503, detail=str(e))
        return _job_detail(job)

    # ── Reviews ─────────────────────────────────────────────────

    @app.get("/reviews/pending")
    async def list_pending_reviews(request: Request):
        records = await request.app.state.service.reviews.list_pending()
        return [r.model_dump(mode="json", exclude={"logs"}) for r in records]

    @app.get("/reviews/{record_id}")
    async def get_review(record_id: str, request: Request):
        record = await request.app.state.service.reviews.get(record_id)
        return record.model_dump(mode="json")

    @app.post("/reviews/{record_id}/approve")
    async def approve_review(record_id: str, request: Request, body: Optional[ApproveRequest] = None):
        dataset = body.dataset if body else None
        record = await request.app.state.service.reviews.approve(record_id, dataset)
        return record.model_dump(mode="json")

    @app.post("/reviews/{record_id}/reject")
    async def reject_review(record_id: str, body: RejectRequest, request: Request):
        record = await request.app.state.service.reviews.reject(record_id, body.reason)
        return record.model_dump(mode="json")

    # ── Session ─────────────────────────────────────────────────

    @app.post("/session/credentials")
    async def submit_credentials(body: CredentialsRequest, request: Request):
        """Hand credentials to a job waiting on a login wall, or log in directly."""
        svc: ParseService = request.app.state.service
        if svc.broker is not None and svc.broker.submit(body.identifier, body.secret):
            return {"delivered": True, "logged_in": None}
        credentials = Credentials(identifier=body.identifier, secret=body.secret)
        try:
            await svc.harvester.login(credentials, JobLog(request.app.state.channel))
        except AuthRequired as e:
            raise HTTPException(status_code=401, detail=str(e))
        except NavigationTimeout as e:
            raise HTTPException(status_code=504, detail=str(e))
        except FatalJobError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return {"delivered": False, "logged_in": True}

    @app.get("/session")
    async def session_status(request: Request):
        report = await request.app.state.service.harvester.session_store.validate()
        return {
            "is_valid": report.is_valid,
            "total": report.total,
            "expired": report.expired,
            "missing_required": report.missing_required,
            "checked_at": report.checked_at.isoformat(),
        }

    @app.delete("/session")
    async def clear_session(request: Request):
        try:
            await request.app.state.service.harvester.session_store.clear()
        except SessionStoreError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"cleared": True}

    # ── Parser logs ─────────────────────────────────────────────

    @app.delete("/parser-logs")
    async def clear_parser_logs(request: Request):
        request.app.state.channel.clear()
        return {"cleared": True}

    @app.websocket("/ws/parser-logs")
    async def parser_logs(websocket: WebSocket):
        await websocket.accept()
        channel: LogChannel = websocket.app.state.channel

        async def pump() -> None:
            async for event in channel.subscribe():
                await websocket.send_json(event.to_message())

        pump_task = asyncio.create_task(pump())
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        finally:
            pump_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
                await pump_task

    return app


app = create_app()
