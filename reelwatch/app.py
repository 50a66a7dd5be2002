from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from .config import Settings, get_settings
from .gemini_client import GeminiVideoClient, VideoFetchError
from .jobs import JobConflictError, JobRecord, JobStore
from .models import CredentialUpdate, ErrorInfo, JobRequest, JobStatusResponse, StartJobResponse
from .security import CredentialStatus, require_api_key
from .tracker import OperationTracker, Phase

logger = structlog.get_logger(__name__)

MISSING_CREDENTIAL_DETAIL = "API Key not selected. Please select a key to generate videos."


def _status_payload(record: JobRecord) -> JobStatusResponse:
    state = record.state
    error = None
    if state.last_error is not None:
        error = ErrorInfo(
            kind=state.last_error.kind,
            message=state.last_error.display_message(),
            tag=state.last_error.tag,
            credential_invalid=state.last_error.credential_invalid,
        )
    return JobStatusResponse(
        job_id=record.job_id,
        phase=state.phase.value,
        status_message=state.status_message,
        cancelled=state.cancelled,
        submitted_at=record.submitted_at,
        updated_at=record.updated_at,
        polls=state.poll_count,
        error=error,
        result_uri=state.result_uri,
    )


def create_app(settings: Settings | None = None, video_client: GeminiVideoClient | None = None) -> FastAPI:
    settings = settings or get_settings()

    client = video_client or GeminiVideoClient(
        base_url=settings.gemini_base_url,
        api_key=settings.gemini_api_key,
        model=settings.video_model,
        resolution=settings.video_resolution,
    )
    credentials = CredentialStatus(present=client.has_api_key)
    tracker = OperationTracker(
        submitter=client,
        poller=client,
        credentials=credentials,
        poll_interval=settings.poll_interval_seconds,
    )
    job_store = JobStore(tracker)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        try:
            yield
        finally:
            cancelled = await job_store.shutdown()
            if cancelled:
                logger.info("jobs.abandoned", count=cancelled)
            await client.aclose()

    app = FastAPI(title="Reelwatch", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.credentials = credentials
    app.state.job_store = job_store

    @app.get("/serverstatus")
    async def server_status(api_key: str | None = Depends(require_api_key)):
        reachable = await client.ping()
        return {
            "status": "ok" if reachable else "degraded",
            "gemini_url": client.base_url,
            "reachable": reachable,
            "model": client.model,
            "credential_present": credentials.present,
            "credential_reason": credentials.reason,
        }

    @app.put("/credential/")
    async def set_credential(update: CredentialUpdate, api_key: str | None = Depends(require_api_key)):
        client.set_api_key(update.api_key)
        if not client.has_api_key:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="API key is blank")
        credentials.mark_present()
        logger.info("credential.updated")
        return {"credential_present": credentials.present}

    @app.put("/videojobs/{job_id}/", response_model=StartJobResponse)
    async def start_job(job_id: str, request: JobRequest, api_key: str | None = Depends(require_api_key)):
        if not request.prompt.strip():
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Please enter a prompt.")
        if not credentials.present:
            raise HTTPException(status_code=status.HTTP_412_PRECONDITION_FAILED, detail=MISSING_CREDENTIAL_DETAIL)
        try:
            record = job_store.start(job_id, request)
        except JobConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return StartJobResponse(
            job_id=job_id,
            accepted=True,
            phase=record.state.phase.value,
            detail=record.state.status_message,
        )

    @app.get("/videojobs/{job_id}/", response_model=JobStatusResponse)
    async def job_status(job_id: str, api_key: str | None = Depends(require_api_key)):
        record = job_store.get(job_id)
        if not record:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
        return _status_payload(record)

    @app.get("/videojobs/{job_id}/video")
    async def job_video(job_id: str, api_key: str | None = Depends(require_api_key)):
        record = job_store.get(job_id)
        if not record:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
        if record.state.phase is not Phase.COMPLETED:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Video is not ready")
        try:
            upstream = await client.open_video(record.state.result_uri)
        except VideoFetchError as exc:
            logger.warning("video.fetch.failed", job_id=job_id, error_message=str(exc))
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
        return StreamingResponse(
            upstream.aiter_bytes(),
            media_type=upstream.headers.get("content-type", "video/mp4"),
            background=BackgroundTask(upstream.aclose),
        )

    @app.delete("/videojobs/{job_id}/", response_model=JobStatusResponse)
    async def cancel_job(job_id: str, api_key: str | None = Depends(require_api_key)):
        record = job_store.cancel(job_id)
        if not record:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
        return _status_payload(record)

    return app
