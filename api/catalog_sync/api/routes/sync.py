import asyncio
import json

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, StreamingResponse

from catalog_sync.core.auth import SCOPE_READ, SCOPE_RUN, Principal
from catalog_sync.core.security import get_principal
from catalog_sync.jobs.registry import get_broadcaster, get_job_runner
from catalog_sync.jobs.runner import JobRunner
from catalog_sync.schemas.sync import JobOut, ProgressOut, RunErrorResponse, RunRequest, RunResponse
from catalog_sync.services.models import SyncProgress
from catalog_sync.services.progress import ProgressBroadcaster
from catalog_sync.services.repository import RepositoryUnavailableError

router = APIRouter()

STREAM_KEEPALIVE_SECONDS = 15.0


def progress_out(progress: SyncProgress) -> ProgressOut:
    return ProgressOut(
        job_name=progress.job_name,
        run_id=progress.run_id,
        status=progress.status,
        current_item=progress.current_item,
        total_items=progress.total_items,
        current_label=progress.current_label,
        progress_percent=progress.progress_percent,
        success_count=progress.success_count,
        failed_count=progress.failed_count,
        skipped_count=progress.skipped_count,
        started_at=progress.started_at,
        updated_at=progress.updated_at,
        completed_at=progress.completed_at,
        duration_ms=progress.duration_ms,
        error_message=progress.error_message,
        failed_items=progress.failed_items,
        metadata=progress.metadata,
    )


def _require(principal: Principal, scope: str) -> None:
    try:
        principal.require_scopes({scope})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


@router.get("/jobs", response_model=list[JobOut])
async def list_jobs(
    principal: Principal = Depends(get_principal),
    runner: JobRunner = Depends(get_job_runner),
) -> list[JobOut]:
    _require(principal, SCOPE_READ)
    return [
        JobOut(name=job.name, ttl_seconds=job.ttl_seconds, max_concurrency=job.max_concurrency)
        for job in sorted(runner.jobs.values(), key=lambda job: job.name)
    ]


@router.post(
    "/{job_name}/run",
    response_model=RunResponse,
    responses={409: {"model": RunErrorResponse}, 500: {"model": RunErrorResponse}},
)
async def run_job(
    job_name: str,
    payload: RunRequest | None = None,
    principal: Principal = Depends(get_principal),
    runner: JobRunner = Depends(get_job_runner),
):
    _require(principal, SCOPE_RUN)
    request = payload or RunRequest()
    if job_name not in runner.jobs:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"unknown sync job: {job_name}")

    try:
        outcome = await runner.run(
            job_name,
            force=request.force,
            auto_sync=request.auto_sync,
            actor_type=principal.actor_type,
            actor_id=principal.actor_id,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if outcome.status == "busy":
        body = RunErrorResponse(error=outcome.error or "sync job is already running")
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=body.model_dump())
    if outcome.status == "failed":
        body = RunErrorResponse(error=outcome.error or "sync run failed", run_id=outcome.run_id)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body.model_dump())

    return RunResponse(
        ok=outcome.ok,
        status=outcome.status,
        run_id=outcome.run_id,
        upserts=outcome.upserts,
        errors=outcome.errors,
        skipped=outcome.skipped,
        total=outcome.total,
        error=outcome.error,
    )


@router.get("/{job_name}/progress", response_model=ProgressOut)
async def get_progress(
    job_name: str,
    principal: Principal = Depends(get_principal),
    runner: JobRunner = Depends(get_job_runner),
) -> ProgressOut:
    _require(principal, SCOPE_READ)
    try:
        progress = await runner.tracker.latest(job_name)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if progress is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"no sync progress found for {job_name}")
    return progress_out(progress)


@router.get("/{job_name}/progress/stream")
async def stream_progress(
    job_name: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    runner: JobRunner = Depends(get_job_runner),
    broadcaster: ProgressBroadcaster = Depends(get_broadcaster),
) -> StreamingResponse:
    _require(principal, SCOPE_READ)
    try:
        latest = await runner.tracker.latest(job_name)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    async def events():
        async with broadcaster.subscribe(job_name) as queue:
            if latest is not None:
                yield _sse(latest)
            while not await request.is_disconnected():
                try:
                    progress = await asyncio.wait_for(queue.get(), timeout=STREAM_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if progress is None:
                    # server shutting down
                    break
                yield _sse(progress)

    return StreamingResponse(events(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})


def _sse(progress: SyncProgress) -> str:
    data = json.dumps(progress_out(progress).model_dump(mode="json"))
    return f"event: progress\nid: {progress.run_id}:{progress.current_item}\ndata: {data}\n\n"
