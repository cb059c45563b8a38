from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx
from opentelemetry import trace

from sync_scheduler.core.config import get_settings
from sync_scheduler.core.telemetry import (
    configure_scheduler_logging,
    setup_scheduler_telemetry,
    shutdown_scheduler_telemetry,
)
from sync_scheduler.jobs.schedule import JobSchedule, build_schedules, due_jobs, next_backoff
from sync_scheduler.services.sync_client import RunResult, SyncClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def trigger_due_jobs(client: SyncClient, schedules: list[JobSchedule], now: float) -> list[RunResult]:
    """Trigger every due job once; busy and failed outcomes wait for the next interval."""
    results: list[RunResult] = []
    for schedule in due_jobs(schedules, now):
        with tracer.start_as_current_span("scheduler.trigger") as span:
            span.set_attribute("sync.job", schedule.job_name)
            try:
                result = await client.run_job(schedule.job_name)
            except httpx.HTTPError as exc:
                span.record_exception(exc)
                logger.error("sync job trigger failed job=%s error=%s", schedule.job_name, exc)
                schedule.mark_ran(now, "error")
                continue
            span.set_attribute("http.status_code", result.status_code)
        if result.busy:
            logger.info("sync job busy job=%s", schedule.job_name)
            status = "busy"
        elif result.ok:
            logger.info(
                "sync job completed job=%s upserts=%s errors=%s total=%s",
                schedule.job_name,
                result.payload.get("upserts"),
                result.payload.get("errors"),
                result.payload.get("total"),
            )
            status = "completed"
        else:
            logger.warning(
                "sync job did not complete job=%s status_code=%s error=%s",
                schedule.job_name,
                result.status_code,
                result.payload.get("error"),
            )
            status = str(result.payload.get("status") or "failed")
        schedule.mark_ran(now, status)
        results.append(result)
    return results


async def reap_zombies(client: SyncClient) -> dict[str, Any] | None:
    try:
        reclaimed = await client.cleanup()
    except httpx.HTTPError as exc:
        logger.error("zombie cleanup failed error=%s", exc)
        return None
    if reclaimed.get("locks_removed") or reclaimed.get("progress_failed"):
        logger.info(
            "reclaimed zombie runs locks=%s progress=%s",
            reclaimed.get("locks_removed"),
            reclaimed.get("progress_failed"),
        )
    return reclaimed


async def run_scheduler() -> None:
    settings = get_settings()
    configure_scheduler_logging()
    telemetry_runtime = setup_scheduler_telemetry(settings)
    client = SyncClient(
        base_url=settings.api_base_url,
        module_id=settings.module_id,
        api_key=settings.api_key,
        timeout_seconds=settings.request_timeout_seconds,
    )
    schedules = build_schedules(settings.job_intervals, now=time.monotonic())
    logger.info("scheduler started jobs=%s", ",".join(schedule.job_name for schedule in schedules))

    backoff = settings.poll_interval_seconds
    last_reap_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("scheduler.poll_cycle"):
                    now = time.monotonic()
                    if now - last_reap_at >= settings.reaper_interval_seconds:
                        await reap_zombies(client)
                        last_reap_at = now

                    await trigger_due_jobs(client, schedules, now)
                backoff = settings.poll_interval_seconds
                await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                sleep_for = next_backoff(
                    backoff,
                    base=settings.poll_interval_seconds,
                    maximum=settings.max_backoff_seconds,
                )
                logger.exception("scheduler iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_scheduler_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_scheduler())
