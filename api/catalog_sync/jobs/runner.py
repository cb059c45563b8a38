from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

import httpx
from opentelemetry import trace

from catalog_sync.core.telemetry import sync_job_var, sync_run_var
from catalog_sync.services.audit import record_event
from catalog_sync.services.locks import LockManager
from catalog_sync.services.models import ProgressDelta, SyncProgress
from catalog_sync.services.progress import ProgressTracker
from catalog_sync.services.reaper import ZombieReaper
from catalog_sync.services.repository import RepositoryError, SyncRepository
from catalog_sync.sources.base import FetchIssue

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

OutcomeStatus = Literal["completed", "failed", "cancelled", "busy"]
ClientFactory = Callable[[], httpx.AsyncClient]


class RunState(str, Enum):
    IDLE = "idle"
    LOCKING = "locking"
    RUNNING = "running"
    COMPLETING = "completing"
    FAILING = "failing"
    CANCELLING = "cancelling"


class FatalRunError(Exception):
    """Aborts a run before item processing, e.g. every source is unreachable."""


class RunCancelledError(Exception):
    """Raised inside an item when the run was finalized by someone else."""


@dataclass(slots=True)
class WorkItem:
    key: str
    label: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RunContext:
    job_name: str
    run_id: str
    force: bool
    trigger: str
    client: httpx.AsyncClient
    tracker: ProgressTracker
    state: dict[str, Any] = field(default_factory=dict)
    issues: list[FetchIssue] = field(default_factory=list)

    async def ensure_running(self) -> None:
        if not await self.tracker.is_running(self.run_id):
            raise RunCancelledError(f"run {self.run_id} of {self.job_name} is no longer running")


@dataclass(slots=True)
class RunOutcome:
    job_name: str
    status: OutcomeStatus
    run_id: str | None = None
    upserts: int = 0
    errors: int = 0
    total: int = 0
    skipped: int = 0
    error: str | None = None
    issues: int = 0
    transitions: list[RunState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "completed"


class SyncJob(ABC):
    """One named unit of synchronization work driven by the ``JobRunner``."""

    name: str
    ttl_seconds: int = 300
    max_concurrency: int = 1

    @abstractmethod
    async def plan(self, context: RunContext) -> list[WorkItem]:
        """Fetch sources and return the items to process; raise ``FatalRunError`` to abort."""

    @abstractmethod
    async def process(self, context: RunContext, item: WorkItem) -> bool:
        """Handle one item; ``True`` when the catalog was written, ``False`` when skipped."""

    async def finalize(self, context: RunContext) -> None:
        return None


class JobRunner:
    """Drives a job through lock, plan, per-item processing and finalization.

    The lock is always released on exit and progress is finalized exactly
    once. A busy lock is a skip, not an error: no progress row is created.
    """

    def __init__(
        self,
        repository: SyncRepository,
        jobs: Mapping[str, SyncJob],
        *,
        tracker: ProgressTracker,
        reaper: ZombieReaper,
        locks: LockManager | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.repository = repository
        self.jobs = dict(jobs)
        self.tracker = tracker
        self.reaper = reaper
        self.locks = locks or LockManager(repository)
        self.client_factory = client_factory or (lambda: httpx.AsyncClient(follow_redirects=True))

    def get_job(self, job_name: str) -> SyncJob:
        job = self.jobs.get(job_name)
        if job is None:
            raise KeyError(job_name)
        return job

    async def run(
        self,
        job_name: str,
        *,
        force: bool = False,
        auto_sync: bool = False,
        actor_type: str = "system",
        actor_id: str | None = None,
    ) -> RunOutcome:
        job = self.get_job(job_name)
        outcome = RunOutcome(job_name=job_name, status="busy")
        self._transition(outcome, RunState.IDLE)
        self._transition(outcome, RunState.LOCKING)

        if force:
            await self.reaper.cleanup(actor_type=actor_type, actor_id=actor_id)

        run_id = str(uuid4())
        lock = await self.locks.acquire(job_name, job.ttl_seconds, holder_token=run_id)
        if lock is None:
            outcome.error = f"sync job {job_name} is already running"
            self._transition(outcome, RunState.IDLE)
            return outcome

        outcome.run_id = run_id
        trigger = "scheduled" if auto_sync else "manual"
        job_token = sync_job_var.set(job_name)
        run_token = sync_run_var.set(run_id)
        try:
            with tracer.start_as_current_span("sync.run") as span:
                span.set_attribute("sync.job", job_name)
                span.set_attribute("sync.run_id", run_id)
                span.set_attribute("sync.force", force)
                try:
                    await self.tracker.start(job_name, run_id, {"trigger": trigger, "force": force})
                except RepositoryError as exc:
                    outcome.status = "failed"
                    outcome.error = f"{job_name} run {run_id} could not start: {exc}"
                    logger.error("sync run could not start job=%s run=%s error=%s", job_name, run_id, exc)
                    self._transition(outcome, RunState.FAILING)
                    return outcome

                await self._execute(job, outcome, force=force, trigger=trigger)
                span.set_attribute("sync.status", outcome.status)
                await record_event(
                    self.repository,
                    "sync.run",
                    actor_type=actor_type,
                    actor_id=actor_id,
                    target=job_name,
                    payload={
                        "run_id": run_id,
                        "status": outcome.status,
                        "trigger": trigger,
                        "force": force,
                        "upserts": outcome.upserts,
                        "errors": outcome.errors,
                        "skipped": outcome.skipped,
                        "total": outcome.total,
                        "issues": outcome.issues,
                        "error": outcome.error,
                    },
                )
                return outcome
        finally:
            await self.locks.release(job_name, run_id)
            sync_run_var.reset(run_token)
            sync_job_var.reset(job_token)
            self._transition(outcome, RunState.IDLE)

    async def _execute(self, job: SyncJob, outcome: RunOutcome, *, force: bool, trigger: str) -> None:
        run_id = outcome.run_id or ""
        self._transition(outcome, RunState.RUNNING)
        error: str | None = None
        try:
            async with self.client_factory() as client:
                context = RunContext(
                    job_name=job.name,
                    run_id=run_id,
                    force=force,
                    trigger=trigger,
                    client=client,
                    tracker=self.tracker,
                )
                await asyncio.wait_for(self._plan_and_process(job, context), timeout=job.ttl_seconds)
                outcome.issues = len(context.issues)
        except asyncio.TimeoutError:
            error = f"{job.name} run {run_id} exceeded its lock ttl of {job.ttl_seconds}s"
        except FatalRunError as exc:
            error = f"{job.name} run {run_id} aborted: {exc}"
        except RepositoryError as exc:
            error = f"{job.name} run {run_id} lost the catalog store: {exc}"
        except Exception as exc:
            logger.exception("sync run crashed job=%s run=%s", job.name, run_id)
            error = f"{job.name} run {run_id} crashed: {type(exc).__name__}: {exc}"

        if error is not None:
            self._transition(outcome, RunState.FAILING)
            logger.error("sync run failed job=%s run=%s error=%s", job.name, run_id, error)
            final = await self.tracker.finish(run_id, "failed", error)
            outcome.status = "failed"
            outcome.error = error
        elif not await self.tracker.is_running(run_id):
            self._transition(outcome, RunState.CANCELLING)
            final = None
        else:
            self._transition(outcome, RunState.COMPLETING)
            final = await self.tracker.finish(run_id, "completed")

        if final is None:
            # finalized elsewhere: force-stop cancels, cleanup fails stale runs
            final = await self.tracker.get(run_id)
            if final is not None and final.is_terminal:
                outcome.status = final.status  # type: ignore[assignment]
                outcome.error = final.error_message
            else:
                outcome.status = "failed"
                outcome.error = error or f"{job.name} run {run_id} lost its progress record"
            if outcome.status == "cancelled" and RunState.CANCELLING not in outcome.transitions:
                self._transition(outcome, RunState.CANCELLING)
        elif error is None:
            outcome.status = "completed"
        self._apply_counts(outcome, final)
        logger.info(
            "sync run finished job=%s run=%s status=%s upserts=%s errors=%s skipped=%s total=%s",
            job.name,
            run_id,
            outcome.status,
            outcome.upserts,
            outcome.errors,
            outcome.skipped,
            outcome.total,
        )

    async def _plan_and_process(self, job: SyncJob, context: RunContext) -> None:
        items = await job.plan(context)
        await self.tracker.set_total(context.run_id, len(items))
        logger.info("sync run planned job=%s run=%s items=%s", job.name, context.run_id, len(items))

        semaphore = asyncio.Semaphore(max(1, job.max_concurrency))
        tasks = [asyncio.ensure_future(self._process_item(job, context, item, semaphore)) for item in items]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        if await self.tracker.is_running(context.run_id):
            await job.finalize(context)

    async def _process_item(
        self,
        job: SyncJob,
        context: RunContext,
        item: WorkItem,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            if not await self.tracker.is_running(context.run_id):
                return
            with tracer.start_as_current_span("sync.item") as span:
                span.set_attribute("sync.item", item.key)
                try:
                    written = await job.process(context, item)
                except RunCancelledError:
                    logger.info("sync item discarded job=%s run=%s item=%s", job.name, context.run_id, item.key)
                    return
                except Exception as exc:
                    message = str(exc) or type(exc).__name__
                    logger.warning(
                        "sync item failed job=%s run=%s item=%s error=%s",
                        job.name,
                        context.run_id,
                        item.key,
                        message,
                    )
                    span.set_attribute("sync.item.failed", True)
                    await self.tracker.update(
                        context.run_id,
                        ProgressDelta(
                            current_label=item.label,
                            advanced=1,
                            failed=1,
                            failed_item={
                                "job_name": job.name,
                                "run_id": context.run_id,
                                "item": item.key,
                                "label": item.label,
                                "error": message,
                            },
                        ),
                    )
                    return

                span.set_attribute("sync.item.written", written)
                await self.tracker.update(
                    context.run_id,
                    ProgressDelta(
                        current_label=item.label,
                        advanced=1,
                        success=1 if written else 0,
                        skipped=0 if written else 1,
                    ),
                )

    @staticmethod
    def _apply_counts(outcome: RunOutcome, progress: SyncProgress | None) -> None:
        if progress is None:
            return
        outcome.upserts = progress.success_count
        outcome.errors = progress.failed_count
        outcome.skipped = progress.skipped_count
        outcome.total = progress.total_items

    @staticmethod
    def _transition(outcome: RunOutcome, state: RunState) -> None:
        outcome.transitions.append(state)
        logger.debug("sync runner state job=%s run=%s state=%s", outcome.job_name, outcome.run_id, state.value)
