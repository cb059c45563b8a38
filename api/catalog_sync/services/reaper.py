from __future__ import annotations

import logging
from dataclasses import dataclass, field

from catalog_sync.services.audit import record_event
from catalog_sync.services.progress import ProgressTracker
from catalog_sync.services.repository import SyncRepository

logger = logging.getLogger(__name__)

FORCE_STOP_MESSAGE = "Manually cancelled by admin"


def stale_run_message(stale_after_seconds: int) -> str:
    return (
        "stale/zombie run: no progress update for more than "
        f"{stale_after_seconds}s, marked failed by cleanup"
    )


@dataclass(slots=True)
class CleanupResult:
    locks_removed: int = 0
    progress_failed: int = 0
    run_ids: list[str] = field(default_factory=list)
    job_names: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.locks_removed or self.progress_failed)


@dataclass(slots=True)
class ForceStopResult:
    locks_removed: int = 0
    progress_cancelled: int = 0
    run_ids: list[str] = field(default_factory=list)


class ZombieReaper:
    def __init__(
        self,
        repository: SyncRepository,
        tracker: ProgressTracker,
        stale_after_seconds: int,
    ) -> None:
        self.repository = repository
        self.tracker = tracker
        self.stale_after_seconds = max(1, stale_after_seconds)

    async def cleanup(self, *, actor_type: str = "system", actor_id: str | None = None) -> CleanupResult:
        """Fail stale running progress and drop its locks plus any expired lock.

        Running it again with no new zombies changes nothing.
        """
        failed = await self.repository.fail_stale_progress(
            self.stale_after_seconds,
            stale_run_message(self.stale_after_seconds),
        )
        for progress in failed:
            self.tracker.publish(progress)
            logger.warning(
                "zombie run failed job=%s run=%s started_at=%s",
                progress.job_name,
                progress.run_id,
                progress.started_at.isoformat(),
            )

        held = await self.repository.delete_locks_held_by([progress.run_id for progress in failed])
        expired = await self.repository.delete_expired_locks()
        removed = held + expired

        result = CleanupResult(
            locks_removed=len(removed),
            progress_failed=len(failed),
            run_ids=[progress.run_id for progress in failed],
            job_names=sorted({lock.job_name for lock in removed} | {progress.job_name for progress in failed}),
        )
        if result.changed:
            logger.info(
                "zombie cleanup locks_removed=%s progress_failed=%s jobs=%s",
                result.locks_removed,
                result.progress_failed,
                ",".join(result.job_names),
            )
            await record_event(
                self.repository,
                "sync.cleanup",
                actor_type=actor_type,
                actor_id=actor_id,
                payload={
                    "locks_removed": result.locks_removed,
                    "progress_failed": result.progress_failed,
                    "run_ids": result.run_ids,
                },
            )
        return result

    async def force_stop(self, *, actor_type: str = "system", actor_id: str | None = None) -> ForceStopResult:
        """Cancel every running run and delete every lock, for all jobs."""
        cancelled = await self.repository.cancel_running_progress(FORCE_STOP_MESSAGE)
        for progress in cancelled:
            self.tracker.publish(progress)
        removed = await self.repository.delete_all_locks()

        result = ForceStopResult(
            locks_removed=len(removed),
            progress_cancelled=len(cancelled),
            run_ids=[progress.run_id for progress in cancelled],
        )
        logger.warning(
            "force stop locks_removed=%s progress_cancelled=%s",
            result.locks_removed,
            result.progress_cancelled,
        )
        await record_event(
            self.repository,
            "sync.force_stop",
            actor_type=actor_type,
            actor_id=actor_id,
            payload={
                "locks_removed": result.locks_removed,
                "progress_cancelled": result.progress_cancelled,
                "run_ids": result.run_ids,
            },
        )
        return result
