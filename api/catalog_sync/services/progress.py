from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from catalog_sync.services.models import ProgressDelta, SyncProgress
from catalog_sync.services.repository import SyncRepository

logger = logging.getLogger(__name__)


class ProgressBroadcaster:
    """In-process fan-out of progress snapshots to per-job subscribers."""

    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = max(1, queue_size)
        self.closed = False
        self._subscribers: dict[str, set[asyncio.Queue[SyncProgress | None]]] = defaultdict(set)

    def publish(self, progress: SyncProgress) -> None:
        for queue in list(self._subscribers.get(progress.job_name, ())):
            _put_latest(queue, progress)

    def subscriber_count(self, job_name: str) -> int:
        return len(self._subscribers.get(job_name, ()))

    def close(self) -> None:
        """End every open subscription; each queue receives a final ``None``."""
        self.closed = True
        for queues in list(self._subscribers.values()):
            for queue in list(queues):
                _put_latest(queue, None)

    @asynccontextmanager
    async def subscribe(self, job_name: str) -> AsyncIterator[asyncio.Queue[SyncProgress | None]]:
        queue: asyncio.Queue[SyncProgress | None] = asyncio.Queue(maxsize=self.queue_size)
        if self.closed:
            queue.put_nowait(None)
        self._subscribers[job_name].add(queue)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(job_name)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[job_name]


def _put_latest(queue: asyncio.Queue[SyncProgress | None], item: SyncProgress | None) -> None:
    if queue.full():
        # slow consumers only need the newest state
        queue.get_nowait()
    queue.put_nowait(item)


class ProgressTracker:
    def __init__(self, repository: SyncRepository, broadcaster: ProgressBroadcaster | None = None) -> None:
        self.repository = repository
        self.broadcaster = broadcaster

    async def start(self, job_name: str, run_id: str, metadata: dict[str, Any] | None = None) -> SyncProgress:
        progress = await self.repository.create_progress(job_name, run_id, metadata or {})
        self.publish(progress)
        return progress

    async def set_total(self, run_id: str, total_items: int) -> SyncProgress | None:
        progress = await self.repository.set_progress_total(run_id, total_items)
        self.publish(progress)
        return progress

    async def update(self, run_id: str, delta: ProgressDelta) -> SyncProgress | None:
        """Apply ``delta`` atomically; ``None`` means the run is no longer running."""
        progress = await self.repository.apply_progress_delta(run_id, delta)
        self.publish(progress)
        return progress

    async def finish(self, run_id: str, status: str, error_message: str | None = None) -> SyncProgress | None:
        progress = await self.repository.finish_progress(run_id, status, error_message)
        if progress is None:
            logger.info("progress already terminal run=%s requested_status=%s", run_id, status)
            return None
        self.publish(progress)
        return progress

    async def get(self, run_id: str) -> SyncProgress | None:
        return await self.repository.get_progress(run_id)

    async def latest(self, job_name: str) -> SyncProgress | None:
        return await self.repository.latest_progress(job_name)

    async def is_running(self, run_id: str) -> bool:
        progress = await self.repository.get_progress(run_id)
        return progress is not None and progress.status == "running"

    def publish(self, progress: SyncProgress | None) -> None:
        if progress is not None and self.broadcaster is not None:
            self.broadcaster.publish(progress)
