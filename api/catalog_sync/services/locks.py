from __future__ import annotations

import logging
from uuid import uuid4

from catalog_sync.services.models import JobLock
from catalog_sync.services.repository import SyncRepository

logger = logging.getLogger(__name__)


class LockManager:
    """One execution slot per job name, backed by a persisted TTL lock.

    ``acquire`` returns ``None`` when another holder owns a live lock; the
    caller must then exit without side effects.
    """

    def __init__(self, repository: SyncRepository) -> None:
        self.repository = repository

    async def acquire(self, job_name: str, ttl_seconds: int, holder_token: str | None = None) -> JobLock | None:
        token = holder_token or str(uuid4())
        lock = await self.repository.acquire_lock(job_name, token, ttl_seconds)
        if lock is None:
            logger.info("job lock busy job=%s", job_name)
            return None
        logger.info("job lock acquired job=%s holder=%s expires_at=%s", job_name, token, lock.expires_at.isoformat())
        return lock

    async def release(self, job_name: str, holder_token: str) -> bool:
        released = await self.repository.release_lock(job_name, holder_token)
        if released:
            logger.info("job lock released job=%s holder=%s", job_name, holder_token)
        else:
            logger.warning("job lock release ignored job=%s holder=%s reason=not_holder", job_name, holder_token)
        return released

    async def holder(self, job_name: str) -> JobLock | None:
        return await self.repository.get_lock(job_name)
