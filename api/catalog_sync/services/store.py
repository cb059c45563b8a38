from __future__ import annotations

import copy
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from catalog_sync.services.models import (
    TERMINAL_STATUSES,
    AuditEvent,
    CatalogEntity,
    ContentRecord,
    IdentityMapping,
    JobLock,
    ProgressDelta,
    SourceSnapshot,
    SyncProgress,
)
from catalog_sync.services.repository import RepositoryConflictError, RepositoryValidationError

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    """Process-local backend with the same contract as PostgresRepository.

    No method awaits anything, so every call runs to completion without
    yielding to the event loop and is atomic with respect to other tasks.
    Stored objects are copied on the way in and out.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or utc_now
        self.locks: dict[str, JobLock] = {}
        self.progress: dict[str, SyncProgress] = {}
        self.entities: dict[str, CatalogEntity] = {}
        self.mappings: dict[tuple[str, str], IdentityMapping] = {}
        self.content: dict[str, ContentRecord] = {}
        self.snapshots: dict[str, SourceSnapshot] = {}
        self.audit_events: list[AuditEvent] = []
        self.entity_writes = 0
        self.content_writes = 0

    def now(self) -> datetime:
        return self._clock()

    async def close(self) -> None:
        return None

    async def acquire_lock(self, job_name: str, holder_token: str, ttl_seconds: int) -> JobLock | None:
        if ttl_seconds <= 0:
            raise RepositoryValidationError("lock ttl must be positive")
        now = self.now()
        existing = self.locks.get(job_name)
        if existing is not None and not existing.is_expired(now):
            return None
        lock = JobLock(
            job_name=job_name,
            holder_token=holder_token,
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        self.locks[job_name] = lock
        return copy.copy(lock)

    async def release_lock(self, job_name: str, holder_token: str) -> bool:
        existing = self.locks.get(job_name)
        if existing is None or existing.holder_token != holder_token:
            return False
        del self.locks[job_name]
        return True

    async def get_lock(self, job_name: str) -> JobLock | None:
        lock = self.locks.get(job_name)
        return copy.copy(lock) if lock else None

    async def delete_expired_locks(self) -> list[JobLock]:
        now = self.now()
        return self._pop_locks(lambda lock: lock.is_expired(now))

    async def delete_locks_held_by(self, holder_tokens: list[str]) -> list[JobLock]:
        tokens = set(holder_tokens)
        return self._pop_locks(lambda lock: lock.holder_token in tokens)

    async def delete_all_locks(self) -> list[JobLock]:
        return self._pop_locks(lambda _: True)

    async def create_progress(self, job_name: str, run_id: str, metadata: dict[str, Any]) -> SyncProgress:
        if run_id in self.progress:
            raise RepositoryConflictError(f"run {run_id} already exists")
        now = self.now()
        progress = SyncProgress(
            job_name=job_name,
            run_id=run_id,
            status="running",
            started_at=now,
            updated_at=now,
            metadata=copy.deepcopy(metadata),
        )
        self.progress[run_id] = progress
        return copy.deepcopy(progress)

    async def set_progress_total(self, run_id: str, total_items: int) -> SyncProgress | None:
        progress = self._running(run_id)
        if progress is None:
            return None
        progress.total_items = max(0, total_items)
        progress.updated_at = self.now()
        return copy.deepcopy(progress)

    async def apply_progress_delta(self, run_id: str, delta: ProgressDelta) -> SyncProgress | None:
        progress = self._running(run_id)
        if progress is None:
            return None
        progress.current_item += delta.advanced
        progress.success_count += delta.success
        progress.failed_count += delta.failed
        progress.skipped_count += delta.skipped
        if delta.current_label is not None:
            progress.current_label = delta.current_label
        if delta.failed_item is not None:
            progress.failed_items.append(copy.deepcopy(delta.failed_item))
        progress.updated_at = self.now()
        return copy.deepcopy(progress)

    async def finish_progress(self, run_id: str, status: str, error_message: str | None) -> SyncProgress | None:
        if status not in TERMINAL_STATUSES:
            raise RepositoryValidationError(f"invalid terminal status: {status}")
        progress = self._running(run_id)
        if progress is None:
            return None
        self._finalize(progress, status, error_message)
        return copy.deepcopy(progress)

    async def get_progress(self, run_id: str) -> SyncProgress | None:
        progress = self.progress.get(run_id)
        return copy.deepcopy(progress) if progress else None

    async def latest_progress(self, job_name: str) -> SyncProgress | None:
        # dicts keep insertion order, so the last match is the newest run
        latest: SyncProgress | None = None
        for progress in self.progress.values():
            if progress.job_name == job_name:
                latest = progress
        return copy.deepcopy(latest) if latest else None

    async def fail_stale_progress(self, stale_after_seconds: int, message: str) -> list[SyncProgress]:
        threshold = self.now() - timedelta(seconds=stale_after_seconds)
        failed: list[SyncProgress] = []
        for progress in self.progress.values():
            if progress.status == "running" and progress.updated_at < threshold:
                self._finalize(progress, "failed", message)
                failed.append(copy.deepcopy(progress))
        return failed

    async def cancel_running_progress(self, message: str) -> list[SyncProgress]:
        cancelled: list[SyncProgress] = []
        for progress in self.progress.values():
            if progress.status == "running":
                self._finalize(progress, "cancelled", message)
                cancelled.append(copy.deepcopy(progress))
        return cancelled

    async def get_entity(self, slug: str) -> CatalogEntity | None:
        entity = self.entities.get(slug)
        return copy.deepcopy(entity) if entity else None

    async def list_entities(self) -> list[CatalogEntity]:
        return [copy.deepcopy(self.entities[slug]) for slug in sorted(self.entities)]

    async def save_entity(self, entity: CatalogEntity) -> CatalogEntity:
        now = self.now()
        stored = copy.deepcopy(entity)
        existing = self.entities.get(entity.slug)
        stored.created_at = existing.created_at if existing else now
        if existing is not None and existing.flight_ready_since is not None:
            stored.flight_ready_since = existing.flight_ready_since
        stored.updated_at = now
        self.entities[entity.slug] = stored
        self.entity_writes += 1
        return copy.deepcopy(stored)

    async def clear_raw_payloads(self, slug: str, source: str | None = None) -> bool:
        entity = self.entities.get(slug)
        if entity is None:
            return False
        if source is None:
            entity.raw_payloads = {}
        else:
            entity.raw_payloads.pop(source, None)
        entity.content_hash = None
        return True

    async def clear_source_payloads(self, source: str) -> int:
        cleared = 0
        for entity in self.entities.values():
            if source in entity.raw_payloads:
                del entity.raw_payloads[source]
                entity.content_hash = None
                cleared += 1
        return cleared

    async def clear_stale_raw_payloads(self, older_than_days: int) -> int:
        threshold = self.now() - timedelta(days=older_than_days)
        cleared = 0
        for entity in self.entities.values():
            if entity.updated_at is not None and entity.updated_at < threshold and entity.raw_payloads:
                entity.raw_payloads = {}
                entity.content_hash = None
                cleared += 1
        return cleared

    async def get_mapping(self, canonical_name: str, source: str) -> IdentityMapping | None:
        mapping = self.mappings.get((canonical_name, source))
        return copy.copy(mapping) if mapping else None

    async def list_mappings(self, source: str | None = None) -> list[IdentityMapping]:
        return [
            copy.copy(self.mappings[key])
            for key in sorted(self.mappings)
            if source is None or key[1] == source
        ]

    async def upsert_mapping(self, mapping: IdentityMapping) -> IdentityMapping:
        now = self.now()
        key = (mapping.canonical_name, mapping.source)
        stored = copy.copy(mapping)
        existing = self.mappings.get(key)
        stored.created_at = existing.created_at if existing else now
        stored.updated_at = now
        self.mappings[key] = stored
        return copy.copy(stored)

    async def delete_mapping(self, canonical_name: str, source: str) -> bool:
        return self.mappings.pop((canonical_name, source), None) is not None

    async def delete_mappings(self, source: str, include_manual: bool) -> int:
        doomed = [
            key
            for key, mapping in self.mappings.items()
            if key[1] == source and (include_manual or not mapping.manual_override)
        ]
        for key in doomed:
            del self.mappings[key]
        return len(doomed)

    async def existing_content_hashes(self, hashes: list[str]) -> set[str]:
        return {item for item in hashes if item in self.content}

    async def upsert_content(self, record: ContentRecord, replace: bool) -> bool:
        if not record.hash:
            raise RepositoryValidationError("content record requires a hash")
        existing = self.content.get(record.hash)
        if existing is not None and not replace:
            return False
        stored = copy.deepcopy(record)
        stored.created_at = existing.created_at if existing else self.now()
        self.content[record.hash] = stored
        self.content_writes += 1
        return True

    async def list_content(self, kind: str, limit: int = 50) -> list[ContentRecord]:
        records = [record for record in self.content.values() if record.kind == kind]
        records.sort(key=self._content_sort_key, reverse=True)
        return [copy.deepcopy(record) for record in records[: max(1, min(limit, 500))]]

    async def prune_content(
        self,
        older_than_days: int,
        keep_status: int,
        keep_new_ships: int,
        new_ships_category: str,
    ) -> int:
        threshold = self.now() - timedelta(days=older_than_days)
        newest_first = sorted(self.content.values(), key=self._content_sort_key, reverse=True)
        keep = {record.hash for record in [r for r in newest_first if r.kind == "status"][:keep_status]}
        keep |= {
            record.hash
            for record in [r for r in newest_first if r.kind == "news" and r.category == new_ships_category][
                :keep_new_ships
            ]
        }
        doomed = [
            record.hash
            for record in newest_first
            if record.hash not in keep and self._content_sort_key(record) < threshold
        ]
        for content_hash in doomed:
            del self.content[content_hash]
        return len(doomed)

    async def save_snapshot(self, snapshot: SourceSnapshot) -> None:
        self.snapshots[snapshot.source] = copy.deepcopy(snapshot)

    async def get_snapshot(self, source: str) -> SourceSnapshot | None:
        snapshot = self.snapshots.get(source)
        return copy.deepcopy(snapshot) if snapshot else None

    async def record_audit(self, event: AuditEvent) -> None:
        stored = copy.deepcopy(event)
        stored.created_at = stored.created_at or self.now()
        self.audit_events.append(stored)

    async def list_audit(self, limit: int = 100) -> list[AuditEvent]:
        return [copy.deepcopy(event) for event in reversed(self.audit_events[-max(1, min(limit, 1000)) :])]

    def _running(self, run_id: str) -> SyncProgress | None:
        progress = self.progress.get(run_id)
        if progress is None or progress.status != "running":
            return None
        return progress

    def _finalize(self, progress: SyncProgress, status: str, error_message: str | None) -> None:
        now = self.now()
        progress.status = status  # type: ignore[assignment]
        progress.error_message = error_message
        progress.completed_at = now
        progress.updated_at = now

    def _pop_locks(self, predicate: Callable[[JobLock], bool]) -> list[JobLock]:
        doomed = [name for name, lock in self.locks.items() if predicate(lock)]
        return [self.locks.pop(name) for name in doomed]

    def _content_sort_key(self, record: ContentRecord) -> datetime:
        return record.published_at or record.created_at or datetime.min.replace(tzinfo=timezone.utc)
