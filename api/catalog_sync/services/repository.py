from __future__ import annotations

import json
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from catalog_sync.core.config import get_settings
from catalog_sync.services.models import (
    AuditEvent,
    CatalogEntity,
    ContentRecord,
    FieldPreference,
    IdentityMapping,
    JobLock,
    ProgressDelta,
    SourceSnapshot,
    SyncProgress,
)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class SyncRepository(Protocol):
    """Storage contract shared by the Postgres and in-memory backends."""

    def now(self) -> datetime: ...

    async def close(self) -> None: ...

    async def acquire_lock(self, job_name: str, holder_token: str, ttl_seconds: int) -> JobLock | None: ...

    async def release_lock(self, job_name: str, holder_token: str) -> bool: ...

    async def get_lock(self, job_name: str) -> JobLock | None: ...

    async def delete_expired_locks(self) -> list[JobLock]: ...

    async def delete_locks_held_by(self, holder_tokens: list[str]) -> list[JobLock]: ...

    async def delete_all_locks(self) -> list[JobLock]: ...

    async def create_progress(self, job_name: str, run_id: str, metadata: dict[str, Any]) -> SyncProgress: ...

    async def set_progress_total(self, run_id: str, total_items: int) -> SyncProgress | None: ...

    async def apply_progress_delta(self, run_id: str, delta: ProgressDelta) -> SyncProgress | None: ...

    async def finish_progress(self, run_id: str, status: str, error_message: str | None) -> SyncProgress | None: ...

    async def get_progress(self, run_id: str) -> SyncProgress | None: ...

    async def latest_progress(self, job_name: str) -> SyncProgress | None: ...

    async def fail_stale_progress(self, stale_after_seconds: int, message: str) -> list[SyncProgress]: ...

    async def cancel_running_progress(self, message: str) -> list[SyncProgress]: ...

    async def get_entity(self, slug: str) -> CatalogEntity | None: ...

    async def list_entities(self) -> list[CatalogEntity]: ...

    async def save_entity(self, entity: CatalogEntity) -> CatalogEntity: ...

    async def clear_raw_payloads(self, slug: str, source: str | None = None) -> bool: ...

    async def clear_source_payloads(self, source: str) -> int: ...

    async def clear_stale_raw_payloads(self, older_than_days: int) -> int: ...

    async def get_mapping(self, canonical_name: str, source: str) -> IdentityMapping | None: ...

    async def list_mappings(self, source: str | None = None) -> list[IdentityMapping]: ...

    async def upsert_mapping(self, mapping: IdentityMapping) -> IdentityMapping: ...

    async def delete_mapping(self, canonical_name: str, source: str) -> bool: ...

    async def delete_mappings(self, source: str, include_manual: bool) -> int: ...

    async def existing_content_hashes(self, hashes: list[str]) -> set[str]: ...

    async def upsert_content(self, record: ContentRecord, replace: bool) -> bool: ...

    async def list_content(self, kind: str, limit: int = 50) -> list[ContentRecord]: ...

    async def prune_content(
        self,
        older_than_days: int,
        keep_status: int,
        keep_new_ships: int,
        new_ships_category: str,
    ) -> int: ...

    async def save_snapshot(self, snapshot: SourceSnapshot) -> None: ...

    async def get_snapshot(self, source: str) -> SourceSnapshot | None: ...

    async def record_audit(self, event: AuditEvent) -> None: ...

    async def list_audit(self, limit: int = 100) -> list[AuditEvent]: ...


_PROGRESS_COLUMNS = """
  run_id::text as run_id,
  job_name,
  status,
  current_item,
  total_items,
  current_label,
  success_count,
  failed_count,
  skipped_count,
  started_at,
  updated_at,
  completed_at,
  error_message,
  failed_items,
  metadata
"""

_ENTITY_COLUMNS = """
  slug,
  name,
  raw_payloads,
  fields,
  preferences,
  manual_override,
  content_hash,
  flight_ready_since,
  created_at,
  updated_at
"""

_MAPPING_COLUMNS = """
  canonical_name,
  source,
  source_identifier,
  manual_override,
  validation_status,
  confidence,
  reason,
  set_by,
  last_validation_error,
  created_at,
  updated_at
"""

_CONTENT_COLUMNS = """
  hash,
  kind,
  category,
  title,
  source_url,
  excerpt,
  body,
  image_url,
  published_at,
  status,
  severity,
  source,
  created_at
"""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def acquire_lock(self, job_name: str, holder_token: str, ttl_seconds: int) -> JobLock | None:
        if ttl_seconds <= 0:
            raise RepositoryValidationError("lock ttl must be positive")
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into job_locks (job_name, holder_token, acquired_at, expires_at)
            values ($1, $2, now(), now() + ($3::int * interval '1 second'))
            on conflict (job_name) do update
            set
              holder_token = excluded.holder_token,
              acquired_at = excluded.acquired_at,
              expires_at = excluded.expires_at
            where job_locks.expires_at <= now()
            returning job_name, holder_token, acquired_at, expires_at
            """,
            job_name,
            holder_token,
            ttl_seconds,
        )
        return self._lock_from_row(row) if row else None

    async def release_lock(self, job_name: str, holder_token: str) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            delete from job_locks
            where job_name = $1 and holder_token = $2
            returning job_name
            """,
            job_name,
            holder_token,
        )
        return row is not None

    async def get_lock(self, job_name: str) -> JobLock | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "select job_name, holder_token, acquired_at, expires_at from job_locks where job_name = $1",
            job_name,
        )
        return self._lock_from_row(row) if row else None

    async def delete_expired_locks(self) -> list[JobLock]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            delete from job_locks
            where expires_at <= now()
            returning job_name, holder_token, acquired_at, expires_at
            """
        )
        return [self._lock_from_row(row) for row in rows]

    async def delete_locks_held_by(self, holder_tokens: list[str]) -> list[JobLock]:
        if not holder_tokens:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            delete from job_locks
            where holder_token = any($1::text[])
            returning job_name, holder_token, acquired_at, expires_at
            """,
            holder_tokens,
        )
        return [self._lock_from_row(row) for row in rows]

    async def delete_all_locks(self) -> list[JobLock]:
        pool = await self._get_pool()
        rows = await pool.fetch("delete from job_locks returning job_name, holder_token, acquired_at, expires_at")
        return [self._lock_from_row(row) for row in rows]

    async def create_progress(self, job_name: str, run_id: str, metadata: dict[str, Any]) -> SyncProgress:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into sync_progress (run_id, job_name, status, metadata)
                values ($1::uuid, $2, 'running', $3::jsonb)
                returning {_PROGRESS_COLUMNS}
                """,
                run_id,
                job_name,
                json.dumps(metadata),
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(f"run {run_id} already exists") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError(f"invalid run id: {run_id}") from exc
        return self._progress_from_row(row)

    async def set_progress_total(self, run_id: str, total_items: int) -> SyncProgress | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update sync_progress
            set total_items = $2, updated_at = now()
            where run_id = $1::uuid and status = 'running'
            returning {_PROGRESS_COLUMNS}
            """,
            run_id,
            max(0, total_items),
        )
        return self._progress_from_row(row) if row else None

    async def apply_progress_delta(self, run_id: str, delta: ProgressDelta) -> SyncProgress | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update sync_progress
            set
              current_item = current_item + $2,
              success_count = success_count + $3,
              failed_count = failed_count + $4,
              skipped_count = skipped_count + $5,
              current_label = coalesce($6, current_label),
              failed_items = case
                when $7::jsonb is null then failed_items
                else failed_items || jsonb_build_array($7::jsonb)
              end,
              updated_at = now()
            where run_id = $1::uuid and status = 'running'
            returning {_PROGRESS_COLUMNS}
            """,
            run_id,
            delta.advanced,
            delta.success,
            delta.failed,
            delta.skipped,
            delta.current_label,
            json.dumps(delta.failed_item) if delta.failed_item is not None else None,
        )
        return self._progress_from_row(row) if row else None

    async def finish_progress(self, run_id: str, status: str, error_message: str | None) -> SyncProgress | None:
        if status not in {"completed", "failed", "cancelled"}:
            raise RepositoryValidationError(f"invalid terminal status: {status}")
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update sync_progress
            set
              status = $2,
              error_message = $3,
              completed_at = now(),
              updated_at = now()
            where run_id = $1::uuid and status = 'running'
            returning {_PROGRESS_COLUMNS}
            """,
            run_id,
            status,
            error_message,
        )
        return self._progress_from_row(row) if row else None

    async def get_progress(self, run_id: str) -> SyncProgress | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_PROGRESS_COLUMNS} from sync_progress where run_id = $1::uuid",
                run_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._progress_from_row(row) if row else None

    async def latest_progress(self, job_name: str) -> SyncProgress | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_PROGRESS_COLUMNS}
            from sync_progress
            where job_name = $1
            order by started_at desc
            limit 1
            """,
            job_name,
        )
        return self._progress_from_row(row) if row else None

    async def fail_stale_progress(self, stale_after_seconds: int, message: str) -> list[SyncProgress]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            update sync_progress
            set
              status = 'failed',
              error_message = $2,
              completed_at = now(),
              updated_at = now()
            where status = 'running'
              and updated_at < now() - ($1::int * interval '1 second')
            returning {_PROGRESS_COLUMNS}
            """,
            stale_after_seconds,
            message,
        )
        return [self._progress_from_row(row) for row in rows]

    async def cancel_running_progress(self, message: str) -> list[SyncProgress]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            update sync_progress
            set
              status = 'cancelled',
              error_message = $1,
              completed_at = now(),
              updated_at = now()
            where status = 'running'
            returning {_PROGRESS_COLUMNS}
            """,
            message,
        )
        return [self._progress_from_row(row) for row in rows]

    async def get_entity(self, slug: str) -> CatalogEntity | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_ENTITY_COLUMNS} from catalog_entities where slug = $1", slug)
        return self._entity_from_row(row) if row else None

    async def list_entities(self) -> list[CatalogEntity]:
        pool = await self._get_pool()
        rows = await pool.fetch(f"select {_ENTITY_COLUMNS} from catalog_entities order by slug asc")
        return [self._entity_from_row(row) for row in rows]

    async def save_entity(self, entity: CatalogEntity) -> CatalogEntity:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into catalog_entities (
              slug,
              name,
              raw_payloads,
              fields,
              preferences,
              manual_override,
              content_hash,
              flight_ready_since
            )
            values ($1, $2, $3::jsonb, $4::jsonb, $5::jsonb, $6, $7, $8)
            on conflict (slug) do update
            set
              name = excluded.name,
              raw_payloads = excluded.raw_payloads,
              fields = excluded.fields,
              preferences = excluded.preferences,
              manual_override = excluded.manual_override,
              content_hash = excluded.content_hash,
              flight_ready_since = coalesce(catalog_entities.flight_ready_since, excluded.flight_ready_since),
              updated_at = now()
            returning {_ENTITY_COLUMNS}
            """,
            entity.slug,
            entity.name,
            json.dumps(entity.raw_payloads),
            json.dumps(entity.fields),
            json.dumps({group: pref.to_dict() for group, pref in entity.preferences.items()}),
            entity.manual_override,
            entity.content_hash,
            entity.flight_ready_since,
        )
        return self._entity_from_row(row)

    async def clear_raw_payloads(self, slug: str, source: str | None = None) -> bool:
        pool = await self._get_pool()
        if source is None:
            row = await pool.fetchrow(
                """
                update catalog_entities
                set raw_payloads = '{}'::jsonb, content_hash = null
                where slug = $1
                returning slug
                """,
                slug,
            )
        else:
            row = await pool.fetchrow(
                """
                update catalog_entities
                set raw_payloads = raw_payloads - $2, content_hash = null
                where slug = $1
                returning slug
                """,
                slug,
                source,
            )
        return row is not None

    async def clear_source_payloads(self, source: str) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            update catalog_entities
            set raw_payloads = raw_payloads - $1, content_hash = null
            where raw_payloads ? $1
            returning slug
            """,
            source,
        )
        return len(rows)

    async def clear_stale_raw_payloads(self, older_than_days: int) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            update catalog_entities
            set raw_payloads = '{}'::jsonb, content_hash = null
            where updated_at < now() - ($1::int * interval '1 day')
              and raw_payloads <> '{}'::jsonb
            returning slug
            """,
            older_than_days,
        )
        return len(rows)

    async def get_mapping(self, canonical_name: str, source: str) -> IdentityMapping | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {_MAPPING_COLUMNS} from identity_mappings where canonical_name = $1 and source = $2",
            canonical_name,
            source,
        )
        return self._mapping_from_row(row) if row else None

    async def list_mappings(self, source: str | None = None) -> list[IdentityMapping]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_MAPPING_COLUMNS}
            from identity_mappings
            where $1::text is null or source = $1
            order by canonical_name asc, source asc
            """,
            source,
        )
        return [self._mapping_from_row(row) for row in rows]

    async def upsert_mapping(self, mapping: IdentityMapping) -> IdentityMapping:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into identity_mappings (
                  canonical_name,
                  source,
                  source_identifier,
                  manual_override,
                  validation_status,
                  confidence,
                  reason,
                  set_by,
                  last_validation_error
                )
                values ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                on conflict (canonical_name, source) do update
                set
                  source_identifier = excluded.source_identifier,
                  manual_override = excluded.manual_override,
                  validation_status = excluded.validation_status,
                  confidence = excluded.confidence,
                  reason = excluded.reason,
                  set_by = excluded.set_by,
                  last_validation_error = excluded.last_validation_error,
                  updated_at = now()
                returning {_MAPPING_COLUMNS}
                """,
                mapping.canonical_name,
                mapping.source,
                mapping.source_identifier,
                mapping.manual_override,
                mapping.validation_status,
                mapping.confidence,
                mapping.reason,
                mapping.set_by,
                mapping.last_validation_error,
            )
        except pg_exc.CheckViolationError as exc:
            raise RepositoryValidationError(f"invalid validation status: {mapping.validation_status}") from exc
        return self._mapping_from_row(row)

    async def delete_mapping(self, canonical_name: str, source: str) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            delete from identity_mappings
            where canonical_name = $1 and source = $2
            returning canonical_name
            """,
            canonical_name,
            source,
        )
        return row is not None

    async def delete_mappings(self, source: str, include_manual: bool) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            delete from identity_mappings
            where source = $1 and ($2 or manual_override = false)
            returning canonical_name
            """,
            source,
            include_manual,
        )
        return len(rows)

    async def existing_content_hashes(self, hashes: list[str]) -> set[str]:
        if not hashes:
            return set()
        pool = await self._get_pool()
        rows = await pool.fetch("select hash from content_records where hash = any($1::text[])", hashes)
        return {row["hash"] for row in rows}

    async def upsert_content(self, record: ContentRecord, replace: bool) -> bool:
        if not record.hash:
            raise RepositoryValidationError("content record requires a hash")
        conflict_clause = (
            """
            do update set
              kind = excluded.kind,
              category = excluded.category,
              title = excluded.title,
              source_url = excluded.source_url,
              excerpt = excluded.excerpt,
              body = excluded.body,
              image_url = excluded.image_url,
              published_at = excluded.published_at,
              status = excluded.status,
              severity = excluded.severity,
              source = excluded.source
            """
            if replace
            else "do nothing"
        )
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into content_records (
              hash, kind, category, title, source_url, excerpt, body,
              image_url, published_at, status, severity, source
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            on conflict (hash) {conflict_clause}
            returning hash
            """,
            record.hash,
            record.kind,
            record.category,
            record.title,
            record.source_url,
            record.excerpt,
            record.body,
            record.image_url,
            record.published_at,
            record.status,
            record.severity,
            record.source,
        )
        return row is not None

    async def list_content(self, kind: str, limit: int = 50) -> list[ContentRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_CONTENT_COLUMNS}
            from content_records
            where kind = $1
            order by coalesce(published_at, created_at) desc
            limit $2
            """,
            kind,
            max(1, min(limit, 500)),
        )
        return [self._content_from_row(row) for row in rows]

    async def prune_content(
        self,
        older_than_days: int,
        keep_status: int,
        keep_new_ships: int,
        new_ships_category: str,
    ) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with keep_status as (
                      select hash from content_records
                      where kind = 'status'
                      order by coalesce(published_at, created_at) desc
                      limit $2
                    ),
                    keep_new_ships as (
                      select hash from content_records
                      where kind = 'news' and category = $4
                      order by coalesce(published_at, created_at) desc
                      limit $3
                    )
                    delete from content_records c
                    where coalesce(c.published_at, c.created_at) < now() - ($1::int * interval '1 day')
                      and c.hash not in (select hash from keep_status)
                      and c.hash not in (select hash from keep_new_ships)
                    returning c.hash
                    """,
                    older_than_days,
                    keep_status,
                    keep_new_ships,
                    new_ships_category,
                )
                return len(rows)

    async def save_snapshot(self, snapshot: SourceSnapshot) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into source_snapshots (source, records, fetched_at)
            values ($1, $2::jsonb, $3)
            on conflict (source) do update
            set records = excluded.records, fetched_at = excluded.fetched_at
            """,
            snapshot.source,
            json.dumps(snapshot.records),
            snapshot.fetched_at,
        )

    async def get_snapshot(self, source: str) -> SourceSnapshot | None:
        pool = await self._get_pool()
        row = await pool.fetchrow("select source, records, fetched_at from source_snapshots where source = $1", source)
        if not row:
            return None
        return SourceSnapshot(
            source=row["source"],
            records=self._coerce_json_list(row["records"]),
            fetched_at=row["fetched_at"],
        )

    async def record_audit(self, event: AuditEvent) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into audit_events (action, actor_type, actor_id, target, payload)
            values ($1, $2, $3, $4, $5::jsonb)
            """,
            event.action,
            event.actor_type,
            event.actor_id,
            event.target,
            json.dumps(event.payload, default=str),
        )

    async def list_audit(self, limit: int = 100) -> list[AuditEvent]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select action, actor_type, actor_id, target, payload, created_at
            from audit_events
            order by created_at desc, id desc
            limit $1
            """,
            max(1, min(limit, 1000)),
        )
        return [
            AuditEvent(
                action=row["action"],
                actor_type=row["actor_type"],
                actor_id=row["actor_id"],
                target=row["target"],
                payload=self._coerce_json_dict(row["payload"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("CS_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _lock_from_row(row: asyncpg.Record) -> JobLock:
        return JobLock(
            job_name=row["job_name"],
            holder_token=row["holder_token"],
            acquired_at=row["acquired_at"],
            expires_at=row["expires_at"],
        )

    @classmethod
    def _progress_from_row(cls, row: asyncpg.Record) -> SyncProgress:
        return SyncProgress(
            job_name=row["job_name"],
            run_id=row["run_id"],
            status=row["status"],
            started_at=row["started_at"],
            updated_at=row["updated_at"],
            current_item=row["current_item"],
            total_items=row["total_items"],
            current_label=row["current_label"],
            success_count=row["success_count"],
            failed_count=row["failed_count"],
            skipped_count=row["skipped_count"],
            completed_at=row["completed_at"],
            error_message=row["error_message"],
            failed_items=cls._coerce_json_list(row["failed_items"]),
            metadata=cls._coerce_json_dict(row["metadata"]),
        )

    @classmethod
    def _entity_from_row(cls, row: asyncpg.Record) -> CatalogEntity:
        preferences = {
            group: FieldPreference.from_dict(raw)
            for group, raw in cls._coerce_json_dict(row["preferences"]).items()
            if isinstance(raw, dict)
        }
        return CatalogEntity(
            slug=row["slug"],
            name=row["name"],
            raw_payloads=cls._coerce_json_dict(row["raw_payloads"]),
            fields=cls._coerce_json_dict(row["fields"]),
            preferences=preferences,
            manual_override=bool(row["manual_override"]),
            content_hash=row["content_hash"],
            flight_ready_since=row["flight_ready_since"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _mapping_from_row(row: asyncpg.Record) -> IdentityMapping:
        return IdentityMapping(
            canonical_name=row["canonical_name"],
            source=row["source"],
            source_identifier=row["source_identifier"],
            manual_override=bool(row["manual_override"]),
            validation_status=row["validation_status"],
            confidence=row["confidence"],
            reason=row["reason"],
            set_by=row["set_by"],
            last_validation_error=row["last_validation_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _content_from_row(row: asyncpg.Record) -> ContentRecord:
        return ContentRecord(
            kind=row["kind"],
            category=row["category"],
            title=row["title"],
            source_url=row["source_url"],
            excerpt=row["excerpt"],
            body=row["body"],
            image_url=row["image_url"],
            published_at=row["published_at"],
            status=row["status"],
            severity=row["severity"],
            source=row["source"],
            hash=row["hash"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _coerce_json_list(value: Any) -> list[dict[str, Any]]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return []
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> SyncRepository:
    settings = get_settings()
    if not settings.database_url:
        from catalog_sync.services.store import InMemoryStore

        return InMemoryStore()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
