from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal

from catalog_sync.core.hashing import content_hash
from catalog_sync.services.merge import DEFAULT_PRIORITY, MergeResult, merge
from catalog_sync.services.models import (
    CatalogEntity,
    ContentRecord,
    FieldPreference,
    VehiclePayload,
)
from catalog_sync.services.repository import RepositoryNotFoundError, SyncRepository

logger = logging.getLogger(__name__)

UpsertAction = Literal["inserted", "updated", "skipped"]

FLIGHT_READY_MARKERS = ("flight ready", "released", "flyable")


@dataclass(slots=True)
class UpsertOutcome:
    key: str
    action: UpsertAction
    content_hash: str

    @property
    def written(self) -> bool:
        return self.action != "skipped"


def entity_hash(name: str, fields: Mapping[str, Any], raw_payloads: Mapping[str, Any]) -> str:
    return content_hash({"name": name, "fields": fields, "raw_payloads": raw_payloads})


def content_record_hash(record: ContentRecord) -> str:
    return content_hash(record.hash_input())


def is_flight_ready(fields: Mapping[str, Any]) -> bool:
    specs = fields.get("specs")
    if not isinstance(specs, Mapping):
        return False
    status = specs.get("production_status")
    if not isinstance(status, str):
        return False
    lowered = status.casefold()
    return any(marker in lowered for marker in FLIGHT_READY_MARKERS)


class UpsertEngine:
    """Writes merged catalog entities and content records, one key at a time.

    A write happens only when the record's digest differs from the stored
    one, unless ``force`` is set.
    """

    def __init__(self, repository: SyncRepository, priority: Sequence[str] = DEFAULT_PRIORITY) -> None:
        self.repository = repository
        self.priority = tuple(priority)

    async def upsert_vehicle(
        self,
        slug: str,
        name: str,
        payloads: Mapping[str, VehiclePayload | None],
        *,
        force: bool = False,
    ) -> UpsertOutcome:
        existing = await self.repository.get_entity(slug)
        raw_payloads: dict[str, dict[str, Any] | None] = dict(existing.raw_payloads) if existing else {}
        for source, payload in payloads.items():
            if payload is not None:
                raw_payloads[source] = payload.to_dict()

        preferences = existing.preferences if existing else {}
        result = merge(existing.fields if existing else None, payloads, preferences, self.priority)
        digest = entity_hash(name, result.fields, raw_payloads)

        if existing is not None and existing.content_hash == digest and not force:
            logger.debug("entity unchanged slug=%s hash=%s", slug, digest)
            return UpsertOutcome(key=slug, action="skipped", content_hash=digest)

        entity = CatalogEntity(
            slug=slug,
            name=name,
            raw_payloads=raw_payloads,
            fields=result.fields,
            preferences=dict(preferences),
            content_hash=digest,
            flight_ready_since=existing.flight_ready_since if existing else None,
        )
        entity.refresh_manual_override()
        self._stamp_flight_ready(entity, result)
        await self.repository.save_entity(entity)
        action: UpsertAction = "updated" if existing is not None else "inserted"
        logger.info("entity %s slug=%s hash=%s", action, slug, digest)
        return UpsertOutcome(key=slug, action=action, content_hash=digest)

    async def remerge(self, slug: str) -> CatalogEntity:
        """Recompute an entity's fields from its stored raw payloads and preferences."""
        return await self._remerge_entity(await self._require_entity(slug))

    async def set_preference(self, slug: str, preference: FieldPreference) -> CatalogEntity:
        entity = await self._require_entity(slug)
        entity.preferences[preference.field_group] = preference
        return await self._remerge_entity(entity)

    async def clear_preference(self, slug: str, field_group: str | None = None) -> CatalogEntity:
        entity = await self._require_entity(slug)
        if field_group is None:
            entity.preferences = {}
        elif entity.preferences.pop(field_group, None) is None:
            raise RepositoryNotFoundError(f"no preference for {field_group} on {slug}")
        return await self._remerge_entity(entity)

    async def _remerge_entity(self, existing: CatalogEntity) -> CatalogEntity:
        slug = existing.slug
        payloads: dict[str, VehiclePayload | None] = {}
        for source, raw in existing.raw_payloads.items():
            if not raw:
                continue
            try:
                payloads[source] = VehiclePayload.from_dict(raw)
            except ValueError:
                logger.warning("stored payload unreadable slug=%s source=%s", slug, source)

        result = merge(existing.fields, payloads, existing.preferences, self.priority)
        existing.fields = result.fields
        existing.content_hash = entity_hash(existing.name, result.fields, existing.raw_payloads)
        existing.refresh_manual_override()
        self._stamp_flight_ready(existing, result)
        return await self.repository.save_entity(existing)

    async def upsert_content(self, record: ContentRecord, *, force: bool = False) -> UpsertOutcome:
        digest = content_record_hash(record)
        record.hash = digest
        existing = await self.repository.existing_content_hashes([digest])
        if digest in existing and not force:
            return UpsertOutcome(key=digest, action="skipped", content_hash=digest)
        written = await self.repository.upsert_content(record, replace=force)
        if not written:
            # a concurrent writer inserted the same digest first
            return UpsertOutcome(key=digest, action="skipped", content_hash=digest)
        action: UpsertAction = "updated" if digest in existing else "inserted"
        logger.info("content %s kind=%s hash=%s title=%s", action, record.kind, digest, record.title)
        return UpsertOutcome(key=digest, action=action, content_hash=digest)

    async def _require_entity(self, slug: str) -> CatalogEntity:
        entity = await self.repository.get_entity(slug)
        if entity is None:
            raise RepositoryNotFoundError(f"catalog entity not found: {slug}")
        return entity

    def _stamp_flight_ready(self, entity: CatalogEntity, result: MergeResult) -> None:
        if entity.flight_ready_since is None and is_flight_ready(result.fields):
            entity.flight_ready_since = self.repository.now()
            logger.info("entity flight ready slug=%s", entity.slug)
