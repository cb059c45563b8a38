from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

import httpx

from catalog_sync.jobs.runner import FatalRunError, RunContext, SyncJob, WorkItem
from catalog_sync.services.identity import IdentityMapper, slugify
from catalog_sync.services.models import (
    SOURCE_FLEETYARDS,
    SOURCE_WIKI,
    CatalogEntity,
    ContentRecord,
    VehiclePayload,
)
from catalog_sync.services.repository import SyncRepository
from catalog_sync.services.upsert import UpsertEngine
from catalog_sync.sources.base import FetchIssue, FetchResult, SourceAdapter, SourceUnavailableError
from catalog_sync.sources.fleetyards import FleetYardsAdapter
from catalog_sync.sources.wiki import WikiAdapter

logger = logging.getLogger(__name__)

NEW_SHIPS_CATEGORY = "New Ships"


async def fetch_source(
    repository: SyncRepository,
    adapter: SourceAdapter[Any],
    context: RunContext,
) -> FetchResult[Any] | None:
    """Fetch through the adapter's fallback chain; ``None`` when the source is unreachable."""
    snapshot = await repository.get_snapshot(adapter.name)
    try:
        result = await adapter.fetch(context.client, snapshot)
    except SourceUnavailableError as exc:
        logger.warning("source unreachable job=%s run=%s error=%s", context.job_name, context.run_id, exc)
        context.issues.append(FetchIssue(source=adapter.name, item=None, message=str(exc)))
        return None
    context.issues.extend(result.issues)
    if not result.from_snapshot:
        context.state.setdefault("snapshots", []).append(adapter.snapshot_of(result))
    return result


async def save_snapshots(repository: SyncRepository, context: RunContext) -> None:
    for snapshot in context.state.get("snapshots", []):
        await repository.save_snapshot(snapshot)


class CatalogSyncJob(SyncJob):
    """Vehicles: wiki pages define the catalog, the catalog API enriches it."""

    name = "ships-sync"

    def __init__(
        self,
        repository: SyncRepository,
        upsert: UpsertEngine,
        mapper: IdentityMapper,
        wiki: WikiAdapter,
        fleetyards: FleetYardsAdapter,
        *,
        ttl_seconds: int = 600,
        max_concurrency: int = 4,
    ) -> None:
        self.repository = repository
        self.upsert = upsert
        self.mapper = mapper
        self.wiki = wiki
        self.fleetyards = fleetyards
        self.ttl_seconds = ttl_seconds
        self.max_concurrency = max_concurrency

    async def plan(self, context: RunContext) -> list[WorkItem]:
        wiki_result = await fetch_source(self.repository, self.wiki, context)
        fleetyards_result = await fetch_source(self.repository, self.fleetyards, context)
        if wiki_result is None and fleetyards_result is None:
            reasons = "; ".join(issue.message for issue in context.issues if issue.item is None)
            raise FatalRunError(f"every vehicle source is unreachable: {reasons}")

        if fleetyards_result is not None:
            context.state["fleetyards_index"] = {
                payload.source_identifier: payload for payload in fleetyards_result.records
            }
            context.state["fleetyards_live"] = not fleetyards_result.from_snapshot

        items: dict[str, WorkItem] = {}
        if wiki_result is not None:
            for payload in wiki_result.records:
                slug = slugify(payload.name)
                if not slug or slug in items:
                    continue
                items[slug] = WorkItem(key=slug, label=payload.name, data={SOURCE_WIKI: payload})
        else:
            for entity in await self.repository.list_entities():
                items[entity.slug] = WorkItem(key=entity.slug, label=entity.name)
        return list(items.values())

    async def process(self, context: RunContext, item: WorkItem) -> bool:
        payloads: dict[str, VehiclePayload | None] = {SOURCE_WIKI: item.data.get(SOURCE_WIKI)}
        index: dict[str, VehiclePayload] | None = context.state.get("fleetyards_index")
        if index is not None:
            payloads[SOURCE_FLEETYARDS] = await self._fleetyards_payload(context, item, index)

        name = item.label
        if payloads[SOURCE_WIKI] is None:
            existing = await self.repository.get_entity(item.key)
            fleetyards = payloads.get(SOURCE_FLEETYARDS)
            name = existing.name if existing else fleetyards.name if fleetyards else item.label

        await context.ensure_running()
        outcome = await self.upsert.upsert_vehicle(item.key, name, payloads, force=context.force)
        return outcome.written

    async def _fleetyards_payload(
        self,
        context: RunContext,
        item: WorkItem,
        index: dict[str, VehiclePayload],
    ) -> VehiclePayload | None:
        resolution = await self.mapper.resolve(item.key, SOURCE_FLEETYARDS, index.keys())
        if not resolution.matched or resolution.source_identifier is None:
            logger.debug("entity unmatched job=%s entity=%s source=%s", context.job_name, item.key, SOURCE_FLEETYARDS)
            return None
        identifier = resolution.source_identifier
        fallback = index.get(identifier)
        if not context.state.get("fleetyards_live"):
            return fallback
        try:
            return await asyncio.wait_for(
                self.fleetyards.fetch_detail(context.client, identifier),
                timeout=self.fleetyards.timeout_seconds,
            )
        except (SourceUnavailableError, httpx.HTTPError, asyncio.TimeoutError) as exc:
            logger.warning(
                "fleetyards detail unavailable job=%s run=%s entity=%s identifier=%s error=%s",
                context.job_name,
                context.run_id,
                item.key,
                identifier,
                str(exc) or type(exc).__name__,
            )
            context.issues.append(FetchIssue(source=SOURCE_FLEETYARDS, item=identifier, message=str(exc)))
            return fallback

    async def finalize(self, context: RunContext) -> None:
        await save_snapshots(self.repository, context)


class ContentSyncJob(SyncJob):
    """News or status records from a single adapter; unreachable means fatal."""

    def __init__(
        self,
        name: str,
        repository: SyncRepository,
        upsert: UpsertEngine,
        adapter: SourceAdapter[ContentRecord],
        *,
        ttl_seconds: int = 300,
        max_concurrency: int = 4,
    ) -> None:
        self.name = name
        self.repository = repository
        self.upsert = upsert
        self.adapter = adapter
        self.ttl_seconds = ttl_seconds
        self.max_concurrency = max_concurrency

    async def plan(self, context: RunContext) -> list[WorkItem]:
        result = await fetch_source(self.repository, self.adapter, context)
        if result is None:
            raise FatalRunError(f"{self.adapter.name} is unreachable and has no snapshot")
        return [
            WorkItem(key=record.source_url, label=record.title, data={"record": record})
            for record in result.records
        ]

    async def process(self, context: RunContext, item: WorkItem) -> bool:
        record: ContentRecord = item.data["record"]
        await context.ensure_running()
        outcome = await self.upsert.upsert_content(record, force=context.force)
        return outcome.written

    async def finalize(self, context: RunContext) -> None:
        await save_snapshots(self.repository, context)


class NewShipsJob(SyncJob):
    """Announces entities that became flight ready recently as "New Ships" news.

    The flight ready timestamp and image stay out of the content hash, so a
    rerun over the same ships writes nothing.
    """

    name = "new-ships-sync"

    def __init__(
        self,
        repository: SyncRepository,
        upsert: UpsertEngine,
        *,
        window_days: int = 7,
        limit: int = 50,
        ttl_seconds: int = 300,
    ) -> None:
        self.repository = repository
        self.upsert = upsert
        self.window_days = window_days
        self.limit = limit
        self.ttl_seconds = ttl_seconds

    async def plan(self, context: RunContext) -> list[WorkItem]:
        since = self.repository.now() - timedelta(days=self.window_days)
        recent = [
            entity
            for entity in await self.repository.list_entities()
            if entity.flight_ready_since is not None and entity.flight_ready_since >= since
        ]
        recent.sort(key=lambda entity: entity.flight_ready_since, reverse=True)
        return [
            WorkItem(key=entity.slug, label=entity.name, data={"record": announcement(entity)})
            for entity in recent[: self.limit]
        ]

    async def process(self, context: RunContext, item: WorkItem) -> bool:
        await context.ensure_running()
        outcome = await self.upsert.upsert_content(item.data["record"], force=context.force)
        return outcome.written


def announcement(entity: CatalogEntity) -> ContentRecord:
    specs = entity.fields.get("specs") or {}
    manufacturer = specs.get("manufacturer")
    lines = [f"## {entity.name}", "", "**Now Flight Ready!**", ""]
    if manufacturer:
        lines.append(f"**Manufacturer:** {manufacturer}")
    if specs.get("role"):
        lines.append(f"**Role:** {specs['role']}")
    lines.extend(["", f"[View Ship Details](/ships/{entity.slug})"])

    image_url = None
    for payload in entity.raw_payloads.values():
        if payload and payload.get("image_url"):
            image_url = payload["image_url"]
            break

    return ContentRecord(
        kind="news",
        category=NEW_SHIPS_CATEGORY,
        title=f"Flight Ready: {entity.name}",
        source_url=f"/ships/{entity.slug}",
        excerpt=f"The {entity.name} by {manufacturer or 'Unknown'} is now flight ready.",
        body="\n".join(lines),
        image_url=image_url,
        published_at=entity.flight_ready_since,
        source="catalog",
    )


class ContentRetentionJob(SyncJob):
    name = "content-retention"

    def __init__(
        self,
        repository: SyncRepository,
        *,
        news_retention_days: int = 30,
        keep_status: int = 5,
        keep_new_ships: int = 5,
        ttl_seconds: int = 300,
    ) -> None:
        self.repository = repository
        self.news_retention_days = news_retention_days
        self.keep_status = keep_status
        self.keep_new_ships = keep_new_ships
        self.ttl_seconds = ttl_seconds

    async def plan(self, context: RunContext) -> list[WorkItem]:
        return [WorkItem(key="content", label=f"content older than {self.news_retention_days} days")]

    async def process(self, context: RunContext, item: WorkItem) -> bool:
        await context.ensure_running()
        deleted = await self.repository.prune_content(
            self.news_retention_days,
            self.keep_status,
            self.keep_new_ships,
            NEW_SHIPS_CATEGORY,
        )
        logger.info("content pruned job=%s run=%s deleted=%s", context.job_name, context.run_id, deleted)
        return deleted > 0


class RawPayloadRetentionJob(SyncJob):
    name = "raw-payload-retention"

    def __init__(self, repository: SyncRepository, *, retention_days: int = 30, ttl_seconds: int = 300) -> None:
        self.repository = repository
        self.retention_days = retention_days
        self.ttl_seconds = ttl_seconds

    async def plan(self, context: RunContext) -> list[WorkItem]:
        return [WorkItem(key="raw_payloads", label=f"raw payloads older than {self.retention_days} days")]

    async def process(self, context: RunContext, item: WorkItem) -> bool:
        await context.ensure_running()
        cleared = await self.repository.clear_stale_raw_payloads(self.retention_days)
        logger.info("raw payloads cleared job=%s run=%s entities=%s", context.job_name, context.run_id, cleared)
        return cleared > 0
