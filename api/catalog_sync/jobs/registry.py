from __future__ import annotations

from functools import lru_cache

import httpx

from catalog_sync.core.config import Settings, get_settings
from catalog_sync.jobs.definitions import (
    CatalogSyncJob,
    ContentRetentionJob,
    ContentSyncJob,
    NewShipsJob,
    RawPayloadRetentionJob,
)
from catalog_sync.jobs.runner import ClientFactory, JobRunner, SyncJob
from catalog_sync.services.identity import IdentityMapper
from catalog_sync.services.progress import ProgressBroadcaster, ProgressTracker
from catalog_sync.services.reaper import ZombieReaper
from catalog_sync.services.repository import SyncRepository, get_repository
from catalog_sync.services.upsert import UpsertEngine
from catalog_sync.sources.comm_links import CommLinkAdapter
from catalog_sync.sources.fleetyards import FleetYardsAdapter
from catalog_sync.sources.status import StatusFeedAdapter
from catalog_sync.sources.wiki import WikiAdapter

NEWS_JOB = "news-sync"
STATUS_JOB = "server-status-sync"


def build_jobs(settings: Settings, repository: SyncRepository) -> dict[str, SyncJob]:
    upsert = UpsertEngine(repository, priority=settings.source_priority)
    mapper = IdentityMapper(
        repository,
        threshold=settings.fuzzy_match_threshold,
        margin=settings.fuzzy_match_margin,
    )
    timeout = settings.source_timeout_seconds
    jobs: list[SyncJob] = [
        CatalogSyncJob(
            repository,
            upsert,
            mapper,
            WikiAdapter(settings.wiki_api_url, category=settings.wiki_category, timeout_seconds=timeout),
            FleetYardsAdapter(
                settings.fleetyards_api_url,
                max_pages=settings.fleetyards_max_pages,
                timeout_seconds=timeout,
            ),
            ttl_seconds=settings.catalog_lock_ttl_seconds,
            max_concurrency=settings.sync_max_concurrency,
        ),
        ContentSyncJob(
            NEWS_JOB,
            repository,
            upsert,
            CommLinkAdapter(
                settings.comm_link_graphql_url,
                settings.comm_link_rss_url,
                limit=settings.comm_link_limit,
                user_agent=settings.user_agent,
                timeout_seconds=timeout,
            ),
            ttl_seconds=settings.default_lock_ttl_seconds,
            max_concurrency=settings.sync_max_concurrency,
        ),
        ContentSyncJob(
            STATUS_JOB,
            repository,
            upsert,
            StatusFeedAdapter(settings.status_feed_url, user_agent=settings.user_agent, timeout_seconds=timeout),
            ttl_seconds=settings.default_lock_ttl_seconds,
            max_concurrency=settings.sync_max_concurrency,
        ),
        NewShipsJob(
            repository,
            upsert,
            window_days=settings.new_ships_window_days,
            limit=settings.new_ships_limit,
            ttl_seconds=settings.default_lock_ttl_seconds,
        ),
        ContentRetentionJob(
            repository,
            news_retention_days=settings.news_retention_days,
            keep_status=settings.status_keep_latest,
            keep_new_ships=settings.new_ships_keep_latest,
            ttl_seconds=settings.default_lock_ttl_seconds,
        ),
        RawPayloadRetentionJob(
            repository,
            retention_days=settings.raw_payload_retention_days,
            ttl_seconds=settings.default_lock_ttl_seconds,
        ),
    ]
    return {job.name: job for job in jobs}


def build_runner(
    settings: Settings,
    repository: SyncRepository,
    broadcaster: ProgressBroadcaster | None = None,
    client_factory: ClientFactory | None = None,
) -> JobRunner:
    tracker = ProgressTracker(repository, broadcaster)
    reaper = ZombieReaper(repository, tracker, settings.stale_after_seconds)
    if client_factory is None:

        def client_factory() -> httpx.AsyncClient:
            return httpx.AsyncClient(
                timeout=settings.source_timeout_seconds,
                headers={"User-Agent": settings.user_agent},
                follow_redirects=True,
            )

    return JobRunner(
        repository,
        build_jobs(settings, repository),
        tracker=tracker,
        reaper=reaper,
        client_factory=client_factory,
    )


@lru_cache
def get_broadcaster() -> ProgressBroadcaster:
    return ProgressBroadcaster()


@lru_cache
def get_job_runner() -> JobRunner:
    return build_runner(get_settings(), get_repository(), get_broadcaster())
