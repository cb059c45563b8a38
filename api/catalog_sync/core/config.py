from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "fleet-catalog-sync-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    machine_api_keys_json: str | None = None
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0

    default_lock_ttl_seconds: int = 300
    catalog_lock_ttl_seconds: int = 600
    stale_after_seconds: int = 3600
    source_timeout_seconds: float = 15.0
    sync_max_concurrency: int = 4
    merge_source_priority: str = "wiki,fleetyards"
    fuzzy_match_threshold: float = 0.8
    fuzzy_match_margin: float = 0.05

    wiki_api_url: str = "https://starcitizen.tools/api.php"
    wiki_category: str = "Category:Ships"
    fleetyards_api_url: str = "https://api.fleetyards.net/v1"
    fleetyards_max_pages: int = 20
    comm_link_graphql_url: str = "https://robertsspaceindustries.com/api/hub/v1/graphql"
    comm_link_rss_url: str = "https://robertsspaceindustries.com/comm-link/rss"
    comm_link_limit: int = 20
    status_feed_url: str = "https://status.robertsspaceindustries.com/index.xml"
    user_agent: str = "fleet-catalog-sync/1.0"

    news_retention_days: int = 30
    status_keep_latest: int = 5
    new_ships_keep_latest: int = 5
    new_ships_window_days: int = 7
    new_ships_limit: int = 50
    raw_payload_retention_days: int = 30

    otel_enabled: bool = True
    otel_service_name: str = "fleet-catalog-sync-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="CS_", extra="ignore")

    @property
    def source_priority(self) -> tuple[str, ...]:
        return tuple(item.strip() for item in self.merge_source_priority.split(",") if item.strip())


@lru_cache
def get_settings() -> Settings:
    return Settings()
