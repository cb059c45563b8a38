import json
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_JOB_INTERVALS = {
    "ships-sync": 6 * 3600.0,
    "news-sync": 3600.0,
    "server-status-sync": 900.0,
    "new-ships-sync": 3600.0,
    "content-retention": 24 * 3600.0,
    "raw-payload-retention": 24 * 3600.0,
}


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    module_id: str = "sync-scheduler"
    api_key: str = "local-scheduler-key"
    request_timeout_seconds: float = 900.0
    poll_interval_seconds: float = 30.0
    max_backoff_seconds: float = 300.0
    reaper_interval_seconds: float = 300.0
    job_intervals_json: str | None = None
    otel_enabled: bool = True
    otel_service_name: str = "fleet-catalog-sync-scheduler"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="CS_SCHEDULER_", extra="ignore")

    @property
    def job_intervals(self) -> dict[str, float]:
        if not self.job_intervals_json:
            return dict(DEFAULT_JOB_INTERVALS)
        parsed = json.loads(self.job_intervals_json)
        if not isinstance(parsed, dict):
            raise ValueError("job_intervals_json must be a JSON object of job name to seconds")
        intervals: dict[str, float] = {}
        for job_name, seconds in parsed.items():
            value = float(seconds)
            if value <= 0:
                raise ValueError(f"interval for {job_name} must be positive")
            intervals[str(job_name)] = value
        return intervals


@lru_cache
def get_settings() -> Settings:
    return Settings()
