from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

RunStatus = Literal["running", "completed", "failed", "cancelled"]


class RunRequest(BaseModel):
    force: bool = False
    auto_sync: bool = False


class RunResponse(BaseModel):
    ok: bool
    status: Literal["completed", "failed", "cancelled", "busy"]
    run_id: str | None = None
    upserts: int = 0
    errors: int = 0
    skipped: int = 0
    total: int = 0
    error: str | None = None


class RunErrorResponse(BaseModel):
    ok: bool = False
    error: str
    run_id: str | None = None


class ProgressOut(BaseModel):
    job_name: str
    run_id: str
    status: RunStatus
    current_item: int
    total_items: int
    current_label: str | None = None
    progress_percent: float
    success_count: int
    failed_count: int
    skipped_count: int
    started_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    error_message: str | None = None
    failed_items: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class JobOut(BaseModel):
    name: str
    ttl_seconds: int
    max_concurrency: int
