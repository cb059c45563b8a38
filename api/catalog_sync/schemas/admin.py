from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

ValidationStatus = Literal["pending", "confirmed", "rejected"]
MappingFilter = Literal["all", "matched", "unmatched", "manual"]
PreferredSource = Literal["wiki", "fleetyards", "auto", "manual"]
FieldGroup = Literal["specs", "crew", "dimensions", "speeds", "cargo", "pricing", "armament", "systems"]


class CleanupOut(BaseModel):
    locks_removed: int
    progress_failed: int
    run_ids: list[str] = Field(default_factory=list)


class ForceStopOut(BaseModel):
    locks_removed: int
    progress_cancelled: int
    run_ids: list[str] = Field(default_factory=list)


class MappingOut(BaseModel):
    canonical_name: str
    source: str
    source_identifier: str | None = None
    manual_override: bool
    validation_status: ValidationStatus
    confidence: float | None = None
    reason: str | None = None
    set_by: str | None = None
    last_validation_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class MappingUpsertRequest(BaseModel):
    source_identifier: str | None = Field(default=None, min_length=1)
    manual_override: bool = True
    reason: str | None = Field(default=None, max_length=500)
    validation_status: ValidationStatus | None = None


class MappingCleanupRequest(BaseModel):
    include_manual: bool = False


class MappingCleanupOut(BaseModel):
    source: str
    mappings_deleted: int
    payloads_cleared: int


class MappingValidateRequest(BaseModel):
    source_identifier: str | None = Field(default=None, min_length=1)


class MappingValidationOut(BaseModel):
    canonical_name: str
    source: str
    source_identifier: str
    found: bool
    checks: dict[str, bool] = Field(default_factory=dict)
    completeness: float
    persisted: bool
    mapping: MappingOut | None = None


class PreferenceUpsertRequest(BaseModel):
    preferred_source: PreferredSource
    value: Any = None
    reason: str | None = Field(default=None, max_length=500)


class PreferenceOut(BaseModel):
    field_group: str
    preferred_source: PreferredSource
    value: Any = None
    set_by: str | None = None
    reason: str | None = None
    set_at: datetime | None = None


class EntityOut(BaseModel):
    slug: str
    name: str
    fields: dict[str, Any] = Field(default_factory=dict)
    preferences: dict[str, PreferenceOut] = Field(default_factory=dict)
    manual_override: bool
    content_hash: str | None = None
    flight_ready_since: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AuditEventOut(BaseModel):
    action: str
    actor_type: str
    actor_id: str | None = None
    target: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
