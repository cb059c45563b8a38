from typing import Literal

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from catalog_sync.core.auth import SCOPE_ADMIN, Principal
from catalog_sync.core.security import get_principal
from catalog_sync.jobs.definitions import CatalogSyncJob
from catalog_sync.jobs.registry import get_job_runner
from catalog_sync.jobs.runner import JobRunner
from catalog_sync.schemas.admin import (
    AuditEventOut,
    CleanupOut,
    EntityOut,
    FieldGroup,
    ForceStopOut,
    MappingCleanupOut,
    MappingCleanupRequest,
    MappingFilter,
    MappingOut,
    MappingUpsertRequest,
    MappingValidateRequest,
    MappingValidationOut,
    PreferenceOut,
    PreferenceUpsertRequest,
)
from catalog_sync.services.audit import record_event
from catalog_sync.services.models import CatalogEntity, FieldPreference, IdentityMapping
from catalog_sync.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from catalog_sync.sources.base import SourceUnavailableError

router = APIRouter()

VehicleSource = Literal["wiki", "fleetyards"]


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    try:
        principal.require_scopes({SCOPE_ADMIN})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    return principal


def get_catalog_job(runner: JobRunner = Depends(get_job_runner)) -> CatalogSyncJob:
    job = runner.jobs.get(CatalogSyncJob.name)
    if not isinstance(job, CatalogSyncJob):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="catalog sync is not configured")
    return job


def mapping_out(mapping: IdentityMapping) -> MappingOut:
    return MappingOut(
        canonical_name=mapping.canonical_name,
        source=mapping.source,
        source_identifier=mapping.source_identifier,
        manual_override=mapping.manual_override,
        validation_status=mapping.validation_status,
        confidence=mapping.confidence,
        reason=mapping.reason,
        set_by=mapping.set_by,
        last_validation_error=mapping.last_validation_error,
        created_at=mapping.created_at,
        updated_at=mapping.updated_at,
    )


def entity_out(entity: CatalogEntity) -> EntityOut:
    return EntityOut(
        slug=entity.slug,
        name=entity.name,
        fields=entity.fields,
        preferences={group: PreferenceOut(**pref.to_dict()) for group, pref in entity.preferences.items()},
        manual_override=entity.manual_override,
        content_hash=entity.content_hash,
        flight_ready_since=entity.flight_ready_since,
        created_at=entity.created_at,
        updated_at=entity.updated_at,
    )


@router.post("/sync/cleanup", response_model=CleanupOut)
async def cleanup_zombies(
    principal: Principal = Depends(require_admin),
    runner: JobRunner = Depends(get_job_runner),
) -> CleanupOut:
    try:
        result = await runner.reaper.cleanup(actor_type=principal.actor_type, actor_id=principal.actor_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return CleanupOut(
        locks_removed=result.locks_removed,
        progress_failed=result.progress_failed,
        run_ids=result.run_ids,
    )


@router.post("/sync/force-stop", response_model=ForceStopOut)
async def force_stop(
    principal: Principal = Depends(require_admin),
    runner: JobRunner = Depends(get_job_runner),
) -> ForceStopOut:
    try:
        result = await runner.reaper.force_stop(actor_type=principal.actor_type, actor_id=principal.actor_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ForceStopOut(
        locks_removed=result.locks_removed,
        progress_cancelled=result.progress_cancelled,
        run_ids=result.run_ids,
    )


@router.get("/mappings/{source}", response_model=list[MappingOut])
async def list_mappings(
    source: VehicleSource,
    _: Principal = Depends(require_admin),
    job: CatalogSyncJob = Depends(get_catalog_job),
    mapping_filter: MappingFilter = Query(default="all", alias="filter"),
) -> list[MappingOut]:
    try:
        mappings = await job.mapper.list_mappings(source, mapping_filter)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [mapping_out(mapping) for mapping in mappings]


@router.put("/mappings/{source}/{canonical_name}", response_model=MappingOut)
async def upsert_mapping(
    source: VehicleSource,
    canonical_name: str,
    payload: MappingUpsertRequest,
    principal: Principal = Depends(require_admin),
    job: CatalogSyncJob = Depends(get_catalog_job),
) -> MappingOut:
    try:
        mapping = await job.mapper.set_mapping(
            canonical_name,
            source,
            payload.source_identifier,
            manual_override=payload.manual_override,
            reason=payload.reason,
            validation_status=payload.validation_status,
            actor_type=principal.actor_type,
            actor_id=principal.actor_id,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return mapping_out(mapping)


@router.delete("/mappings/{source}/{canonical_name}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_mapping(
    source: VehicleSource,
    canonical_name: str,
    principal: Principal = Depends(require_admin),
    job: CatalogSyncJob = Depends(get_catalog_job),
) -> Response:
    try:
        await job.mapper.delete_mapping(
            canonical_name,
            source,
            actor_type=principal.actor_type,
            actor_id=principal.actor_id,
        )
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/mappings/{source}/cleanup", response_model=MappingCleanupOut)
async def cleanup_mappings(
    source: VehicleSource,
    payload: MappingCleanupRequest | None = None,
    principal: Principal = Depends(require_admin),
    job: CatalogSyncJob = Depends(get_catalog_job),
) -> MappingCleanupOut:
    request = payload or MappingCleanupRequest()
    try:
        result = await job.mapper.cleanup(
            source,
            include_manual=request.include_manual,
            actor_type=principal.actor_type,
            actor_id=principal.actor_id,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return MappingCleanupOut(
        source=result.source,
        mappings_deleted=result.mappings_deleted,
        payloads_cleared=result.payloads_cleared,
    )


@router.post("/mappings/fleetyards/{canonical_name}/validate", response_model=MappingValidationOut)
async def validate_mapping(
    canonical_name: str,
    payload: MappingValidateRequest | None = None,
    principal: Principal = Depends(require_admin),
    job: CatalogSyncJob = Depends(get_catalog_job),
    runner: JobRunner = Depends(get_job_runner),
) -> MappingValidationOut:
    request = payload or MappingValidateRequest()
    async with runner.client_factory() as client:

        async def lookup(identifier: str):
            return await job.fleetyards.lookup(client, identifier)

        try:
            result = await job.mapper.validate(
                canonical_name,
                job.fleetyards.name,
                lookup,
                candidate=request.source_identifier,
            )
        except RepositoryNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except (SourceUnavailableError, httpx.HTTPError) as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
        except RepositoryUnavailableError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    await record_event(
        runner.repository,
        "mapping.validate",
        actor_type=principal.actor_type,
        actor_id=principal.actor_id,
        target=f"{result.source}:{canonical_name}",
        payload={"source_identifier": result.source_identifier, "found": result.found, "persisted": result.persisted},
    )
    return MappingValidationOut(
        canonical_name=result.canonical_name,
        source=result.source,
        source_identifier=result.source_identifier,
        found=result.found,
        checks=result.checks,
        completeness=result.completeness,
        persisted=result.persisted,
        mapping=mapping_out(result.mapping) if result.mapping else None,
    )


@router.get("/entities/{slug}", response_model=EntityOut)
async def get_entity(
    slug: str,
    _: Principal = Depends(require_admin),
    runner: JobRunner = Depends(get_job_runner),
) -> EntityOut:
    try:
        entity = await runner.repository.get_entity(slug)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if entity is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"catalog entity not found: {slug}")
    return entity_out(entity)


@router.put("/entities/{slug}/preferences/{field_group}", response_model=EntityOut)
async def set_preference(
    slug: str,
    field_group: FieldGroup,
    payload: PreferenceUpsertRequest,
    principal: Principal = Depends(require_admin),
    job: CatalogSyncJob = Depends(get_catalog_job),
) -> EntityOut:
    if payload.preferred_source == "manual" and payload.value is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail="manual preference requires a value",
        )
    preference = FieldPreference(
        field_group=field_group,
        preferred_source=payload.preferred_source,
        value=payload.value,
        set_by=principal.actor_id,
        reason=payload.reason,
        set_at=job.repository.now(),
    )
    try:
        entity = await job.upsert.set_preference(slug, preference)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    await record_event(
        job.repository,
        "preference.set",
        actor_type=principal.actor_type,
        actor_id=principal.actor_id,
        target=f"{slug}:{field_group}",
        payload={"preferred_source": payload.preferred_source, "reason": payload.reason},
    )
    return entity_out(entity)


@router.delete("/entities/{slug}/preferences/{field_group}", response_model=EntityOut)
async def clear_preference(
    slug: str,
    field_group: FieldGroup,
    principal: Principal = Depends(require_admin),
    job: CatalogSyncJob = Depends(get_catalog_job),
) -> EntityOut:
    try:
        entity = await job.upsert.clear_preference(slug, field_group)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    await record_event(
        job.repository,
        "preference.clear",
        actor_type=principal.actor_type,
        actor_id=principal.actor_id,
        target=f"{slug}:{field_group}",
    )
    return entity_out(entity)


@router.get("/audit", response_model=list[AuditEventOut])
async def list_audit(
    _: Principal = Depends(require_admin),
    runner: JobRunner = Depends(get_job_runner),
    limit: int = Query(default=100, ge=1, le=500),
) -> list[AuditEventOut]:
    try:
        events = await runner.repository.list_audit(limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [
        AuditEventOut(
            action=event.action,
            actor_type=event.actor_type,
            actor_id=event.actor_id,
            target=event.target,
            payload=event.payload,
            created_at=event.created_at,
        )
        for event in events
    ]
