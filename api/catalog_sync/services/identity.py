from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Literal

from catalog_sync.services.audit import record_event
from catalog_sync.services.models import VALIDATION_STATUSES, IdentityMapping
from catalog_sync.services.repository import (
    RepositoryNotFoundError,
    RepositoryValidationError,
    SyncRepository,
)

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_SLUG_RE = re.compile(r"[^a-z0-9]+")
_STOP_WORDS = {"a", "an", "and", "of", "the", "edition", "variant"}

ResolutionMethod = Literal["manual", "existing", "exact", "fuzzy", "unmatched"]
MappingFilter = Literal["all", "matched", "unmatched", "manual"]
MAPPING_FILTERS = {"all", "matched", "unmatched", "manual"}

COMPACT_MATCH_SCORE = 0.95


def slugify(value: str) -> str:
    return _SLUG_RE.sub("-", value.casefold()).strip("-")


def _tokenize(value: str | None) -> set[str]:
    if not value:
        return set()
    return {token for token in _TOKEN_RE.findall(value.casefold()) if token not in _STOP_WORDS}


def _jaccard(left: set[str], right: set[str]) -> float:
    if not left or not right:
        return 0.0
    union = len(left | right)
    if union <= 0:
        return 0.0
    return len(left & right) / union


def score_identifier(canonical_name: str, identifier: str) -> float:
    """Similarity in [0, 1] between a canonical name and a source identifier."""
    if slugify(canonical_name) == slugify(identifier):
        return 1.0
    if slugify(canonical_name).replace("-", "") == slugify(identifier).replace("-", ""):
        return COMPACT_MATCH_SCORE
    return _jaccard(_tokenize(canonical_name), _tokenize(identifier))


def rank_candidates(canonical_name: str, identifiers: Sequence[str], limit: int = 5) -> list[tuple[str, float]]:
    ranked = sorted(
        ((identifier, score_identifier(canonical_name, identifier)) for identifier in identifiers),
        key=lambda item: (-item[1], item[0]),
    )
    return ranked[:limit]


@dataclass(slots=True)
class Resolution:
    canonical_name: str
    source: str
    source_identifier: str | None
    method: ResolutionMethod
    confidence: float | None = None
    candidates: list[tuple[str, float]] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return self.source_identifier is not None


@dataclass(slots=True)
class MappingCleanup:
    source: str
    mappings_deleted: int
    payloads_cleared: int


@dataclass(slots=True)
class LookupResult:
    found: bool
    checks: dict[str, bool] = field(default_factory=dict)
    detail: str | None = None


@dataclass(slots=True)
class MappingValidation:
    canonical_name: str
    source: str
    source_identifier: str
    found: bool
    checks: dict[str, bool]
    completeness: float
    persisted: bool
    mapping: IdentityMapping | None = None


Lookup = Callable[[str], Awaitable[LookupResult]]


class IdentityMapper:
    def __init__(self, repository: SyncRepository, threshold: float = 0.8, margin: float = 0.05) -> None:
        self.repository = repository
        self.threshold = threshold
        self.margin = margin

    async def resolve(self, canonical_name: str, source: str, known_identifiers: Iterable[str]) -> Resolution:
        """Map ``canonical_name`` to one of ``known_identifiers`` or report Unmatched.

        Manual mappings win outright. A stored automatic mapping is reused
        while its identifier is still known. Otherwise an exact slug match is
        confirmed and an unambiguous fuzzy match is recorded as pending.
        """
        known = [identifier for identifier in dict.fromkeys(known_identifiers) if identifier]
        mapping = await self.repository.get_mapping(canonical_name, source)

        if mapping is not None and mapping.manual_override:
            if mapping.validation_status == "rejected" or not mapping.source_identifier:
                return Resolution(canonical_name, source, None, "unmatched")
            return Resolution(canonical_name, source, mapping.source_identifier, "manual", mapping.confidence)

        rejected: set[str] = set()
        if mapping is not None and mapping.source_identifier:
            if mapping.validation_status == "rejected":
                rejected.add(mapping.source_identifier)
            elif mapping.source_identifier in known:
                return Resolution(canonical_name, source, mapping.source_identifier, "existing", mapping.confidence)

        candidates = [identifier for identifier in known if identifier not in rejected]
        target = slugify(canonical_name)
        exact = next((identifier for identifier in candidates if slugify(identifier) == target), None)
        if exact is not None:
            await self._store_automatic(canonical_name, source, exact, 1.0, "confirmed", "exact slug match")
            return Resolution(canonical_name, source, exact, "exact", 1.0)

        ranked = rank_candidates(canonical_name, candidates, limit=len(candidates))
        top = ranked[:3]
        if ranked and ranked[0][1] >= self.threshold:
            runner_up = ranked[1][1] if len(ranked) > 1 else 0.0
            if ranked[0][1] - runner_up >= self.margin:
                identifier, score = ranked[0]
                await self._store_automatic(
                    canonical_name,
                    source,
                    identifier,
                    round(score, 4),
                    "pending",
                    "fuzzy name match",
                )
                return Resolution(canonical_name, source, identifier, "fuzzy", round(score, 4), top)
            logger.info(
                "identity ambiguous entity=%s source=%s candidates=%s",
                canonical_name,
                source,
                ",".join(f"{identifier}:{score:.2f}" for identifier, score in top),
            )

        return Resolution(canonical_name, source, None, "unmatched", candidates=top)

    async def set_mapping(
        self,
        canonical_name: str,
        source: str,
        source_identifier: str | None,
        *,
        manual_override: bool = True,
        reason: str | None = None,
        validation_status: str | None = None,
        actor_type: str = "system",
        actor_id: str | None = None,
    ) -> IdentityMapping:
        canonical = (canonical_name or "").strip()
        if not canonical:
            raise RepositoryValidationError("canonical_name must be a non-empty string")
        identifier = source_identifier.strip() if isinstance(source_identifier, str) else None
        status = validation_status or ("confirmed" if manual_override and identifier else "pending")
        if status not in VALIDATION_STATUSES:
            raise RepositoryValidationError("validation_status must be one of: pending, confirmed, rejected")

        mapping = await self.repository.upsert_mapping(
            IdentityMapping(
                canonical_name=canonical,
                source=source,
                source_identifier=identifier or None,
                manual_override=manual_override,
                validation_status=status,  # type: ignore[arg-type]
                confidence=1.0 if manual_override and identifier else None,
                reason=reason,
                set_by=actor_id,
            )
        )
        await record_event(
            self.repository,
            "mapping.upsert",
            actor_type=actor_type,
            actor_id=actor_id,
            target=f"{source}:{canonical}",
            payload={
                "source_identifier": mapping.source_identifier,
                "manual_override": mapping.manual_override,
                "validation_status": mapping.validation_status,
                "reason": reason,
            },
        )
        return mapping

    async def delete_mapping(
        self,
        canonical_name: str,
        source: str,
        *,
        actor_type: str = "system",
        actor_id: str | None = None,
    ) -> bool:
        """Delete a mapping and the entity's cached payload for that source."""
        deleted = await self.repository.delete_mapping(canonical_name, source)
        if not deleted:
            raise RepositoryNotFoundError(f"no {source} mapping for {canonical_name}")
        cleared = await self.repository.clear_raw_payloads(canonical_name, source)
        await record_event(
            self.repository,
            "mapping.delete",
            actor_type=actor_type,
            actor_id=actor_id,
            target=f"{source}:{canonical_name}",
            payload={"payload_cleared": cleared},
        )
        return cleared

    async def list_mappings(self, source: str, mapping_filter: str = "all") -> list[IdentityMapping]:
        if mapping_filter not in MAPPING_FILTERS:
            raise RepositoryValidationError("filter must be one of: all, matched, unmatched, manual")

        stored = await self.repository.list_mappings(source)
        known_names = {mapping.canonical_name for mapping in stored}
        unmapped = [
            IdentityMapping(canonical_name=entity.slug, source=source, source_identifier=None)
            for entity in await self.repository.list_entities()
            if entity.slug not in known_names
        ]

        if mapping_filter == "matched":
            return [mapping for mapping in stored if mapping.matched]
        if mapping_filter == "manual":
            return [mapping for mapping in stored if mapping.manual_override]
        if mapping_filter == "unmatched":
            items = [mapping for mapping in stored if not mapping.matched] + unmapped
        else:
            items = stored + unmapped
        return sorted(items, key=lambda mapping: mapping.canonical_name)

    async def cleanup(
        self,
        source: str,
        *,
        include_manual: bool = False,
        actor_type: str = "system",
        actor_id: str | None = None,
    ) -> MappingCleanup:
        """Wipe automatic mappings and cached payloads so the next run re-resolves."""
        deleted = await self.repository.delete_mappings(source, include_manual)
        cleared = await self.repository.clear_source_payloads(source)
        result = MappingCleanup(source=source, mappings_deleted=deleted, payloads_cleared=cleared)
        await record_event(
            self.repository,
            "mapping.cleanup",
            actor_type=actor_type,
            actor_id=actor_id,
            target=source,
            payload={
                "include_manual": include_manual,
                "mappings_deleted": deleted,
                "payloads_cleared": cleared,
            },
        )
        return result

    async def validate(
        self,
        canonical_name: str,
        source: str,
        lookup: Lookup,
        candidate: str | None = None,
    ) -> MappingValidation:
        mapping = await self.repository.get_mapping(canonical_name, source)
        identifier = candidate or (mapping.source_identifier if mapping else None)
        if not identifier:
            raise RepositoryNotFoundError(f"no {source} identifier to validate for {canonical_name}")

        result = await lookup(identifier)
        completeness = round(sum(result.checks.values()) / len(result.checks) * 100.0, 1) if result.checks else 0.0

        persisted = False
        if mapping is not None and mapping.source_identifier == identifier:
            mapping.validation_status = "confirmed" if result.found else "rejected"
            mapping.last_validation_error = None if result.found else (result.detail or "identifier not found")
            mapping = await self.repository.upsert_mapping(mapping)
            persisted = True

        logger.info(
            "identity validated entity=%s source=%s identifier=%s found=%s completeness=%.1f",
            canonical_name,
            source,
            identifier,
            result.found,
            completeness,
        )
        return MappingValidation(
            canonical_name=canonical_name,
            source=source,
            source_identifier=identifier,
            found=result.found,
            checks=dict(result.checks),
            completeness=completeness,
            persisted=persisted,
            mapping=mapping if persisted else None,
        )

    async def _store_automatic(
        self,
        canonical_name: str,
        source: str,
        identifier: str,
        confidence: float,
        status: str,
        reason: str,
    ) -> None:
        existing = await self.repository.get_mapping(canonical_name, source)
        if (
            existing is not None
            and existing.source_identifier == identifier
            and existing.validation_status == status
            and existing.confidence == confidence
        ):
            return
        await self.repository.upsert_mapping(
            IdentityMapping(
                canonical_name=canonical_name,
                source=source,
                source_identifier=identifier,
                manual_override=False,
                validation_status=status,  # type: ignore[arg-type]
                confidence=confidence,
                reason=reason,
            )
        )
        logger.info(
            "identity matched entity=%s source=%s identifier=%s status=%s confidence=%.2f",
            canonical_name,
            source,
            identifier,
            status,
            confidence,
        )
