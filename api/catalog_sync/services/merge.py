"""Deterministic field-group merge across per-source vehicle payloads.

For every field group the first rule that yields a value wins:

1. a preference set by an administrator for that entity: ``manual`` keeps
   the stored value, a source name pins the group to that source (falling
   back to the prior merged value when the pinned source has nothing);
   ``auto`` behaves as if no preference were set;
2. the first source in ``priority`` whose payload for the group has data;
3. the prior merged value, so a group is never erased because every
   source came back empty.

``merge`` reads only its arguments and returns a new mapping.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from catalog_sync.services.models import (
    FIELD_GROUPS,
    SOURCE_FLEETYARDS,
    SOURCE_WIKI,
    FieldPreference,
    VehiclePayload,
    has_data,
)

DEFAULT_PRIORITY: tuple[str, ...] = (SOURCE_WIKI, SOURCE_FLEETYARDS)
SCALAR_FIELDS = ("image_url", "source_url")

PROVENANCE_MANUAL = "manual"
PROVENANCE_PRIOR = "prior"
PROVENANCE_NONE = "none"


@dataclass(slots=True)
class MergeResult:
    fields: dict[str, Any]
    provenance: dict[str, str] = field(default_factory=dict)

    def source_for(self, group: str) -> str:
        return self.provenance.get(group, PROVENANCE_NONE)


def merge(
    prior_fields: Mapping[str, Any] | None,
    sources: Mapping[str, VehiclePayload | None],
    preferences: Mapping[str, FieldPreference] | None = None,
    priority: Sequence[str] = DEFAULT_PRIORITY,
) -> MergeResult:
    prior = prior_fields or {}
    prefs = preferences or {}
    order = _effective_order(priority, sources)

    fields: dict[str, Any] = {}
    provenance: dict[str, str] = {}

    for group in FIELD_GROUPS:
        value, origin = _resolve_group(group, prior.get(group), sources, prefs.get(group), order)
        if value is not None:
            fields[group] = copy.deepcopy(value)
        provenance[group] = origin

    for name in SCALAR_FIELDS:
        value, origin = _resolve_scalar(name, prior.get(name), sources, order)
        if value is not None:
            fields[name] = value
        provenance[name] = origin

    return MergeResult(fields=fields, provenance=provenance)


def _effective_order(priority: Sequence[str], sources: Mapping[str, VehiclePayload | None]) -> list[str]:
    # sources missing from the configured priority follow it in name order
    order = [name for name in priority if name in sources]
    order.extend(sorted(name for name in sources if name not in order))
    return order


def _resolve_group(
    group: str,
    prior_value: Any,
    sources: Mapping[str, VehiclePayload | None],
    preference: FieldPreference | None,
    order: Sequence[str],
) -> tuple[Any, str]:
    if preference is not None and preference.preferred_source == "manual":
        if preference.value is not None:
            return preference.value, PROVENANCE_MANUAL
        return prior_value, PROVENANCE_MANUAL if prior_value is not None else PROVENANCE_NONE

    if preference is not None and preference.preferred_source != "auto":
        payload = sources.get(preference.preferred_source)
        candidate = payload.group(group) if payload is not None else None
        if has_data(candidate):
            return candidate, preference.preferred_source
        return prior_value, PROVENANCE_PRIOR if prior_value is not None else PROVENANCE_NONE

    for name in order:
        payload = sources.get(name)
        if payload is None:
            continue
        candidate = payload.group(group)
        if has_data(candidate):
            return candidate, name

    if prior_value is not None:
        return prior_value, PROVENANCE_PRIOR
    return None, PROVENANCE_NONE


def _resolve_scalar(
    name: str,
    prior_value: Any,
    sources: Mapping[str, VehiclePayload | None],
    order: Sequence[str],
) -> tuple[Any, str]:
    for source in order:
        payload = sources.get(source)
        if payload is None:
            continue
        candidate = getattr(payload, name)
        if has_data(candidate):
            return candidate, source
    if prior_value is not None:
        return prior_value, PROVENANCE_PRIOR
    return None, PROVENANCE_NONE
