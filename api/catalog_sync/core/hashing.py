from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import Any

VOLATILE_FIELDS = frozenset(
    {
        "image_url",
        "model_glb_url",
        "published_at",
        "fetched_at",
        "created_at",
        "updated_at",
    }
)


def _strip(value: Any, excluded: frozenset[str]) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _strip(item, excluded) for key, item in value.items() if str(key) not in excluded}
    if isinstance(value, (list, tuple)):
        return [_strip(item, excluded) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_strip(item, excluded) for item in value), key=repr)
    return value


def _default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"unhashable value of type {type(value).__name__}")


def canonical_json(record: Any, excluded_fields: Iterable[str] | None = None) -> str:
    excluded = VOLATILE_FIELDS if excluded_fields is None else frozenset(excluded_fields)
    return json.dumps(
        _strip(record, excluded),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_default,
    )


def content_hash(record: Any, excluded_fields: Iterable[str] | None = None) -> str:
    """sha256 over the key-sorted JSON form of ``record`` minus volatile keys.

    Keys are dropped at every nesting level, so an ``image_url`` inside a
    per-source payload is excluded as well as a top-level one.
    """
    return hashlib.sha256(canonical_json(record, excluded_fields).encode("utf-8")).hexdigest()
