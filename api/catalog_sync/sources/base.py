from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, ClassVar, Generic, TypeVar

import httpx
from opentelemetry import trace

from catalog_sync.services.models import SourceSnapshot

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")

ORIGIN_SNAPSHOT = "snapshot"


class SourceUnavailableError(Exception):
    """Raised when a source endpoint is unreachable or returns unusable data."""


@dataclass(slots=True)
class FetchIssue:
    source: str
    item: str | None
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source, "item": self.item, "message": self.message}


@dataclass(slots=True)
class FetchResult(Generic[T]):
    source: str
    origin: str
    records: list[T]
    fetched_at: datetime
    issues: list[FetchIssue] = field(default_factory=list)
    failed_steps: list[str] = field(default_factory=list)

    @property
    def issue_count(self) -> int:
        return len(self.issues)

    @property
    def from_snapshot(self) -> bool:
        return self.origin == ORIGIN_SNAPSHOT


FetchStep = Callable[[], Awaitable[tuple[list[T], list[FetchIssue]]]]


async def fetch_with_fallback(
    source: str,
    steps: Sequence[tuple[str, FetchStep[T]]],
    *,
    snapshot: SourceSnapshot | None,
    restore: Callable[[dict[str, Any]], T],
    timeout_seconds: float,
) -> FetchResult[T]:
    """Try each live step in order, then the cached snapshot.

    Every step runs under its own timeout. A step that raises
    ``SourceUnavailableError``, times out, or fails at the transport level
    moves the chain on. Only when every step and the snapshot are exhausted
    does the source count as unreachable.
    """
    failed: list[str] = []
    with tracer.start_as_current_span("source.fetch") as span:
        span.set_attribute("sync.source", source)
        for origin, step in steps:
            try:
                records, issues = await asyncio.wait_for(step(), timeout=timeout_seconds)
            except (SourceUnavailableError, httpx.HTTPError, asyncio.TimeoutError) as exc:
                reason = str(exc) or type(exc).__name__
                failed.append(f"{origin}: {reason}")
                logger.warning("source step failed source=%s step=%s error=%s", source, origin, reason)
                continue
            for issue in issues:
                logger.warning("source item dropped source=%s item=%s issue=%s", source, issue.item, issue.message)
            span.set_attribute("sync.source.origin", origin)
            span.set_attribute("sync.source.records", len(records))
            span.set_attribute("sync.source.issues", len(issues))
            return FetchResult(
                source=source,
                origin=origin,
                records=records,
                fetched_at=datetime.now(timezone.utc),
                issues=issues,
                failed_steps=failed,
            )

        if snapshot is not None:
            restored: list[T] = []
            snapshot_issues: list[FetchIssue] = []
            for raw in snapshot.records:
                try:
                    restored.append(restore(raw))
                except (KeyError, TypeError, ValueError) as exc:
                    snapshot_issues.append(
                        FetchIssue(source=source, item=None, message=f"unreadable snapshot record: {exc}")
                    )
            logger.warning(
                "source served from snapshot source=%s records=%s fetched_at=%s",
                source,
                len(restored),
                snapshot.fetched_at.isoformat(),
            )
            span.set_attribute("sync.source.origin", ORIGIN_SNAPSHOT)
            span.set_attribute("sync.source.records", len(restored))
            return FetchResult(
                source=source,
                origin=ORIGIN_SNAPSHOT,
                records=restored,
                fetched_at=snapshot.fetched_at,
                issues=snapshot_issues,
                failed_steps=failed,
            )

        span.set_attribute("sync.source.origin", "unavailable")
        raise SourceUnavailableError(f"{source} unavailable: " + "; ".join(failed or ["no endpoints configured"]))


class SourceAdapter(ABC, Generic[T]):
    """Fetches and normalizes one external source; never persists anything."""

    name: ClassVar[str]

    def __init__(self, timeout_seconds: float = 15.0) -> None:
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    def steps(self, client: httpx.AsyncClient) -> list[tuple[str, FetchStep[T]]]:
        """Live endpoints in fallback order."""

    @abstractmethod
    def restore(self, raw: dict[str, Any]) -> T:
        """Rebuild a normalized record from its snapshot form."""

    @abstractmethod
    def dump(self, record: T) -> dict[str, Any]:
        """Snapshot form of a normalized record."""

    async def fetch(self, client: httpx.AsyncClient, snapshot: SourceSnapshot | None = None) -> FetchResult[T]:
        return await fetch_with_fallback(
            self.name,
            self.steps(client),
            snapshot=snapshot,
            restore=self.restore,
            timeout_seconds=self.timeout_seconds,
        )

    def snapshot_of(self, result: FetchResult[T]) -> SourceSnapshot:
        return SourceSnapshot(
            source=self.name,
            records=[self.dump(record) for record in result.records],
            fetched_at=result.fetched_at,
        )


async def get_json(client: httpx.AsyncClient, url: str, *, params: dict[str, Any] | None = None) -> Any:
    response = await client.get(url, params=params)
    if response.status_code >= 400:
        raise SourceUnavailableError(f"GET {url} returned {response.status_code}")
    try:
        return response.json()
    except ValueError as exc:
        raise SourceUnavailableError(f"GET {url} returned unparsable JSON") from exc


def as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def as_int(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(float(str(value).replace(",", "").strip()))
    except (TypeError, ValueError, OverflowError):
        return None


def as_float(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(str(value).replace(",", "").strip())
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            try:
                dt = parsedate_to_datetime(raw)
            except (TypeError, ValueError):
                return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def absolute_url(value: str | None, base: str) -> str | None:
    if not value:
        return None
    if value.startswith("http://") or value.startswith("https://"):
        return value
    return f"{base.rstrip('/')}/{value.lstrip('/')}"
