from __future__ import annotations

from typing import Any

import httpx

from catalog_sync.services.models import ContentRecord
from catalog_sync.sources.base import FetchIssue, FetchStep, SourceAdapter, absolute_url, as_text
from catalog_sync.sources.feeds import entry_published_at, entry_text, fetch_feed

STATUS_CATEGORY = "Server Status"
STATUS_PAGE_URL = "https://status.robertsspaceindustries.com/"

# first matching rule wins
_STATUS_RULES = (
    (("resolved", "restored"), "operational", "info"),
    (("major outage", "offline", "down"), "major_outage", "critical"),
    (("partial outage", "partial"), "partial_outage", "error"),
    (("degraded", "slow", "latency", "investigating", "issue"), "degraded", "warning"),
    (("maintenance", "scheduled"), "maintenance", "info"),
    (("operational",), "operational", "info"),
)


def classify_status(*texts: str | None) -> tuple[str, str]:
    lowered = " ".join(text for text in texts if text).casefold()
    for markers, status, severity in _STATUS_RULES:
        if any(marker in lowered for marker in markers):
            return status, severity
    return "operational", "info"


def parse_status_entry(entry: dict[str, Any], base_url: str = STATUS_PAGE_URL) -> ContentRecord:
    title = entry_text(entry, "title")
    if not title:
        raise ValueError("status entry has no title")
    summary = entry_text(entry, "summary", "description")
    status, severity = classify_status(title, summary)
    return ContentRecord(
        kind="status",
        category=STATUS_CATEGORY,
        title=title,
        source_url=absolute_url(as_text(entry.get("link")), base_url) or base_url,
        excerpt=summary,
        body=summary,
        published_at=entry_published_at(entry),
        status=status,
        severity=severity,
        source="rsi-status",
    )


class StatusFeedAdapter(SourceAdapter[ContentRecord]):
    name = "rsi-status"

    def __init__(
        self,
        feed_url: str,
        *,
        limit: int = 20,
        user_agent: str = "fleet-catalog-sync/1.0",
        timeout_seconds: float = 15.0,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds)
        self.feed_url = feed_url
        self.limit = max(1, limit)
        self.user_agent = user_agent

    def steps(self, client: httpx.AsyncClient) -> list[tuple[str, FetchStep[ContentRecord]]]:
        async def feed() -> tuple[list[ContentRecord], list[FetchIssue]]:
            entries = await fetch_feed(client, self.feed_url, user_agent=self.user_agent)
            records: list[ContentRecord] = []
            issues: list[FetchIssue] = []
            for entry in entries[: self.limit]:
                try:
                    records.append(parse_status_entry(entry))
                except ValueError as exc:
                    issues.append(FetchIssue(source=self.name, item=as_text(entry.get("link")), message=str(exc)))
            return records, issues

        return [("rss", feed)]

    def restore(self, raw: dict[str, Any]) -> ContentRecord:
        return ContentRecord.from_dict(raw)

    def dump(self, record: ContentRecord) -> dict[str, Any]:
        return record.to_dict()
