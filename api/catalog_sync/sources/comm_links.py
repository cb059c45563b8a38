from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx

from catalog_sync.services.models import ContentRecord
from catalog_sync.sources.base import (
    FetchIssue,
    FetchStep,
    SourceAdapter,
    SourceUnavailableError,
    absolute_url,
    as_text,
    parse_timestamp,
)
from catalog_sync.sources.feeds import entry_category, entry_image, entry_published_at, entry_text, fetch_feed

RSI_BASE_URL = "https://robertsspaceindustries.com"
DEFAULT_CATEGORY = "Community"

COMM_LINK_QUERY = """
query {
  allCommLinks(limit: %d, sort: "-published_at") {
    id
    title
    slug
    url
    excerpt
    body
    category { name }
    channel { name }
    images { url }
    published_at
  }
}
"""


def parse_comm_link(item: dict[str, Any]) -> ContentRecord:
    title = as_text(item.get("title"))
    if not title:
        raise ValueError("comm-link has no title")
    source_url = absolute_url(as_text(item.get("url")), RSI_BASE_URL)
    if not source_url:
        slug = as_text(item.get("slug"))
        if not slug:
            raise ValueError("comm-link has no url")
        source_url = f"{RSI_BASE_URL}/comm-link/{slug}"

    category = None
    for key in ("category", "channel"):
        value = item.get(key)
        if isinstance(value, dict):
            category = as_text(value.get("name"))
        if category:
            break

    image_url = None
    images = item.get("images")
    if isinstance(images, list) and images and isinstance(images[0], dict):
        image_url = absolute_url(as_text(images[0].get("url")), RSI_BASE_URL)

    return ContentRecord(
        kind="news",
        category=category or DEFAULT_CATEGORY,
        title=title,
        source_url=source_url,
        excerpt=as_text(item.get("excerpt")),
        body=as_text(item.get("body")),
        image_url=image_url,
        published_at=parse_timestamp(item.get("published_at")),
        source="comm-link",
    )


def parse_feed_entry(entry: dict[str, Any]) -> ContentRecord:
    title = entry_text(entry, "title")
    link = absolute_url(as_text(entry.get("link")), RSI_BASE_URL)
    if not title or not link:
        raise ValueError("feed entry has no title or link")
    return ContentRecord(
        kind="news",
        category=entry_category(entry) or DEFAULT_CATEGORY,
        title=title,
        source_url=link,
        excerpt=entry_text(entry, "summary", "description"),
        body=entry_text(entry, "content", "summary"),
        image_url=entry_image(entry),
        published_at=entry_published_at(entry),
        source="comm-link-rss",
    )


class CommLinkAdapter(SourceAdapter[ContentRecord]):
    """Official news: GraphQL hub first, RSS feed second."""

    name = "comm-link"

    def __init__(
        self,
        graphql_url: str,
        rss_url: str,
        *,
        limit: int = 20,
        user_agent: str = "fleet-catalog-sync/1.0",
        timeout_seconds: float = 15.0,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds)
        self.graphql_url = graphql_url
        self.rss_url = rss_url
        self.limit = max(1, limit)
        self.user_agent = user_agent

    def steps(self, client: httpx.AsyncClient) -> list[tuple[str, FetchStep[ContentRecord]]]:
        async def graphql() -> tuple[list[ContentRecord], list[FetchIssue]]:
            return await self._fetch_graphql(client)

        async def rss() -> tuple[list[ContentRecord], list[FetchIssue]]:
            return await self._fetch_rss(client)

        return [("graphql", graphql), ("rss", rss)]

    def restore(self, raw: dict[str, Any]) -> ContentRecord:
        return ContentRecord.from_dict(raw)

    def dump(self, record: ContentRecord) -> dict[str, Any]:
        return record.to_dict()

    async def _fetch_graphql(self, client: httpx.AsyncClient) -> tuple[list[ContentRecord], list[FetchIssue]]:
        response = await client.post(
            self.graphql_url,
            json={"query": COMM_LINK_QUERY % self.limit},
            headers={"Accept": "application/json", "User-Agent": self.user_agent},
        )
        if response.status_code >= 400:
            raise SourceUnavailableError(f"comm-link graphql returned {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceUnavailableError("comm-link graphql returned unparsable JSON") from exc
        items = ((payload.get("data") or {}).get("allCommLinks")) if isinstance(payload, dict) else None
        if not isinstance(items, list):
            errors = payload.get("errors") if isinstance(payload, dict) else None
            raise SourceUnavailableError(f"comm-link graphql returned no allCommLinks: {errors or 'empty data'}")
        return self._parse_all(items, parse_comm_link)

    async def _fetch_rss(self, client: httpx.AsyncClient) -> tuple[list[ContentRecord], list[FetchIssue]]:
        entries = await fetch_feed(client, self.rss_url, user_agent=self.user_agent)
        return self._parse_all(entries[: self.limit], parse_feed_entry)

    def _parse_all(
        self, items: list[Any], parse: Callable[[dict[str, Any]], ContentRecord]
    ) -> tuple[list[ContentRecord], list[FetchIssue]]:
        records: list[ContentRecord] = []
        issues: list[FetchIssue] = []
        for item in items:
            if not isinstance(item, dict):
                issues.append(FetchIssue(source=self.name, item=None, message="entry is not an object"))
                continue
            try:
                records.append(parse(item))
            except ValueError as exc:
                issues.append(FetchIssue(source=self.name, item=as_text(item.get("title")), message=str(exc)))
        return records, issues
