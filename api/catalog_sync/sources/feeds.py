from __future__ import annotations

import calendar
from datetime import datetime, timezone
from typing import Any

import feedparser
import httpx

from catalog_sync.sources.base import SourceUnavailableError, as_text, parse_timestamp
from catalog_sync.sources.wikitext import clean_value


async def fetch_feed(client: httpx.AsyncClient, url: str, *, user_agent: str) -> list[dict[str, Any]]:
    """Fetch an RSS/Atom document over httpx and parse the bytes with feedparser."""
    response = await client.get(url, headers={"User-Agent": user_agent})
    if response.status_code >= 400:
        raise SourceUnavailableError(f"GET {url} returned {response.status_code}")
    parsed = feedparser.parse(response.content)
    entries = list(parsed.get("entries") or [])
    if not entries and parsed.get("bozo"):
        reason = parsed.get("bozo_exception")
        raise SourceUnavailableError(f"feed {url} is not parsable: {reason}")
    return entries


def entry_published_at(entry: dict[str, Any]) -> datetime | None:
    for key in ("published_parsed", "updated_parsed"):
        value = entry.get(key)
        if value:
            return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    return parse_timestamp(entry.get("published") or entry.get("updated"))


def entry_text(entry: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = as_text(entry.get(key))
        if value:
            return clean_value(value) or None
    return None


def entry_image(entry: dict[str, Any]) -> str | None:
    for key in ("media_content", "media_thumbnail"):
        media = entry.get(key)
        if isinstance(media, list):
            for item in media:
                url = as_text(item.get("url")) if isinstance(item, dict) else None
                if url:
                    return url
    for enclosure in entry.get("enclosures") or []:
        if isinstance(enclosure, dict) and str(enclosure.get("type", "")).startswith("image/"):
            url = as_text(enclosure.get("href"))
            if url:
                return url
    return None


def entry_category(entry: dict[str, Any]) -> str | None:
    for tag in entry.get("tags") or []:
        term = as_text(tag.get("term")) if isinstance(tag, dict) else None
        if term:
            return term
    return None
