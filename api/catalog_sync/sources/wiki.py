from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from catalog_sync.services.models import SOURCE_WIKI, VehiclePayload
from catalog_sync.sources.base import (
    FetchIssue,
    FetchStep,
    SourceAdapter,
    SourceUnavailableError,
    as_text,
    get_json,
)
from catalog_sync.sources.wikitext import looks_like_vehicle, parse_vehicle_wikitext

logger = logging.getLogger(__name__)

EXCLUDED_TITLE_KEYWORDS = (
    "wip",
    "work in progress",
    "concept",
    "weapon",
    "gun",
    "missile",
    "torpedo",
    "component",
    "engine",
    "shield",
    "power plant",
    "thruster",
    "cooler",
    "quantum drive",
    "module",
    "turret",
    "mount",
    "list of",
    "comparison",
)
MAX_CATEGORY_PAGES = 10


def is_vehicle_title(title: str) -> bool:
    """Subpages, other namespaces and component/listing pages are not vehicles."""
    if not title or "/" in title or ":" in title:
        return False
    lowered = title.casefold()
    return not any(keyword in lowered for keyword in EXCLUDED_TITLE_KEYWORDS)


class WikiAdapter(SourceAdapter[VehiclePayload]):
    name = SOURCE_WIKI

    def __init__(
        self,
        api_url: str,
        category: str = "Category:Ships",
        timeout_seconds: float = 15.0,
        batch_size: int = 20,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds)
        self.api_url = api_url
        self.category = category
        self.batch_size = max(1, min(batch_size, 50))

    def steps(self, client: httpx.AsyncClient) -> list[tuple[str, FetchStep[VehiclePayload]]]:
        async def live() -> tuple[list[VehiclePayload], list[FetchIssue]]:
            return await self._fetch_live(client)

        return [("live", live)]

    def restore(self, raw: dict[str, Any]) -> VehiclePayload:
        return VehiclePayload.from_dict(raw)

    def dump(self, record: VehiclePayload) -> dict[str, Any]:
        return record.to_dict()

    async def list_titles(self, client: httpx.AsyncClient) -> list[str]:
        titles: list[str] = []
        params: dict[str, Any] = {
            "action": "query",
            "list": "categorymembers",
            "cmtitle": self.category,
            "cmlimit": 500,
            "cmnamespace": 0,
            "format": "json",
        }
        for _ in range(MAX_CATEGORY_PAGES):
            data = await get_json(client, self.api_url, params=params)
            members = (data.get("query") or {}).get("categorymembers") if isinstance(data, dict) else None
            if not isinstance(members, list):
                raise SourceUnavailableError("wiki category listing has no categorymembers")
            for member in members:
                title = as_text(member.get("title")) if isinstance(member, dict) else None
                if title and is_vehicle_title(title) and title not in titles:
                    titles.append(title)
            cursor = (data.get("continue") or {}).get("cmcontinue")
            if not cursor:
                break
            params = {**params, "cmcontinue": cursor}
        return titles

    async def _fetch_live(self, client: httpx.AsyncClient) -> tuple[list[VehiclePayload], list[FetchIssue]]:
        titles = await self.list_titles(client)
        if not titles:
            raise SourceUnavailableError(f"wiki category {self.category} returned no vehicle titles")

        records: list[VehiclePayload] = []
        issues: list[FetchIssue] = []
        failed_batches = 0
        batches = [titles[index : index + self.batch_size] for index in range(0, len(titles), self.batch_size)]
        for batch in batches:
            try:
                pages = await self._fetch_pages(client, batch)
            except (SourceUnavailableError, httpx.HTTPError) as exc:
                failed_batches += 1
                issues.extend(FetchIssue(source=self.name, item=title, message=str(exc)) for title in batch)
                continue
            for page in pages:
                title = as_text(page.get("title")) or "<untitled>"
                try:
                    records.append(self.parse_page(page))
                except ValueError as exc:
                    issues.append(FetchIssue(source=self.name, item=title, message=str(exc)))

        if failed_batches == len(batches):
            raise SourceUnavailableError("every wiki page batch failed")
        logger.info("wiki fetched titles=%s vehicles=%s issues=%s", len(titles), len(records), len(issues))
        return records, issues

    async def _fetch_pages(self, client: httpx.AsyncClient, titles: list[str]) -> list[dict[str, Any]]:
        data = await get_json(
            client,
            self.api_url,
            params={
                "action": "query",
                "titles": "|".join(titles),
                "prop": "revisions|pageimages|info",
                "rvprop": "content",
                "rvslots": "main",
                "piprop": "thumbnail|original",
                "pithumbsize": 800,
                "inprop": "url",
                "format": "json",
            },
        )
        pages = (data.get("query") or {}).get("pages") if isinstance(data, dict) else None
        if isinstance(pages, dict):
            pages = list(pages.values())
        if not isinstance(pages, list):
            raise SourceUnavailableError("wiki page query returned no pages")
        return [page for page in pages if isinstance(page, dict)]

    def parse_page(self, page: dict[str, Any]) -> VehiclePayload:
        title = as_text(page.get("title"))
        if not title:
            raise ValueError("page has no title")
        if "missing" in page or "invalid" in page:
            raise ValueError("page missing")

        wikitext = _page_wikitext(page)
        if not wikitext:
            raise ValueError("page has no wikitext")
        parsed = parse_vehicle_wikitext(wikitext)
        if not looks_like_vehicle(wikitext, parsed):
            raise ValueError("not a vehicle page: no manufacturer")

        return VehiclePayload(
            source=self.name,
            source_identifier=title,
            name=title,
            specs=parsed.get("specs"),
            crew=parsed.get("crew"),
            dimensions=parsed.get("dimensions"),
            speeds=parsed.get("speeds"),
            cargo=parsed.get("cargo"),
            pricing=parsed.get("pricing"),
            armament=parsed.get("armament"),
            systems=parsed.get("systems"),
            image_url=_page_image(page),
            source_url=as_text(page.get("fullurl")) or self._page_url(title),
        )

    def _page_url(self, title: str) -> str:
        base = self.api_url.rsplit("/", 1)[0]
        return f"{base}/{quote(title.replace(' ', '_'))}"


def _page_wikitext(page: dict[str, Any]) -> str | None:
    revisions = page.get("revisions")
    if not isinstance(revisions, list) or not revisions or not isinstance(revisions[0], dict):
        return None
    revision = revisions[0]
    main = (revision.get("slots") or {}).get("main") if isinstance(revision.get("slots"), dict) else None
    if isinstance(main, dict):
        return as_text(main.get("*")) or as_text(main.get("content"))
    return as_text(revision.get("*")) or as_text(revision.get("content"))


def _page_image(page: dict[str, Any]) -> str | None:
    for key in ("thumbnail", "original"):
        image = page.get(key)
        if isinstance(image, dict):
            source = as_text(image.get("source"))
            if source:
                return source
    return None
