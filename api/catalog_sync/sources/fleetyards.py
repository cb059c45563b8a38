from __future__ import annotations

import logging
from typing import Any

import httpx

from catalog_sync.services.identity import LookupResult
from catalog_sync.services.models import (
    SOURCE_FLEETYARDS,
    Armament,
    Crew,
    Dimensions,
    Specs,
    Speeds,
    Systems,
    VehiclePayload,
    empty_armament,
    empty_systems,
)
from catalog_sync.sources.base import (
    FetchIssue,
    FetchStep,
    SourceAdapter,
    SourceUnavailableError,
    as_float,
    as_int,
    as_text,
    get_json,
)

logger = logging.getLogger(__name__)

PER_PAGE = 100
PUBLIC_SHIP_URL = "https://fleetyards.net/ships/{slug}"

_SYSTEM_CLASSES = (
    ("power_plant", "power", "power_plants"),
    ("shield", "power", "shield_generators"),
    ("cooler", "power", "coolers"),
    ("quantum_fuel", "propulsion", "quantum_fuel_tanks"),
    ("quantum", "propulsion", "quantum_drives"),
    ("jump", "propulsion", "jump_modules"),
    ("radar", "avionics", "radar"),
    ("computer", "avionics", "computer"),
    ("scanner", "avionics", "scanner"),
    ("ping", "avionics", "ping"),
    ("fuel_intake", "propulsion", "fuel_intakes"),
    ("fuel_tank", "propulsion", "fuel_tanks"),
)


def _pick(model: dict[str, Any], *paths: str) -> Any:
    """First non-null value among dotted ``paths`` (camelCase and nested shapes)."""
    for path in paths:
        current: Any = model
        for part in path.split("."):
            if not isinstance(current, dict):
                current = None
                break
            current = current.get(part)
        if current is not None and current != "":
            return current
    return None


def _numeric(value: float | None) -> int | float | None:
    if value is None:
        return None
    return int(value) if float(value).is_integer() else value


def parse_model(model: dict[str, Any]) -> VehiclePayload:
    slug = as_text(model.get("slug"))
    name = as_text(model.get("name"))
    if not slug or not name:
        raise ValueError("model has no slug or name")

    specs: Specs = {}
    manufacturer = _pick(model, "manufacturer.name", "manufacturer")
    if isinstance(manufacturer, str) and manufacturer.strip():
        specs["manufacturer"] = manufacturer.strip()
    for key, paths in (
        ("role", ("focus", "classificationLabel", "classification")),
        ("size", ("sizeLabel", "size")),
        ("production_status", ("productionStatus", "production_status")),
    ):
        value = as_text(_pick(model, *paths))
        if value:
            specs[key] = value  # type: ignore[literal-required]

    crew: Crew = {}
    crew_min = as_int(_pick(model, "minCrew", "crew.min", "metrics.minCrew"))
    crew_max = as_int(_pick(model, "maxCrew", "crew.max", "metrics.maxCrew"))
    if crew_min is not None:
        crew["min"] = crew_min
    if crew_max is not None:
        crew["max"] = crew_max

    dimensions: Dimensions = {}
    for key in ("length", "beam", "height"):
        number = _numeric(as_float(_pick(model, key, f"metrics.{key}")))
        if number:
            dimensions[key] = number  # type: ignore[literal-required]

    speeds: Speeds = {}
    scm = _numeric(as_float(_pick(model, "scmSpeed", "speeds.scmSpeed", "speeds.scm")))
    top = _numeric(as_float(_pick(model, "maxSpeed", "afterburnerSpeed", "speeds.maxSpeed", "speeds.max")))
    if scm:
        speeds["scm"] = scm
    if top:
        speeds["max"] = top

    cargo = _numeric(as_float(_pick(model, "cargo", "metrics.cargo")))
    price = _numeric(as_float(_pick(model, "pledgePrice", "price")))

    return VehiclePayload(
        source=SOURCE_FLEETYARDS,
        source_identifier=slug,
        name=name,
        specs=specs or None,
        crew=crew or None,
        dimensions=dimensions or None,
        speeds=speeds or None,
        cargo={"scu": cargo} if cargo else None,
        pricing={"prices": [{"amount": price, "currency": "USD"}]} if price else None,
        image_url=as_text(_pick(model, "storeImage", "media.storeImage.source", "storeImageLarge")),
        source_url=PUBLIC_SHIP_URL.format(slug=slug),
    )


def map_hardpoints(hardpoints: list[Any]) -> tuple[Armament, Systems]:
    armament = empty_armament()
    systems = empty_systems()
    for hardpoint in hardpoints:
        if not isinstance(hardpoint, dict):
            continue
        component = hardpoint.get("component") if isinstance(hardpoint.get("component"), dict) else {}
        label = as_text(component.get("name")) or as_text(hardpoint.get("name")) or "Unknown"
        size = as_text(str(hardpoint["size"])) if hardpoint.get("size") not in (None, "") else None
        item = f"S{size} {label}" if size else label

        category = (as_text(hardpoint.get("category")) or "").casefold()
        kind = (as_text(hardpoint.get("type")) or "").casefold()
        component_class = (as_text(component.get("component_class") or component.get("componentClass")) or "").casefold()
        name = (as_text(hardpoint.get("name")) or "").casefold()

        if category == "weapons":
            if "turret" in kind:
                armament["turrets"].append(item)
            elif "missile" in kind:
                armament["missiles"].append(item)
            else:
                armament["weapons"].append(item)
        elif category in {"turrets", "missiles", "utility"}:
            armament[category].append(item)  # type: ignore[literal-required]
        elif category == "countermeasures":
            armament["countermeasures"].append(item)
        elif category in {"systems", "propulsion", "avionics"}:
            placed = False
            for marker, group, key in _SYSTEM_CLASSES:
                if marker in component_class:
                    systems[group][key].append(item)  # type: ignore[literal-required]
                    placed = True
                    break
            if not placed and ("thruster" in kind or "thruster" in component_class):
                if "main" in name:
                    systems["thrusters"]["main"].append(item)
                elif "retro" in name:
                    systems["thrusters"]["retro"].append(item)
                else:
                    systems["thrusters"]["maneuvering"].append(item)
        elif category == "modules":
            systems["modular"]["utility_modules"].append(item)
    return armament, systems


class FleetYardsAdapter(SourceAdapter[VehiclePayload]):
    name = SOURCE_FLEETYARDS

    def __init__(self, api_url: str, max_pages: int = 20, timeout_seconds: float = 15.0) -> None:
        super().__init__(timeout_seconds=timeout_seconds)
        self.api_url = api_url.rstrip("/")
        self.max_pages = max(1, max_pages)

    def steps(self, client: httpx.AsyncClient) -> list[tuple[str, FetchStep[VehiclePayload]]]:
        async def index() -> tuple[list[VehiclePayload], list[FetchIssue]]:
            return await self._fetch_index(client)

        return [("live", index)]

    def restore(self, raw: dict[str, Any]) -> VehiclePayload:
        return VehiclePayload.from_dict(raw)

    def dump(self, record: VehiclePayload) -> dict[str, Any]:
        return record.to_dict()

    async def _fetch_index(self, client: httpx.AsyncClient) -> tuple[list[VehiclePayload], list[FetchIssue]]:
        records: list[VehiclePayload] = []
        issues: list[FetchIssue] = []
        for page in range(1, self.max_pages + 1):
            models = await get_json(client, f"{self.api_url}/models", params={"page": page, "perPage": PER_PAGE})
            if isinstance(models, dict) and "code" in models:
                raise SourceUnavailableError(f"fleetyards error: {models.get('message') or models.get('code')}")
            if not isinstance(models, list):
                raise SourceUnavailableError("fleetyards models response is not a list")
            for model in models:
                if not isinstance(model, dict):
                    issues.append(FetchIssue(source=self.name, item=None, message="model entry is not an object"))
                    continue
                try:
                    records.append(parse_model(model))
                except ValueError as exc:
                    issues.append(FetchIssue(source=self.name, item=as_text(model.get("slug")), message=str(exc)))
            if len(models) < PER_PAGE:
                break
        else:
            logger.warning("fleetyards page limit reached pages=%s", self.max_pages)
        logger.info("fleetyards fetched models=%s issues=%s", len(records), len(issues))
        return records, issues

    async def fetch_detail(self, client: httpx.AsyncClient, slug: str) -> VehiclePayload:
        """Model detail plus hardpoints for one resolved identifier."""
        model = await get_json(client, f"{self.api_url}/models/{slug}")
        if not isinstance(model, dict):
            raise SourceUnavailableError(f"fleetyards model {slug} is not an object")
        payload = parse_model(model)
        hardpoints = await get_json(client, f"{self.api_url}/models/{slug}/hardpoints")
        if isinstance(hardpoints, list):
            payload.armament, payload.systems = map_hardpoints(hardpoints)
        return payload

    async def lookup(self, client: httpx.AsyncClient, slug: str) -> LookupResult:
        response = await client.get(f"{self.api_url}/models/{slug}")
        if response.status_code == 404:
            return LookupResult(found=False, detail=f"fleetyards returned {response.status_code}")
        if response.status_code >= 400:
            raise SourceUnavailableError(f"fleetyards returned {response.status_code}")
        try:
            model = response.json()
        except ValueError as exc:
            raise SourceUnavailableError("fleetyards returned unparsable JSON") from exc
        if not isinstance(model, dict):
            return LookupResult(found=False, detail="fleetyards model is not an object")
        checks = {
            "has_hardpoints": bool(model.get("hardpoints")),
            "has_components": bool(model.get("components")),
            "has_images": bool(model.get("storeImage") or model.get("fleetchartImage")),
            "has_description": bool(model.get("description")),
            "has_specs": bool(model.get("length") or model.get("beam") or model.get("height")),
        }
        return LookupResult(found=True, checks=checks)
