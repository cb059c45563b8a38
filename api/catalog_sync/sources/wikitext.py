"""Infobox-style wikitext extraction for vehicle pages."""

from __future__ import annotations

import math
import re
from typing import Any

from catalog_sync.services.models import (
    Armament,
    Crew,
    Dimensions,
    Pricing,
    Specs,
    Speeds,
    Systems,
    empty_armament,
    empty_systems,
)

_LINK_WITH_LABEL_RE = re.compile(r"\[\[([^\]|]+)\|([^\]]+)\]\]")
_LINK_RE = re.compile(r"\[\[([^\]]+)\]\]")
_TEMPLATE_RE = re.compile(r"\{\{[^}]+\}\}")
_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")

_EMPTY_VALUES = {"", "n/a", "na", "none", "-", "unknown", "tbd", "?"}

_MANUFACTURER_PATTERNS = (
    re.compile(r"\|\s*manufacturer\s*=\s*\[\[([^\]|]+)(?:\|[^\]]+)?\]\]", re.IGNORECASE),
    re.compile(r"\|\s*manufacturer\s*=\s*([^\n|{]+)", re.IGNORECASE),
)
_ROLE_PATTERNS = (re.compile(r"\|\s*(?:focus|role|career|classification|type)\s*=\s*([^\n|{]+)", re.IGNORECASE),)
_SIZE_PATTERNS = (
    re.compile(r"\|\s*size\s*=\s*([^\n|{]+)", re.IGNORECASE),
    re.compile(r"\|\s*(?:vehicle[\s_-]size|ship[\s_-]size)\s*=\s*([^\n|{]+)", re.IGNORECASE),
)
_STATUS_PATTERNS = (
    re.compile(r"\|\s*(?:production[\s_-]?status|status|availability)\s*=\s*([^\n|{]+)", re.IGNORECASE),
    re.compile(r"status\s*=\s*\[\[([^\]|]+)", re.IGNORECASE),
)
_PATCH_PATTERNS = (re.compile(r"\|\s*(?:patch|version|release)\s*=\s*([^\n|{]+)", re.IGNORECASE),)

_CREW_MIN_PATTERNS = (
    re.compile(r"\|\s*(?:min[\s_-]?crew|crew[\s_-]?min)\s*=\s*(\d+)", re.IGNORECASE),
    re.compile(r"\|\s*crew\s*=\s*(\d+)(?:\s*[-–—]\s*\d+)?", re.IGNORECASE),
)
_CREW_MAX_PATTERNS = (
    re.compile(r"\|\s*(?:max[\s_-]?crew|crew[\s_-]?max)\s*=\s*(\d+)", re.IGNORECASE),
    re.compile(r"\|\s*crew\s*=\s*\d+\s*[-–—]\s*(\d+)", re.IGNORECASE),
)
_CARGO_PATTERNS = (
    re.compile(r"\|\s*cargo[\s_-]?(?:capacity)?\s*=\s*([\d.,]+)", re.IGNORECASE),
    re.compile(r"\|\s*scu\s*=\s*([\d.,]+)", re.IGNORECASE),
)
_LENGTH_PATTERNS = (re.compile(r"\|\s*length\s*=\s*([\d.,]+)", re.IGNORECASE),)
_BEAM_PATTERNS = (re.compile(r"\|\s*(?:beam|width)\s*=\s*([\d.,]+)", re.IGNORECASE),)
_HEIGHT_PATTERNS = (re.compile(r"\|\s*height\s*=\s*([\d.,]+)", re.IGNORECASE),)
_SCM_PATTERNS = (re.compile(r"\|\s*(?:scm[\s_-]?speed|speed[\s_-]?scm)\s*=\s*([\d.,]+)", re.IGNORECASE),)
_MAX_SPEED_PATTERNS = (
    re.compile(r"\|\s*(?:max[\s_-]?speed|afterburner[\s_-]?speed|speed[\s_-]?max)\s*=\s*([\d.,]+)", re.IGNORECASE),
)
_PRICE_PATTERNS = (
    re.compile(r"\|\s*(?:price|pledge[\s_-]?price|msrp)\s*=\s*\$?\s*([\d,]+)", re.IGNORECASE),
    re.compile(r"\$\s*([\d,]+)\s*usd", re.IGNORECASE),
)

_ARMAMENT_PATTERNS = {
    "weapons": re.compile(r"\|\s*weapons?\s*=\s*([^\n|]+)", re.IGNORECASE),
    "turrets": re.compile(r"\|\s*turrets?\s*=\s*([^\n|]+)", re.IGNORECASE),
    "missiles": re.compile(r"\|\s*missiles?\s*=\s*([^\n|]+)", re.IGNORECASE),
    "utility": re.compile(r"\|\s*utility[\s_-]?items?\s*=\s*([^\n|]+)", re.IGNORECASE),
    "countermeasures": re.compile(r"\|\s*countermeasures?\s*=\s*([^\n|]+)", re.IGNORECASE),
}

_SYSTEM_PATTERNS = {
    "avionics": {
        "radar": re.compile(r"\|\s*(?:radar|avionics)\s*=\s*([^\n|]+)", re.IGNORECASE),
        "computer": re.compile(r"\|\s*computer\s*=\s*([^\n|]+)", re.IGNORECASE),
        "ping": re.compile(r"\|\s*ping\s*=\s*([^\n|]+)", re.IGNORECASE),
        "scanner": re.compile(r"\|\s*scanner\s*=\s*([^\n|]+)", re.IGNORECASE),
    },
    "propulsion": {
        "fuel_intakes": re.compile(r"\|\s*fuel[\s_-]?intakes?\s*=\s*([^\n|]+)", re.IGNORECASE),
        "fuel_tanks": re.compile(r"\|\s*fuel[\s_-]?tanks?\s*=\s*([^\n|]+)", re.IGNORECASE),
        "quantum_drives": re.compile(r"\|\s*quantum[\s_-]?drives?\s*=\s*([^\n|]+)", re.IGNORECASE),
        "quantum_fuel_tanks": re.compile(r"\|\s*quantum[\s_-]?fuel[\s_-]?tanks?\s*=\s*([^\n|]+)", re.IGNORECASE),
        "jump_modules": re.compile(r"\|\s*jump[\s_-]?modules?\s*=\s*([^\n|]+)", re.IGNORECASE),
    },
    "thrusters": {
        "main": re.compile(r"\|\s*main[\s_-]?thrusters?\s*=\s*([^\n|]+)", re.IGNORECASE),
        "maneuvering": re.compile(r"\|\s*(?:maneuvering|maneuver)[\s_-]?thrusters?\s*=\s*([^\n|]+)", re.IGNORECASE),
        "retro": re.compile(r"\|\s*retro[\s_-]?thrusters?\s*=\s*([^\n|]+)", re.IGNORECASE),
    },
    "power": {
        "power_plants": re.compile(r"\|\s*power[\s_-]?plants?\s*=\s*([^\n|]+)", re.IGNORECASE),
        "coolers": re.compile(r"\|\s*coolers?\s*=\s*([^\n|]+)", re.IGNORECASE),
        "shield_generators": re.compile(r"\|\s*shield[\s_-]?generators?\s*=\s*([^\n|]+)", re.IGNORECASE),
    },
    "modular": {
        "cargo_modules": re.compile(r"\|\s*cargo[\s_-]?modules?\s*=\s*([^\n|]+)", re.IGNORECASE),
        "hab_modules": re.compile(r"\|\s*hab(?:itation)?[\s_-]?modules?\s*=\s*([^\n|]+)", re.IGNORECASE),
        "weapon_modules": re.compile(r"\|\s*weapon[\s_-]?modules?\s*=\s*([^\n|]+)", re.IGNORECASE),
        "utility_modules": re.compile(r"\|\s*utility[\s_-]?modules?\s*=\s*([^\n|]+)", re.IGNORECASE),
    },
}


def clean_value(value: str | None) -> str:
    if not value:
        return ""
    cleaned = _COMMENT_RE.sub("", value)
    cleaned = _LINK_WITH_LABEL_RE.sub(r"\2", cleaned)
    cleaned = _LINK_RE.sub(r"\1", cleaned)
    cleaned = _TEMPLATE_RE.sub("", cleaned)
    cleaned = _TAG_RE.sub("", cleaned)
    return _WS_RE.sub(" ", cleaned).strip()


def _meaningful(value: str) -> str | None:
    return value if value.casefold() not in _EMPTY_VALUES else None


def _first_text(text: str, patterns: tuple[re.Pattern[str], ...]) -> str | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            value = _meaningful(clean_value(match.group(1)))
            if value:
                return value
    return None


def _first_number(text: str, patterns: tuple[re.Pattern[str], ...]) -> float | None:
    for pattern in patterns:
        match = pattern.search(text)
        if not match:
            continue
        raw = match.group(1).replace(",", "").strip()
        try:
            number = float(raw)
        except ValueError:
            continue
        if math.isfinite(number):
            return number
    return None


def _collect(text: str, pattern: re.Pattern[str]) -> list[str]:
    values: list[str] = []
    for match in pattern.finditer(text):
        value = _meaningful(clean_value(match.group(1)))
        if value and value not in values:
            values.append(value)
    return values


def _numeric(value: float) -> int | float:
    return int(value) if value.is_integer() else value


def parse_vehicle_wikitext(wikitext: str) -> dict[str, Any]:
    """Extract field groups from a vehicle page; groups with no data are omitted."""
    text = wikitext or ""
    parsed: dict[str, Any] = {}

    specs: Specs = {}
    for key, patterns in (
        ("manufacturer", _MANUFACTURER_PATTERNS),
        ("role", _ROLE_PATTERNS),
        ("size", _SIZE_PATTERNS),
        ("production_status", _STATUS_PATTERNS),
        ("patch", _PATCH_PATTERNS),
    ):
        value = _first_text(text, patterns)
        if value:
            specs[key] = value  # type: ignore[literal-required]
    if specs:
        parsed["specs"] = specs

    crew: Crew = {}
    crew_min = _first_number(text, _CREW_MIN_PATTERNS)
    crew_max = _first_number(text, _CREW_MAX_PATTERNS)
    if crew_min is not None:
        crew["min"] = int(crew_min)
    if crew_max is not None:
        crew["max"] = int(crew_max)
    if crew:
        parsed["crew"] = crew

    dimensions: Dimensions = {}
    for key, patterns in (("length", _LENGTH_PATTERNS), ("beam", _BEAM_PATTERNS), ("height", _HEIGHT_PATTERNS)):
        number = _first_number(text, patterns)
        if number is not None:
            dimensions[key] = _numeric(number)  # type: ignore[literal-required]
    if dimensions:
        parsed["dimensions"] = dimensions

    speeds: Speeds = {}
    scm = _first_number(text, _SCM_PATTERNS)
    top = _first_number(text, _MAX_SPEED_PATTERNS)
    if scm is not None:
        speeds["scm"] = _numeric(scm)
    if top is not None:
        speeds["max"] = _numeric(top)
    if speeds:
        parsed["speeds"] = speeds

    cargo = _first_number(text, _CARGO_PATTERNS)
    if cargo is not None:
        parsed["cargo"] = {"scu": _numeric(cargo)}

    price = _first_number(text, _PRICE_PATTERNS)
    if price is not None and price > 0:
        pricing: Pricing = {"prices": [{"amount": _numeric(price), "currency": "USD"}]}
        parsed["pricing"] = pricing

    armament: Armament = empty_armament()
    for key, pattern in _ARMAMENT_PATTERNS.items():
        armament[key] = _collect(text, pattern)  # type: ignore[literal-required]
    parsed["armament"] = armament

    systems: Systems = empty_systems()
    for group, patterns in _SYSTEM_PATTERNS.items():
        for key, pattern in patterns.items():
            systems[group][key] = _collect(text, pattern)  # type: ignore[literal-required]
    parsed["systems"] = systems

    return parsed


def looks_like_vehicle(wikitext: str, parsed: dict[str, Any]) -> bool:
    specs = parsed.get("specs") or {}
    return bool(specs.get("manufacturer")) or "manufacturer" in (wikitext or "").casefold()
