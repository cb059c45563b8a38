from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal, TypedDict

SOURCE_WIKI = "wiki"
SOURCE_FLEETYARDS = "fleetyards"
VEHICLE_SOURCES = (SOURCE_WIKI, SOURCE_FLEETYARDS)

FIELD_GROUPS = (
    "specs",
    "crew",
    "dimensions",
    "speeds",
    "cargo",
    "pricing",
    "armament",
    "systems",
)

RunStatus = Literal["running", "completed", "failed", "cancelled"]
TerminalStatus = Literal["completed", "failed", "cancelled"]
ValidationStatus = Literal["pending", "confirmed", "rejected"]
PreferredSource = Literal["wiki", "fleetyards", "auto", "manual"]
ContentKind = Literal["news", "status"]

RUN_STATUSES = {"running", "completed", "failed", "cancelled"}
TERMINAL_STATUSES = {"completed", "failed", "cancelled"}
VALIDATION_STATUSES = {"pending", "confirmed", "rejected"}
PREFERRED_SOURCES = {"wiki", "fleetyards", "auto", "manual"}


class Specs(TypedDict, total=False):
    manufacturer: str
    role: str
    size: str
    production_status: str
    patch: str


class Crew(TypedDict, total=False):
    min: int
    max: int


class Dimensions(TypedDict, total=False):
    length: float
    beam: float
    height: float


class Speeds(TypedDict, total=False):
    scm: float
    max: float


class Cargo(TypedDict, total=False):
    scu: float


class Price(TypedDict):
    amount: float
    currency: str


class Pricing(TypedDict, total=False):
    prices: list[Price]


class Armament(TypedDict):
    weapons: list[str]
    turrets: list[str]
    missiles: list[str]
    utility: list[str]
    countermeasures: list[str]


class Systems(TypedDict):
    avionics: dict[str, list[str]]
    propulsion: dict[str, list[str]]
    thrusters: dict[str, list[str]]
    power: dict[str, list[str]]
    modular: dict[str, list[str]]


def empty_armament() -> Armament:
    return {"weapons": [], "turrets": [], "missiles": [], "utility": [], "countermeasures": []}


def empty_systems() -> Systems:
    return {
        "avionics": {"radar": [], "computer": [], "ping": [], "scanner": []},
        "propulsion": {
            "fuel_intakes": [],
            "fuel_tanks": [],
            "quantum_drives": [],
            "quantum_fuel_tanks": [],
            "jump_modules": [],
        },
        "thrusters": {"main": [], "maneuvering": [], "retro": []},
        "power": {"power_plants": [], "coolers": [], "shield_generators": []},
        "modular": {"cargo_modules": [], "hab_modules": [], "weapon_modules": [], "utility_modules": []},
    }


def has_data(value: Any) -> bool:
    """True when any leaf of a field group carries a value."""
    if value is None:
        return False
    if isinstance(value, dict):
        return any(has_data(item) for item in value.values())
    if isinstance(value, (list, tuple, set)):
        return any(has_data(item) for item in value)
    if isinstance(value, str):
        return bool(value.strip())
    return True


@dataclass(slots=True)
class VehiclePayload:
    source: str
    source_identifier: str
    name: str
    specs: Specs | None = None
    crew: Crew | None = None
    dimensions: Dimensions | None = None
    speeds: Speeds | None = None
    cargo: Cargo | None = None
    pricing: Pricing | None = None
    armament: Armament | None = None
    systems: Systems | None = None
    image_url: str | None = None
    source_url: str | None = None

    def group(self, name: str) -> Any:
        if name not in FIELD_GROUPS:
            raise KeyError(name)
        return getattr(self, name)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> VehiclePayload:
        source = raw.get("source")
        identifier = raw.get("source_identifier")
        name = raw.get("name")
        if not isinstance(source, str) or not isinstance(identifier, str) or not isinstance(name, str):
            raise ValueError("vehicle payload requires source, source_identifier and name")
        groups = {group: raw.get(group) if isinstance(raw.get(group), dict) else None for group in FIELD_GROUPS}
        return cls(
            source=source,
            source_identifier=identifier,
            name=name,
            image_url=raw.get("image_url") if isinstance(raw.get("image_url"), str) else None,
            source_url=raw.get("source_url") if isinstance(raw.get("source_url"), str) else None,
            **groups,
        )


@dataclass(slots=True)
class FieldPreference:
    field_group: str
    preferred_source: PreferredSource
    value: Any = None
    set_by: str | None = None
    reason: str | None = None
    set_at: datetime | None = None

    @property
    def pins_group(self) -> bool:
        return self.preferred_source != "auto"

    def to_dict(self) -> dict[str, Any]:
        return {
            "field_group": self.field_group,
            "preferred_source": self.preferred_source,
            "value": self.value,
            "set_by": self.set_by,
            "reason": self.reason,
            "set_at": self.set_at.isoformat() if self.set_at else None,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> FieldPreference:
        set_at = raw.get("set_at")
        if isinstance(set_at, str):
            set_at = datetime.fromisoformat(set_at.replace("Z", "+00:00"))
        return cls(
            field_group=raw["field_group"],
            preferred_source=raw["preferred_source"],
            value=raw.get("value"),
            set_by=raw.get("set_by"),
            reason=raw.get("reason"),
            set_at=set_at if isinstance(set_at, datetime) else None,
        )


@dataclass(slots=True)
class CatalogEntity:
    slug: str
    name: str
    raw_payloads: dict[str, dict[str, Any] | None] = field(default_factory=dict)
    fields: dict[str, Any] = field(default_factory=dict)
    preferences: dict[str, FieldPreference] = field(default_factory=dict)
    manual_override: bool = False
    content_hash: str | None = None
    flight_ready_since: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def refresh_manual_override(self) -> None:
        self.manual_override = any(pref.pins_group for pref in self.preferences.values())


@dataclass(slots=True)
class IdentityMapping:
    canonical_name: str
    source: str
    source_identifier: str | None
    manual_override: bool = False
    validation_status: ValidationStatus = "pending"
    confidence: float | None = None
    reason: str | None = None
    set_by: str | None = None
    last_validation_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def matched(self) -> bool:
        return bool(self.source_identifier) and self.validation_status != "rejected"


@dataclass(slots=True)
class JobLock:
    job_name: str
    holder_token: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass(slots=True)
class ProgressDelta:
    current_label: str | None = None
    advanced: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    failed_item: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if min(self.advanced, self.success, self.failed, self.skipped) < 0:
            raise ValueError("progress deltas never decrease counters")


@dataclass(slots=True)
class SyncProgress:
    job_name: str
    run_id: str
    status: RunStatus
    started_at: datetime
    updated_at: datetime
    current_item: int = 0
    total_items: int = 0
    current_label: str | None = None
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    completed_at: datetime | None = None
    error_message: str | None = None
    failed_items: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress_percent(self) -> float:
        if self.total_items <= 0:
            return 0.0
        return round(self.current_item / self.total_items * 100.0, 2)

    @property
    def duration_ms(self) -> int | None:
        if self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


@dataclass(slots=True)
class ContentRecord:
    kind: ContentKind
    category: str
    title: str
    source_url: str
    excerpt: str | None = None
    body: str | None = None
    image_url: str | None = None
    published_at: datetime | None = None
    status: str | None = None
    severity: str | None = None
    source: str | None = None
    hash: str | None = None
    created_at: datetime | None = None

    def hash_input(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "category": self.category,
            "title": self.title,
            "source_url": self.source_url,
            "excerpt": self.excerpt,
            "body": self.body,
            "image_url": self.image_url,
            "published_at": self.published_at,
            "status": self.status,
            "severity": self.severity,
        }

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("published_at", "created_at"):
            value = payload.get(key)
            if isinstance(value, datetime):
                payload[key] = value.isoformat()
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ContentRecord:
        published_at = raw.get("published_at")
        if isinstance(published_at, str):
            published_at = datetime.fromisoformat(published_at.replace("Z", "+00:00"))
        return cls(
            kind=raw["kind"],
            category=raw["category"],
            title=raw["title"],
            source_url=raw["source_url"],
            excerpt=raw.get("excerpt"),
            body=raw.get("body"),
            image_url=raw.get("image_url"),
            published_at=published_at if isinstance(published_at, datetime) else None,
            status=raw.get("status"),
            severity=raw.get("severity"),
            source=raw.get("source"),
            hash=raw.get("hash"),
        )


@dataclass(slots=True)
class AuditEvent:
    action: str
    actor_type: str
    actor_id: str | None
    target: str | None
    payload: dict[str, Any]
    created_at: datetime | None = None


@dataclass(slots=True)
class SourceSnapshot:
    source: str
    records: list[dict[str, Any]]
    fetched_at: datetime
