from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from catalog_sync.services.models import ContentRecord, FieldPreference, VehiclePayload
from catalog_sync.services.repository import RepositoryNotFoundError
from catalog_sync.services.upsert import UpsertEngine, is_flight_ready


def _wiki(**groups) -> VehiclePayload:
    return VehiclePayload(source="wiki", source_identifier="Aurora MR", name="Aurora MR", **groups)


def test_unchanged_vehicle_is_skipped_until_forced(store) -> None:
    engine = UpsertEngine(store)
    payloads = {"wiki": _wiki(specs={"manufacturer": "RSI"}, cargo={"scu": 3})}

    first = asyncio.run(engine.upsert_vehicle("aurora-mr", "Aurora MR", payloads))
    second = asyncio.run(engine.upsert_vehicle("aurora-mr", "Aurora MR", payloads))
    forced = asyncio.run(engine.upsert_vehicle("aurora-mr", "Aurora MR", payloads, force=True))

    assert first.action == "inserted"
    assert second.action == "skipped"
    assert forced.action == "updated"
    assert first.content_hash == second.content_hash == forced.content_hash
    assert store.entity_writes == 2


def test_image_url_change_alone_does_not_rewrite(store) -> None:
    engine = UpsertEngine(store)
    asyncio.run(engine.upsert_vehicle("aurora-mr", "Aurora MR", {"wiki": _wiki(cargo={"scu": 3}, image_url="a.png")}))

    outcome = asyncio.run(
        engine.upsert_vehicle("aurora-mr", "Aurora MR", {"wiki": _wiki(cargo={"scu": 3}, image_url="b.png")})
    )

    assert outcome.written is False


def test_missing_source_keeps_its_previous_raw_payload(store) -> None:
    engine = UpsertEngine(store)
    fleetyards = VehiclePayload(source="fleetyards", source_identifier="aurora-mr", name="Aurora MR", crew={"min": 1})
    asyncio.run(engine.upsert_vehicle("aurora-mr", "Aurora MR", {"wiki": _wiki(), "fleetyards": fleetyards}))

    asyncio.run(engine.upsert_vehicle("aurora-mr", "Aurora MR", {"wiki": _wiki(cargo={"scu": 3}), "fleetyards": None}))

    entity = store.entities["aurora-mr"]
    assert entity.raw_payloads["fleetyards"]["crew"] == {"min": 1}
    assert entity.fields["crew"] == {"min": 1}
    assert entity.fields["cargo"] == {"scu": 3}


def test_flight_ready_is_stamped_once(store, clock) -> None:
    engine = UpsertEngine(store)
    stamped_at = clock.current
    asyncio.run(
        engine.upsert_vehicle("aurora-mr", "Aurora MR", {"wiki": _wiki(specs={"production_status": "Flight Ready"})})
    )
    clock.advance(3600)
    asyncio.run(
        engine.upsert_vehicle(
            "aurora-mr",
            "Aurora MR",
            {"wiki": _wiki(specs={"production_status": "Flight Ready", "patch": "4.1"})},
        )
    )

    assert store.entities["aurora-mr"].flight_ready_since == stamped_at
    assert is_flight_ready({"specs": {"production_status": "In Concept"}}) is False


def test_preferences_remerge_from_stored_payloads(store) -> None:
    engine = UpsertEngine(store)
    fleetyards = VehiclePayload(source="fleetyards", source_identifier="aurora-mr", name="Aurora MR", speeds={"scm": 210})
    asyncio.run(
        engine.upsert_vehicle("aurora-mr", "Aurora MR", {"wiki": _wiki(speeds={"scm": 200}), "fleetyards": fleetyards})
    )
    assert store.entities["aurora-mr"].fields["speeds"] == {"scm": 200}

    pinned = asyncio.run(
        engine.set_preference("aurora-mr", FieldPreference(field_group="speeds", preferred_source="fleetyards"))
    )
    assert pinned.fields["speeds"] == {"scm": 210}
    assert pinned.manual_override is True

    manual = asyncio.run(
        engine.set_preference(
            "aurora-mr",
            FieldPreference(field_group="pricing", preferred_source="manual", value={"prices": [{"amount": 25, "currency": "USD"}]}),
        )
    )
    assert manual.fields["pricing"]["prices"][0]["amount"] == 25

    cleared = asyncio.run(engine.clear_preference("aurora-mr"))
    assert cleared.fields["speeds"] == {"scm": 200}
    assert cleared.manual_override is False
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(engine.clear_preference("aurora-mr", "speeds"))


def test_pinned_preference_survives_the_next_sync(store) -> None:
    engine = UpsertEngine(store)
    payloads = {
        "wiki": _wiki(speeds={"scm": 200}),
        "fleetyards": VehiclePayload(source="fleetyards", source_identifier="aurora-mr", name="Aurora MR", speeds={"scm": 210}),
    }
    asyncio.run(engine.upsert_vehicle("aurora-mr", "Aurora MR", payloads))
    asyncio.run(engine.set_preference("aurora-mr", FieldPreference(field_group="speeds", preferred_source="fleetyards")))

    outcome = asyncio.run(engine.upsert_vehicle("aurora-mr", "Aurora MR", payloads))

    assert outcome.written is False
    assert store.entities["aurora-mr"].fields["speeds"] == {"scm": 210}


def test_content_is_deduplicated_by_digest(store) -> None:
    engine = UpsertEngine(store)

    def record() -> ContentRecord:
        return ContentRecord(
            kind="news",
            category="Transmission",
            title="Alpha 4.1 released",
            source_url="https://robertsspaceindustries.com/comm-link/transmission/1",
            published_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        )

    first = asyncio.run(engine.upsert_content(record()))
    second = asyncio.run(engine.upsert_content(record()))
    forced = asyncio.run(engine.upsert_content(record(), force=True))

    assert first.action == "inserted"
    assert second.action == "skipped"
    assert forced.action == "updated"
    assert len(store.content) == 1
    assert store.content_writes == 2
