from __future__ import annotations

import asyncio

import pytest

from catalog_sync.services.identity import IdentityMapper, LookupResult, score_identifier, slugify
from catalog_sync.services.models import CatalogEntity, IdentityMapping
from catalog_sync.services.repository import RepositoryNotFoundError, RepositoryValidationError


def test_slugify_and_scoring() -> None:
    assert slugify("Cutlass Black") == "cutlass-black"
    assert slugify("  F7C-M Super Hornet Mk II ") == "f7c-m-super-hornet-mk-ii"
    assert score_identifier("Cutlass Black", "cutlass-black") == 1.0
    assert score_identifier("Hull-C", "hullc") == 0.95
    assert score_identifier("Aurora MR", "mustang-alpha") == 0.0


def test_exact_match_is_confirmed_and_stored(store) -> None:
    mapper = IdentityMapper(store)

    resolution = asyncio.run(mapper.resolve("cutlass-black", "fleetyards", ["cutlass-blue", "cutlass-black"]))

    assert resolution.method == "exact"
    assert resolution.source_identifier == "cutlass-black"
    stored = store.mappings[("cutlass-black", "fleetyards")]
    assert stored.validation_status == "confirmed"
    assert stored.manual_override is False


def test_fuzzy_match_is_pending_and_reused(store) -> None:
    mapper = IdentityMapper(store, threshold=0.6, margin=0.05)

    first = asyncio.run(mapper.resolve("600i Explorer", "fleetyards", ["600i-explorer-edition", "890-jump"]))
    second = asyncio.run(mapper.resolve("600i Explorer", "fleetyards", ["600i-explorer-edition", "890-jump"]))

    assert first.method == "fuzzy"
    assert first.source_identifier == "600i-explorer-edition"
    assert store.mappings[("600i Explorer", "fleetyards")].validation_status == "pending"
    assert second.method == "existing"


def test_ambiguous_candidates_stay_unmatched(store) -> None:
    mapper = IdentityMapper(store, threshold=0.4, margin=0.05)

    resolution = asyncio.run(mapper.resolve("Ursa", "fleetyards", ["ursa-rover", "ursa-medivac"]))

    assert resolution.matched is False
    assert resolution.method == "unmatched"
    assert len(resolution.candidates) == 2
    assert not store.mappings


def test_manual_mapping_wins_over_exact_match(store) -> None:
    mapper = IdentityMapper(store)
    asyncio.run(mapper.set_mapping("mercury", "fleetyards", "mercury-star-runner", actor_type="human", actor_id="admin"))

    resolution = asyncio.run(mapper.resolve("mercury", "fleetyards", ["mercury", "mercury-star-runner"]))

    assert resolution.method == "manual"
    assert resolution.source_identifier == "mercury-star-runner"
    assert store.audit_events[-1].action == "mapping.upsert"


def test_manual_rejection_means_unmatched(store) -> None:
    mapper = IdentityMapper(store)
    asyncio.run(mapper.set_mapping("nox", "fleetyards", "nox-kue", validation_status="rejected"))

    resolution = asyncio.run(mapper.resolve("nox", "fleetyards", ["nox", "nox-kue"]))

    assert resolution.matched is False


def test_rejected_automatic_identifier_is_not_chosen_again(store) -> None:
    asyncio.run(
        store.upsert_mapping(
            IdentityMapping(
                canonical_name="reliant",
                source="fleetyards",
                source_identifier="reliant",
                validation_status="rejected",
            )
        )
    )
    mapper = IdentityMapper(store)

    resolution = asyncio.run(mapper.resolve("reliant", "fleetyards", ["reliant"]))

    assert resolution.matched is False


def test_set_mapping_rejects_blank_name(store) -> None:
    mapper = IdentityMapper(store)

    with pytest.raises(RepositoryValidationError):
        asyncio.run(mapper.set_mapping("  ", "wiki", "Aurora"))


def test_list_mappings_filters_and_includes_unmapped_entities(store) -> None:
    mapper = IdentityMapper(store)

    async def seed():
        await store.save_entity(CatalogEntity(slug="aurora-mr", name="Aurora MR"))
        await store.save_entity(CatalogEntity(slug="cutlass-black", name="Cutlass Black"))
        await store.save_entity(CatalogEntity(slug="nox", name="Nox"))
        await mapper.resolve("cutlass-black", "fleetyards", ["cutlass-black"])
        await mapper.set_mapping("nox", "fleetyards", "nox", validation_status="rejected")

    asyncio.run(seed())

    matched = asyncio.run(mapper.list_mappings("fleetyards", "matched"))
    unmatched = asyncio.run(mapper.list_mappings("fleetyards", "unmatched"))
    manual = asyncio.run(mapper.list_mappings("fleetyards", "manual"))

    assert [mapping.canonical_name for mapping in matched] == ["cutlass-black"]
    assert [mapping.canonical_name for mapping in unmatched] == ["aurora-mr", "nox"]
    assert [mapping.canonical_name for mapping in manual] == ["nox"]
    with pytest.raises(RepositoryValidationError):
        asyncio.run(mapper.list_mappings("fleetyards", "everything"))


def test_delete_mapping_clears_the_source_payload(store) -> None:
    mapper = IdentityMapper(store)

    async def scenario():
        await store.save_entity(
            CatalogEntity(
                slug="cutlass-black",
                name="Cutlass Black",
                raw_payloads={"wiki": {"name": "Cutlass Black"}, "fleetyards": {"name": "Cutlass Black"}},
                content_hash="abc",
            )
        )
        await mapper.set_mapping("cutlass-black", "fleetyards", "cutlass-black")
        return await mapper.delete_mapping("cutlass-black", "fleetyards")

    assert asyncio.run(scenario()) is True
    entity = store.entities["cutlass-black"]
    assert set(entity.raw_payloads) == {"wiki"}
    assert entity.content_hash is None
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(mapper.delete_mapping("cutlass-black", "fleetyards"))


def test_cleanup_keeps_manual_mappings_unless_asked(store) -> None:
    mapper = IdentityMapper(store)

    async def seed():
        await mapper.resolve("cutlass-black", "fleetyards", ["cutlass-black"])
        await mapper.set_mapping("mercury", "fleetyards", "mercury-star-runner")

    asyncio.run(seed())

    first = asyncio.run(mapper.cleanup("fleetyards"))
    second = asyncio.run(mapper.cleanup("fleetyards", include_manual=True))

    assert first.mappings_deleted == 1
    assert second.mappings_deleted == 1
    assert not store.mappings


def test_validate_persists_only_for_the_stored_identifier(store) -> None:
    mapper = IdentityMapper(store)
    asyncio.run(mapper.resolve("cutlass-black", "fleetyards", ["cutlass-black"]))

    async def lookup(identifier: str) -> LookupResult:
        if identifier == "cutlass-black":
            return LookupResult(found=True, checks={"has_specs": True, "has_images": False})
        return LookupResult(found=False, detail="fleetyards returned 404")

    stored = asyncio.run(mapper.validate("cutlass-black", "fleetyards", lookup))
    candidate = asyncio.run(mapper.validate("cutlass-black", "fleetyards", lookup, candidate="cutlass-red"))

    assert stored.persisted is True
    assert stored.completeness == 50.0
    assert stored.mapping.validation_status == "confirmed"
    assert candidate.persisted is False
    assert candidate.found is False
    assert store.mappings[("cutlass-black", "fleetyards")].validation_status == "confirmed"


def test_validate_failure_rejects_stored_mapping(store) -> None:
    mapper = IdentityMapper(store)
    asyncio.run(mapper.set_mapping("hull-a", "fleetyards", "hull-a-old", validation_status="pending"))

    async def lookup(identifier: str) -> LookupResult:
        return LookupResult(found=False, detail="fleetyards returned 404")

    result = asyncio.run(mapper.validate("hull-a", "fleetyards", lookup))

    assert result.found is False
    stored = store.mappings[("hull-a", "fleetyards")]
    assert stored.validation_status == "rejected"
    assert stored.last_validation_error == "fleetyards returned 404"
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(mapper.validate("unknown", "fleetyards", lookup))
