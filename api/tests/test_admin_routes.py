from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

import catalog_sync.core.security as security
from catalog_sync.core.config import get_settings
from catalog_sync.jobs.definitions import CatalogSyncJob
from catalog_sync.jobs.registry import get_job_runner
from catalog_sync.jobs.runner import JobRunner
from catalog_sync.main import app
from catalog_sync.services.identity import IdentityMapper
from catalog_sync.services.models import VehiclePayload
from catalog_sync.services.progress import ProgressTracker
from catalog_sync.services.reaper import ZombieReaper
from catalog_sync.services.store import InMemoryStore
from catalog_sync.services.upsert import UpsertEngine
from catalog_sync.sources.fleetyards import FleetYardsAdapter
from catalog_sync.sources.wiki import WikiAdapter

ADMIN = {"Authorization": "Bearer admin-token"}
SCHEDULER_HEADERS = {"X-Module-Id": "sync-scheduler", "X-API-Key": "scheduler-key"}
OPERATOR_HEADERS = {"X-Module-Id": "ops-runner", "X-API-Key": "ops-key"}


def fleetyards_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/v1/models/cutlass-black":
        return httpx.Response(
            200,
            json={"slug": "cutlass-black", "hardpoints": [{}], "components": [{}], "description": "Freighter"},
        )
    if request.url.path == "/v1/models/broken":
        return httpx.Response(500)
    return httpx.Response(404, json={"code": "not_found"})


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def admin_client(monkeypatch: pytest.MonkeyPatch, store: InMemoryStore) -> TestClient:
    monkeypatch.setenv(
        "CS_MACHINE_API_KEYS_JSON",
        json.dumps(
            {
                "sync-scheduler": security.hash_api_key("scheduler-key"),
                "ops-runner": {
                    "key_hash": security.hash_api_key("ops-key"),
                    "scopes": ["sync:run", "sync:read", "sync:admin"],
                },
            }
        ),
    )
    monkeypatch.setenv("CS_SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("CS_SUPABASE_ANON_KEY", "anon-key")
    get_settings.cache_clear()

    async def _fake_fetch(**kwargs: Any) -> dict[str, Any]:
        if kwargs["token"] == "admin-token":
            return {"id": "admin-1", "app_metadata": {"role": "admin"}}
        return {"id": "user-1", "app_metadata": {"role": "user"}}

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)

    upsert = UpsertEngine(store)
    job = CatalogSyncJob(
        store,
        upsert,
        IdentityMapper(store),
        WikiAdapter("https://wiki.test/api.php"),
        FleetYardsAdapter("https://fy.test/v1"),
    )
    tracker = ProgressTracker(store)
    runner = JobRunner(
        store,
        {job.name: job},
        tracker=tracker,
        reaper=ZombieReaper(store, tracker, 3600),
        client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(fleetyards_handler)),
    )

    async def seed() -> None:
        await upsert.upsert_vehicle(
            "cutlass-black",
            "Cutlass Black",
            {
                "wiki": VehiclePayload(source="wiki", source_identifier="Cutlass Black", name="Cutlass Black", speeds={"scm": 200}),
                "fleetyards": VehiclePayload(
                    source="fleetyards",
                    source_identifier="cutlass-black",
                    name="Cutlass Black",
                    speeds={"scm": 215},
                ),
            },
        )

    asyncio.run(seed())
    app.dependency_overrides[get_job_runner] = lambda: runner

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    get_settings.cache_clear()


def test_force_stop_and_cleanup(admin_client: TestClient, store: InMemoryStore) -> None:
    async def start_run() -> None:
        await store.acquire_lock("ships-sync", "run-1", 600)
        await store.create_progress("ships-sync", "run-1", {})

    asyncio.run(start_run())

    stopped = admin_client.post("/admin/sync/force-stop", headers=ADMIN)
    cleaned = admin_client.post("/admin/sync/cleanup", headers=ADMIN)

    assert stopped.status_code == 200
    assert stopped.json() == {"locks_removed": 1, "progress_cancelled": 1, "run_ids": ["run-1"]}
    assert store.progress["run-1"].status == "cancelled"
    assert cleaned.json() == {"locks_removed": 0, "progress_failed": 0, "run_ids": []}


def test_admin_scope_is_required(admin_client: TestClient) -> None:
    assert admin_client.post("/admin/sync/cleanup", headers=SCHEDULER_HEADERS).status_code == 403
    assert admin_client.post("/admin/sync/cleanup", headers={"Authorization": "Bearer user-token"}).status_code == 403
    assert admin_client.post("/admin/sync/cleanup", headers=OPERATOR_HEADERS).status_code == 200


def test_mapping_lifecycle(admin_client: TestClient, store: InMemoryStore) -> None:
    created = admin_client.put(
        "/admin/mappings/fleetyards/mercury",
        json={"source_identifier": "mercury-star-runner", "reason": "renamed upstream"},
        headers=ADMIN,
    )
    assert created.status_code == 200
    body = created.json()
    assert body["manual_override"] is True
    assert body["validation_status"] == "confirmed"
    assert body["set_by"] == "admin-1"

    manual = admin_client.get("/admin/mappings/fleetyards", params={"filter": "manual"}, headers=ADMIN)
    assert [item["canonical_name"] for item in manual.json()] == ["mercury"]

    unmatched = admin_client.get("/admin/mappings/fleetyards", params={"filter": "unmatched"}, headers=ADMIN)
    assert [item["canonical_name"] for item in unmatched.json()] == ["cutlass-black"]

    assert admin_client.delete("/admin/mappings/fleetyards/mercury", headers=ADMIN).status_code == 204
    assert admin_client.delete("/admin/mappings/fleetyards/mercury", headers=ADMIN).status_code == 404
    assert [event.action for event in store.audit_events] == ["mapping.upsert", "mapping.delete"]


def test_mapping_requests_are_validated(admin_client: TestClient) -> None:
    assert admin_client.get("/admin/mappings/erkul", headers=ADMIN).status_code == 422
    assert admin_client.get("/admin/mappings/wiki", params={"filter": "everything"}, headers=ADMIN).status_code == 422
    response = admin_client.put(
        "/admin/mappings/wiki/aurora-mr",
        json={"source_identifier": "Aurora MR", "validation_status": "maybe"},
        headers=ADMIN,
    )
    assert response.status_code == 422


def test_mapping_cleanup_clears_payloads(admin_client: TestClient, store: InMemoryStore) -> None:
    admin_client.put("/admin/mappings/fleetyards/mercury", json={"source_identifier": "msr"}, headers=ADMIN)

    response = admin_client.post("/admin/mappings/fleetyards/cleanup", json={"include_manual": False}, headers=ADMIN)

    assert response.status_code == 200
    assert response.json() == {"source": "fleetyards", "mappings_deleted": 0, "payloads_cleared": 1}
    assert ("mercury", "fleetyards") in store.mappings
    assert "fleetyards" not in store.entities["cutlass-black"].raw_payloads


def test_validate_mapping(admin_client: TestClient, store: InMemoryStore) -> None:
    admin_client.put(
        "/admin/mappings/fleetyards/cutlass-black",
        json={"source_identifier": "cutlass-black", "validation_status": "pending"},
        headers=ADMIN,
    )

    stored = admin_client.post("/admin/mappings/fleetyards/cutlass-black/validate", headers=ADMIN)
    candidate = admin_client.post(
        "/admin/mappings/fleetyards/cutlass-black/validate",
        json={"source_identifier": "cutlass-blue"},
        headers=ADMIN,
    )
    upstream_down = admin_client.post(
        "/admin/mappings/fleetyards/cutlass-black/validate",
        json={"source_identifier": "broken"},
        headers=ADMIN,
    )
    nothing = admin_client.post("/admin/mappings/fleetyards/aurora-mr/validate", headers=ADMIN)

    body = stored.json()
    assert stored.status_code == 200
    assert body["found"] is True
    assert body["persisted"] is True
    assert body["completeness"] == 60.0
    assert body["mapping"]["validation_status"] == "confirmed"
    assert candidate.json()["found"] is False
    assert candidate.json()["persisted"] is False
    assert upstream_down.status_code == 502
    assert nothing.status_code == 404
    assert store.audit_events[-1].action == "mapping.validate"


def test_entity_preferences(admin_client: TestClient, store: InMemoryStore) -> None:
    entity = admin_client.get("/admin/entities/cutlass-black", headers=ADMIN)
    assert entity.json()["fields"]["speeds"] == {"scm": 200}

    pinned = admin_client.put(
        "/admin/entities/cutlass-black/preferences/speeds",
        json={"preferred_source": "fleetyards", "reason": "catalog API is current"},
        headers=ADMIN,
    )
    assert pinned.status_code == 200
    assert pinned.json()["fields"]["speeds"] == {"scm": 215}
    assert pinned.json()["manual_override"] is True
    assert pinned.json()["preferences"]["speeds"]["set_by"] == "admin-1"

    missing_value = admin_client.put(
        "/admin/entities/cutlass-black/preferences/pricing",
        json={"preferred_source": "manual"},
        headers=ADMIN,
    )
    assert missing_value.status_code == 422
    assert admin_client.put(
        "/admin/entities/cutlass-black/preferences/paint",
        json={"preferred_source": "wiki"},
        headers=ADMIN,
    ).status_code == 422

    cleared = admin_client.delete("/admin/entities/cutlass-black/preferences/speeds", headers=ADMIN)
    assert cleared.json()["fields"]["speeds"] == {"scm": 200}
    assert cleared.json()["preferences"] == {}
    assert admin_client.delete("/admin/entities/cutlass-black/preferences/speeds", headers=ADMIN).status_code == 404
    assert admin_client.get("/admin/entities/aurora-mr", headers=ADMIN).status_code == 404

    audit = admin_client.get("/admin/audit", params={"limit": 5}, headers=ADMIN).json()
    assert [event["action"] for event in audit] == ["preference.clear", "preference.set"]
