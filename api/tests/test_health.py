import asyncio

from fastapi.testclient import TestClient

from catalog_sync.jobs.registry import get_broadcaster, get_job_runner
from catalog_sync.main import app
from catalog_sync.services.progress import ProgressBroadcaster
from catalog_sync.services.repository import get_repository
from catalog_sync.services.store import InMemoryStore


def test_healthz() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_readyz_checks_the_repository() -> None:
    app.dependency_overrides[get_repository] = lambda: InMemoryStore()
    try:
        response = TestClient(app).get("/readyz")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    assert response.json() == {"status": "ready"}


def test_shutdown_closes_progress_streams_and_resets_singletons() -> None:
    with TestClient(app):
        assert get_job_runner.cache_info().currsize == 1
        broadcaster = get_broadcaster()

    assert broadcaster.closed
    assert get_job_runner.cache_info().currsize == 0
    assert get_broadcaster.cache_info().currsize == 0
    assert get_repository.cache_info().currsize == 0


def test_closed_broadcaster_ends_subscriptions() -> None:
    async def scenario():
        broadcaster = ProgressBroadcaster()
        async with broadcaster.subscribe("ships-sync") as open_queue:
            broadcaster.close()
            woken = await asyncio.wait_for(open_queue.get(), timeout=1)
        async with broadcaster.subscribe("ships-sync") as late_queue:
            late = late_queue.get_nowait()
        return woken, late

    assert asyncio.run(scenario()) == (None, None)
