import asyncio

import httpx

from sync_scheduler.jobs.schedule import build_schedules
from sync_scheduler.main import reap_zombies, trigger_due_jobs
from sync_scheduler.services.sync_client import SyncClient


def test_trigger_due_jobs_records_each_outcome() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        job_name = request.url.path.split("/")[2]
        calls.append(job_name)
        if job_name == "ships-sync":
            return httpx.Response(409, json={"ok": False, "busy": True})
        if job_name == "news-sync":
            return httpx.Response(200, json={"ok": True, "upserts": 3, "errors": 0, "total": 3})
        return httpx.Response(200, json={"ok": False, "status": "cancelled", "error": "force stopped"})

    client = SyncClient("http://api.test", "sync-scheduler", "key", transport=httpx.MockTransport(handler))
    schedules = build_schedules(
        {"news-sync": 3600.0, "server-status-sync": 900.0, "ships-sync": 21600.0},
        now=0.0,
    )

    results = asyncio.run(trigger_due_jobs(client, schedules, now=5.0))

    assert sorted(calls) == ["news-sync", "server-status-sync", "ships-sync"]
    assert len(results) == 3
    statuses = {schedule.job_name: schedule.last_status for schedule in schedules}
    assert statuses == {"news-sync": "completed", "server-status-sync": "cancelled", "ships-sync": "busy"}
    assert {schedule.job_name: schedule.next_due_at for schedule in schedules} == {
        "news-sync": 3605.0,
        "server-status-sync": 905.0,
        "ships-sync": 21605.0,
    }


def test_trigger_due_jobs_skips_jobs_not_due() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(200, json={"ok": True})

    client = SyncClient("http://api.test", "sync-scheduler", "key", transport=httpx.MockTransport(handler))
    schedules = build_schedules({"news-sync": 3600.0, "server-status-sync": 900.0})
    schedules[0].mark_ran(0.0, "completed")

    asyncio.run(trigger_due_jobs(client, schedules, now=10.0))

    assert calls == ["/sync/server-status-sync/run"]


def test_a_failing_trigger_does_not_starve_later_jobs() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path == "/sync/a-misconfigured/run":
            return httpx.Response(404, json={"detail": "unknown sync job: a-misconfigured"})
        return httpx.Response(200, json={"ok": True})

    client = SyncClient("http://api.test", "sync-scheduler", "key", transport=httpx.MockTransport(handler))
    schedules = build_schedules({"a-misconfigured": 60.0, "ships-sync": 60.0})

    for now in (0.0, 60.0, 120.0):
        asyncio.run(trigger_due_jobs(client, schedules, now=now))

    assert calls.count("/sync/ships-sync/run") == 3
    assert calls.count("/sync/a-misconfigured/run") == 3
    assert schedules[0].last_status == "error"
    assert schedules[0].next_due_at == 180.0


def test_unreachable_api_marks_every_due_job() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = SyncClient("http://api.test", "sync-scheduler", "key", transport=httpx.MockTransport(handler))
    schedules = build_schedules({"news-sync": 3600.0, "ships-sync": 21600.0})

    results = asyncio.run(trigger_due_jobs(client, schedules, now=5.0))

    assert results == []
    assert [schedule.last_status for schedule in schedules] == ["error", "error"]


def test_failed_cleanup_is_reported_without_raising() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"detail": "catalog store unavailable"})

    client = SyncClient("http://api.test", "sync-scheduler", "key", transport=httpx.MockTransport(handler))

    assert asyncio.run(reap_zombies(client)) is None


def test_cleanup_returns_reclaimed_counts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"locks_removed": 1, "progress_failed": 1, "run_ids": ["r1"]})

    client = SyncClient("http://api.test", "sync-scheduler", "key", transport=httpx.MockTransport(handler))

    assert asyncio.run(reap_zombies(client)) == {"locks_removed": 1, "progress_failed": 1, "run_ids": ["r1"]}
