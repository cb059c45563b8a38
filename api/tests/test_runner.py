from __future__ import annotations

import asyncio

import httpx

from catalog_sync.jobs.runner import FatalRunError, JobRunner, RunContext, RunState, SyncJob, WorkItem
from catalog_sync.services.models import VehiclePayload
from catalog_sync.services.progress import ProgressTracker
from catalog_sync.services.reaper import FORCE_STOP_MESSAGE, ZombieReaper
from catalog_sync.services.upsert import UpsertEngine


class VehicleFixtureJob(SyncJob):
    """Serves a fixed set of vehicle payloads through the upsert engine."""

    name = "fixture-sync"

    def __init__(self, store, payloads: dict[str, VehiclePayload], max_concurrency: int = 1) -> None:
        self.store = store
        self.payloads = payloads
        self.upsert = UpsertEngine(store)
        self.max_concurrency = max_concurrency
        self.fail_on: set[str] = set()
        self.finalized = 0

    async def plan(self, context: RunContext) -> list[WorkItem]:
        return [WorkItem(key=slug, label=payload.name) for slug, payload in self.payloads.items()]

    async def process(self, context: RunContext, item: WorkItem) -> bool:
        if item.key in self.fail_on:
            raise ValueError(f"malformed record {item.key}")
        await context.ensure_running()
        outcome = await self.upsert.upsert_vehicle(
            item.key,
            item.label,
            {"wiki": self.payloads[item.key]},
            force=context.force,
        )
        return outcome.written

    async def finalize(self, context: RunContext) -> None:
        self.finalized += 1


def _payload(name: str, scu: int) -> VehiclePayload:
    return VehiclePayload(source="wiki", source_identifier=name, name=name, cargo={"scu": scu})


def _runner(store, *jobs: SyncJob) -> JobRunner:
    tracker = ProgressTracker(store)
    return JobRunner(
        store,
        {job.name: job for job in jobs},
        tracker=tracker,
        reaper=ZombieReaper(store, tracker, stale_after_seconds=3600),
        client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404))),
    )


def test_unchanged_rerun_skips_and_changed_record_is_written(store) -> None:
    job = VehicleFixtureJob(store, {"cutlass-black": _payload("Cutlass Black", 46)})
    runner = _runner(store, job)

    first = asyncio.run(runner.run("fixture-sync"))
    first_hash = store.entities["cutlass-black"].content_hash
    second = asyncio.run(runner.run("fixture-sync"))
    job.payloads["cutlass-black"] = _payload("Cutlass Black", 48)
    third = asyncio.run(runner.run("fixture-sync"))

    assert (first.ok, first.upserts, first.total) == (True, 1, 1)
    assert (second.upserts, second.skipped) == (0, 1)
    assert third.upserts == 1
    assert store.entities["cutlass-black"].content_hash != first_hash

    latest = asyncio.run(runner.tracker.latest("fixture-sync"))
    assert latest.run_id == third.run_id
    assert latest.status == "completed"
    assert not store.locks
    assert first.transitions == [
        RunState.IDLE,
        RunState.LOCKING,
        RunState.RUNNING,
        RunState.COMPLETING,
        RunState.IDLE,
    ]


def test_second_run_skips_every_item(store) -> None:
    payloads = {f"ship-{index}": _payload(f"Ship {index}", index) for index in range(4)}
    runner = _runner(store, VehicleFixtureJob(store, payloads, max_concurrency=3))

    asyncio.run(runner.run("fixture-sync"))
    second = asyncio.run(runner.run("fixture-sync"))

    progress = store.progress[second.run_id]
    assert second.upserts == 0
    assert progress.skipped_count == progress.total_items == 4
    assert progress.current_item == 4


def test_bad_item_is_isolated(store) -> None:
    job = VehicleFixtureJob(store, {"good": _payload("Good", 1), "bad": _payload("Bad", 2)})
    job.fail_on = {"bad"}
    runner = _runner(store, job)

    outcome = asyncio.run(runner.run("fixture-sync"))

    assert outcome.status == "completed"
    assert (outcome.upserts, outcome.errors, outcome.total) == (1, 1, 2)
    failed = store.progress[outcome.run_id].failed_items
    assert failed == [
        {
            "job_name": "fixture-sync",
            "run_id": outcome.run_id,
            "item": "bad",
            "label": "Bad",
            "error": "malformed record bad",
        }
    ]
    assert job.finalized == 1


def test_busy_lock_is_a_skip_without_progress(store) -> None:
    runner = _runner(store, VehicleFixtureJob(store, {"a": _payload("A", 1)}))
    asyncio.run(store.acquire_lock("fixture-sync", "other-run", 300))

    outcome = asyncio.run(runner.run("fixture-sync"))

    assert outcome.status == "busy"
    assert outcome.run_id is None
    assert "already running" in outcome.error
    assert not store.progress
    assert store.locks["fixture-sync"].holder_token == "other-run"
    assert outcome.transitions == [RunState.IDLE, RunState.LOCKING, RunState.IDLE]


def test_concurrent_triggers_yield_one_run(store) -> None:
    class SlowJob(VehicleFixtureJob):
        async def process(self, context: RunContext, item: WorkItem) -> bool:
            await asyncio.sleep(0.01)
            return await super().process(context, item)

    runner = _runner(store, SlowJob(store, {"a": _payload("A", 1), "b": _payload("B", 2)}))

    async def scenario():
        return await asyncio.gather(runner.run("fixture-sync"), runner.run("fixture-sync"))

    outcomes = asyncio.run(scenario())

    assert sorted(outcome.status for outcome in outcomes) == ["busy", "completed"]
    assert len(store.progress) == 1
    assert store.entity_writes == 2


def test_fan_out_respects_the_concurrency_bound(store) -> None:
    active = 0
    peak = 0

    class TrackingJob(VehicleFixtureJob):
        async def process(self, context: RunContext, item: WorkItem) -> bool:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return await super().process(context, item)

    payloads = {f"ship-{index}": _payload(f"Ship {index}", index) for index in range(8)}
    runner = _runner(store, TrackingJob(store, payloads, max_concurrency=3))

    outcome = asyncio.run(runner.run("fixture-sync"))

    assert outcome.upserts == 8
    assert peak == 3


def test_fatal_plan_error_fails_run_and_releases_lock(store) -> None:
    class UnreachableJob(VehicleFixtureJob):
        async def plan(self, context: RunContext) -> list[WorkItem]:
            raise FatalRunError("every vehicle source is unreachable")

    runner = _runner(store, UnreachableJob(store, {}))

    outcome = asyncio.run(runner.run("fixture-sync"))

    assert outcome.status == "failed"
    assert outcome.ok is False
    assert "fixture-sync" in outcome.error
    assert outcome.run_id in outcome.error
    assert store.progress[outcome.run_id].status == "failed"
    assert not store.locks
    assert RunState.FAILING in outcome.transitions


def test_force_stop_cancels_remaining_items_and_discards_in_flight_write(store) -> None:
    reaper_holder: dict[str, ZombieReaper] = {}

    class StoppedJob(VehicleFixtureJob):
        async def process(self, context: RunContext, item: WorkItem) -> bool:
            if item.key == "b":
                await reaper_holder["reaper"].force_stop(actor_type="human", actor_id="admin")
            return await super().process(context, item)

    job = StoppedJob(store, {"a": _payload("A", 1), "b": _payload("B", 2), "c": _payload("C", 3)})
    runner = _runner(store, job)
    reaper_holder["reaper"] = runner.reaper

    outcome = asyncio.run(runner.run("fixture-sync"))

    assert outcome.status == "cancelled"
    assert outcome.error == FORCE_STOP_MESSAGE
    assert outcome.upserts == 1
    assert set(store.entities) == {"a"}
    assert job.finalized == 0
    assert RunState.CANCELLING in outcome.transitions

    rerun = asyncio.run(runner.run("fixture-sync"))
    assert rerun.status == "completed"
    assert set(store.entities) == {"a", "b", "c"}


def test_run_exceeding_ttl_fails(store) -> None:
    class HangingJob(VehicleFixtureJob):
        ttl_seconds = 0.05

        async def process(self, context: RunContext, item: WorkItem) -> bool:
            await asyncio.sleep(5)
            return True

    runner = _runner(store, HangingJob(store, {"a": _payload("A", 1)}))

    outcome = asyncio.run(runner.run("fixture-sync"))

    assert outcome.status == "failed"
    assert "exceeded its lock ttl" in outcome.error
    assert not store.locks


def test_force_reaps_zombie_before_locking(store, clock) -> None:
    runner = _runner(store, VehicleFixtureJob(store, {"a": _payload("A", 1)}))

    async def crash():
        await store.acquire_lock("fixture-sync", "dead-run", 7200)
        await runner.tracker.start("fixture-sync", "dead-run")

    asyncio.run(crash())
    clock.advance(3700)

    plain = asyncio.run(runner.run("fixture-sync"))
    forced = asyncio.run(runner.run("fixture-sync", force=True, actor_type="human", actor_id="admin"))

    assert plain.status == "busy"
    assert forced.status == "completed"
    assert store.progress["dead-run"].status == "failed"
    actions = [event.action for event in store.audit_events]
    assert actions == ["sync.cleanup", "sync.run"]
    assert store.audit_events[-1].payload["force"] is True
    assert store.audit_events[-1].payload["trigger"] == "manual"


def test_auto_sync_is_recorded_as_scheduled_trigger(store) -> None:
    runner = _runner(store, VehicleFixtureJob(store, {"a": _payload("A", 1)}))

    outcome = asyncio.run(runner.run("fixture-sync", auto_sync=True, actor_type="machine", actor_id="scheduler"))

    assert store.progress[outcome.run_id].metadata == {"trigger": "scheduled", "force": False}
    assert store.audit_events[-1].actor_id == "scheduler"
