from __future__ import annotations

import asyncio

import pytest

from catalog_sync.services.locks import LockManager
from catalog_sync.services.models import ProgressDelta
from catalog_sync.services.progress import ProgressBroadcaster, ProgressTracker
from catalog_sync.services.reaper import FORCE_STOP_MESSAGE, ZombieReaper


def test_only_one_concurrent_acquire_wins(store) -> None:
    locks = LockManager(store)

    async def scenario():
        return await asyncio.gather(*(locks.acquire("ships-sync", 60, holder_token=f"run-{i}") for i in range(5)))

    results = asyncio.run(scenario())

    winners = [lock for lock in results if lock is not None]
    assert len(winners) == 1
    assert store.locks["ships-sync"].holder_token == winners[0].holder_token


def test_release_requires_matching_holder(store) -> None:
    locks = LockManager(store)
    asyncio.run(locks.acquire("news-sync", 60, holder_token="run-a"))

    assert asyncio.run(locks.release("news-sync", "run-b")) is False
    assert "news-sync" in store.locks
    assert asyncio.run(locks.release("news-sync", "run-a")) is True
    assert asyncio.run(locks.holder("news-sync")) is None


def test_expired_lock_can_be_taken_over(store, clock) -> None:
    locks = LockManager(store)
    asyncio.run(locks.acquire("news-sync", 30, holder_token="run-a"))

    assert asyncio.run(locks.acquire("news-sync", 30, holder_token="run-b")) is None
    clock.advance(31)
    lock = asyncio.run(locks.acquire("news-sync", 30, holder_token="run-b"))

    assert lock is not None
    assert lock.holder_token == "run-b"


def test_progress_updates_are_atomic_and_stop_after_finish(store) -> None:
    tracker = ProgressTracker(store)

    async def scenario():
        await tracker.start("ships-sync", "run-1", {"trigger": "manual"})
        await tracker.set_total("run-1", 10)
        await asyncio.gather(
            *(tracker.update("run-1", ProgressDelta(advanced=1, success=1, current_label=f"item {i}")) for i in range(10))
        )
        finished = await tracker.finish("run-1", "completed")
        late = await tracker.update("run-1", ProgressDelta(advanced=1, failed=1))
        again = await tracker.finish("run-1", "failed", "too late")
        return finished, late, again

    finished, late, again = asyncio.run(scenario())

    assert finished.current_item == 10
    assert finished.success_count == 10
    assert finished.progress_percent == 100.0
    assert finished.duration_ms == 0
    assert late is None
    assert again is None
    assert store.progress["run-1"].status == "completed"


def test_progress_deltas_cannot_move_counters_backwards(store) -> None:
    tracker = ProgressTracker(store)

    async def scenario():
        await tracker.start("ships-sync", "run-1")
        await tracker.update("run-1", ProgressDelta(advanced=3, success=3))
        await tracker.update("run-1", ProgressDelta(current_label="Aurora MR"))
        return await tracker.get("run-1")

    progress = asyncio.run(scenario())

    assert progress.current_item == 3
    assert progress.current_label == "Aurora MR"
    with pytest.raises(ValueError):
        ProgressDelta(advanced=-1)


def test_broadcaster_delivers_snapshots_to_subscribers(store) -> None:
    broadcaster = ProgressBroadcaster(queue_size=2)
    tracker = ProgressTracker(store, broadcaster)

    async def scenario():
        async with broadcaster.subscribe("news-sync") as queue:
            assert broadcaster.subscriber_count("news-sync") == 1
            await tracker.start("news-sync", "run-1")
            await tracker.set_total("run-1", 3)
            await tracker.update("run-1", ProgressDelta(advanced=1, skipped=1))
            # the oldest snapshot is dropped when the queue is full
            first = queue.get_nowait()
            second = queue.get_nowait()
        return first, second

    first, second = asyncio.run(scenario())

    assert first.total_items == 3
    assert second.skipped_count == 1
    assert broadcaster.subscriber_count("news-sync") == 0


def test_cleanup_fails_stale_runs_and_frees_their_locks(store, clock) -> None:
    tracker = ProgressTracker(store)
    reaper = ZombieReaper(store, tracker, stale_after_seconds=3600)

    async def crash():
        await store.acquire_lock("ships-sync", "run-dead", 7200)
        await tracker.start("ships-sync", "run-dead")

    asyncio.run(crash())
    clock.advance(3601)

    result = asyncio.run(reaper.cleanup())
    second = asyncio.run(reaper.cleanup())

    assert result.progress_failed == 1
    assert result.locks_removed == 1
    assert result.run_ids == ["run-dead"]
    assert store.progress["run-dead"].status == "failed"
    assert "stale/zombie" in store.progress["run-dead"].error_message
    assert not store.locks
    assert second.changed is False
    assert [event.action for event in store.audit_events] == ["sync.cleanup"]

    # the lock ttl has not run out, so only cleanup can have freed it
    relock = asyncio.run(store.acquire_lock("ships-sync", "run-next", 600))
    assert relock is not None
    assert relock.holder_token == "run-next"


def test_cleanup_leaves_fresh_runs_alone(store, clock) -> None:
    tracker = ProgressTracker(store)
    reaper = ZombieReaper(store, tracker, stale_after_seconds=3600)
    asyncio.run(store.acquire_lock("news-sync", "run-live", 300))
    asyncio.run(tracker.start("news-sync", "run-live"))
    clock.advance(60)

    result = asyncio.run(reaper.cleanup())

    assert result.changed is False
    assert store.progress["run-live"].status == "running"
    assert "news-sync" in store.locks


def test_force_stop_cancels_everything(store) -> None:
    tracker = ProgressTracker(store)
    reaper = ZombieReaper(store, tracker, stale_after_seconds=3600)

    async def scenario():
        for job in ("ships-sync", "news-sync"):
            await store.acquire_lock(job, f"{job}-run", 300)
            await tracker.start(job, f"{job}-run")
        return await reaper.force_stop(actor_type="human", actor_id="admin-1")

    result = asyncio.run(scenario())

    assert result.progress_cancelled == 2
    assert result.locks_removed == 2
    assert {progress.status for progress in store.progress.values()} == {"cancelled"}
    assert store.progress["news-sync-run"].error_message == FORCE_STOP_MESSAGE
    assert store.audit_events[-1].action == "sync.force_stop"
    assert store.audit_events[-1].actor_id == "admin-1"
