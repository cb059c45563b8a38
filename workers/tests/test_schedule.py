import pytest

from sync_scheduler.core.config import DEFAULT_JOB_INTERVALS, Settings
from sync_scheduler.jobs.schedule import build_schedules, due_jobs, next_backoff


def test_every_job_is_due_on_first_cycle() -> None:
    schedules = build_schedules({"news-sync": 3600.0, "ships-sync": 21600.0}, now=100.0)
    assert [schedule.job_name for schedule in due_jobs(schedules, now=100.0)] == ["news-sync", "ships-sync"]


def test_mark_ran_defers_until_next_interval() -> None:
    schedules = build_schedules({"news-sync": 60.0, "server-status-sync": 30.0})
    for schedule in schedules:
        schedule.mark_ran(0.0, "completed")

    assert due_jobs(schedules, now=29.0) == []
    assert [schedule.job_name for schedule in due_jobs(schedules, now=30.0)] == ["server-status-sync"]
    assert len(due_jobs(schedules, now=60.0)) == 2
    assert schedules[0].last_status == "completed"


def test_busy_jobs_wait_for_their_interval_too() -> None:
    schedule = build_schedules({"ships-sync": 600.0})[0]
    schedule.mark_ran(10.0, "busy")
    assert not schedule.is_due(609.0)
    assert schedule.is_due(610.0)


def test_next_backoff_doubles_and_caps() -> None:
    assert next_backoff(30.0, base=30.0, maximum=300.0, jitter=0.0) == 60.0
    assert next_backoff(0.0, base=30.0, maximum=300.0, jitter=0.5) == 75.0
    assert next_backoff(200.0, base=30.0, maximum=300.0, jitter=0.0) == 300.0


def test_next_backoff_random_jitter_stays_in_range() -> None:
    for _ in range(20):
        assert 60.0 <= next_backoff(30.0, base=30.0, maximum=300.0) <= 75.0


def test_job_intervals_from_json() -> None:
    assert Settings().job_intervals == DEFAULT_JOB_INTERVALS
    assert Settings(job_intervals_json='{"news-sync": 120}').job_intervals == {"news-sync": 120.0}
    with pytest.raises(ValueError):
        _ = Settings(job_intervals_json='{"news-sync": 0}').job_intervals
    with pytest.raises(ValueError):
        _ = Settings(job_intervals_json="[1, 2]").job_intervals
