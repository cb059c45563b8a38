from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(slots=True)
class JobSchedule:
    job_name: str
    interval_seconds: float
    next_due_at: float = 0.0
    last_status: str | None = None

    def is_due(self, now: float) -> bool:
        return now >= self.next_due_at

    def mark_ran(self, now: float, status: str) -> None:
        self.last_status = status
        self.next_due_at = now + self.interval_seconds


def build_schedules(intervals: dict[str, float], now: float = 0.0) -> list[JobSchedule]:
    """Every job is due on the first cycle."""
    return [
        JobSchedule(job_name=job_name, interval_seconds=seconds, next_due_at=now)
        for job_name, seconds in sorted(intervals.items())
    ]


def due_jobs(schedules: list[JobSchedule], now: float) -> list[JobSchedule]:
    return sorted(
        (schedule for schedule in schedules if schedule.is_due(now)),
        key=lambda schedule: (schedule.next_due_at, schedule.job_name),
    )


def next_backoff(current: float, *, base: float, maximum: float, jitter: float | None = None) -> float:
    spread = random.uniform(0.0, 0.5) if jitter is None else jitter
    return min(max(current, base) * (2.0 + spread), maximum)
