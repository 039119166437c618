from __future__ import annotations

import threading
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, ClassVar

import allure
import pytest

from stitchwork.jobs.cron import CronRegistry, CronRepository, CronScheduler
from stitchwork.jobs.models import JobView
from stitchwork.jobs.registry import BaseJob
from stitchwork.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Recurring Jobs"),
]

START = datetime(2026, 10, 19, 8, 0, tzinfo=UTC)


@dataclass(slots=True)
class Heartbeat(BaseJob[Any]):
    NAME: ClassVar[str] = "heartbeat"

    source: str = "cron"

    def run(self, state: Any, *, job: JobView) -> None:
        return None


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@pytest.fixture()
def cron_repository(db_path: Path, job_repository: JobRepository) -> Iterator[CronRepository]:
    repository = CronRepository(db_path)
    yield repository
    repository.close()


def _registry(interval: timedelta = timedelta(hours=1)) -> CronRegistry:
    registry = CronRegistry()
    registry.register_job(Heartbeat(), interval)
    return registry


def _scheduler(
    crons: CronRepository,
    jobs: JobRepository,
    clock: FrozenClock,
) -> CronScheduler:
    return CronScheduler(
        registry=_registry(),
        crons=crons,
        jobs=jobs,
        poll_interval_seconds=0,
        clock=clock,
    )


def test_registry_rejects_duplicates_and_non_positive_intervals() -> None:
    registry = _registry()

    with pytest.raises(ValueError, match="already registered"):
        registry.register_job(Heartbeat(), timedelta(minutes=5))
    with pytest.raises(ValueError, match="positive interval"):
        registry.register("stalled", timedelta(0), Heartbeat)

    assert registry.names == ("heartbeat",)
    assert registry.get("heartbeat").interval == timedelta(hours=1)
    assert registry.get("missing") is None


def test_each_interval_enqueues_exactly_once(
    cron_repository: CronRepository,
    job_repository: JobRepository,
) -> None:
    clock = FrozenClock(START)
    scheduler = _scheduler(cron_repository, job_repository, clock)

    first = scheduler.tick()
    clock.advance(timedelta(minutes=30))
    too_early = scheduler.tick()
    clock.advance(timedelta(minutes=30))
    on_time = scheduler.tick()
    again = scheduler.tick()
    clock.advance(timedelta(minutes=59))
    still_early = scheduler.tick()

    assert [job.name for job in first] == ["heartbeat"]
    assert too_early == []
    assert [job.name for job in on_time] == ["heartbeat"]
    assert again == []
    assert still_early == []
    queued = job_repository.list_jobs(name="heartbeat")
    assert len(queued) == 2
    assert {job.context for job in queued} == {"cron:heartbeat"}
    assert {job.payload["source"] for job in queued} == {"cron"}
    (cron,) = cron_repository.list_crons()
    assert cron.last_run_at == START + timedelta(hours=1)


def test_late_tick_does_not_enqueue_missed_intervals(
    cron_repository: CronRepository,
    job_repository: JobRepository,
) -> None:
    clock = FrozenClock(START)
    scheduler = _scheduler(cron_repository, job_repository, clock)
    scheduler.tick()

    clock.advance(timedelta(hours=5))

    assert len(scheduler.tick()) == 1
    assert len(job_repository.list_jobs(name="heartbeat")) == 2


def test_schedulers_sharing_a_database_enqueue_once_per_interval(
    db_path: Path,
    cron_repository: CronRepository,
    job_repository: JobRepository,
) -> None:
    clock = FrozenClock(START)
    other_crons = CronRepository(db_path)
    try:
        first = _scheduler(cron_repository, job_repository, clock)
        second = _scheduler(other_crons, job_repository, clock)

        enqueued = []
        for _ in range(3):
            enqueued.extend(first.tick())
            enqueued.extend(second.tick())
            clock.advance(timedelta(hours=1))
    finally:
        other_crons.close()

    assert len(enqueued) == 3
    assert len(job_repository.list_jobs(name="heartbeat")) == 3


def test_racing_schedulers_mark_one_run(db_path: Path, cron_repository: CronRepository) -> None:
    racers = 8
    barrier = threading.Barrier(racers)
    results: list[bool] = []
    lock = threading.Lock()

    def race() -> None:
        repository = CronRepository(db_path)
        try:
            barrier.wait()
            marked = repository.try_mark_run("heartbeat", now=START, interval=timedelta(hours=1))
            with lock:
                results.append(marked)
        finally:
            repository.close()

    threads = [threading.Thread(target=race) for _ in range(racers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(results) == racers
    assert results.count(True) == 1


def test_reset_makes_cron_due_on_next_tick(
    cron_repository: CronRepository,
    job_repository: JobRepository,
) -> None:
    clock = FrozenClock(START)
    scheduler = _scheduler(cron_repository, job_repository, clock)
    scheduler.tick()

    assert cron_repository.reset("heartbeat") is True
    assert cron_repository.reset("never_registered") is False
    assert len(scheduler.tick()) == 1
    assert scheduler.tick() == []


def test_run_loop_stops_after_max_ticks(
    cron_repository: CronRepository,
    job_repository: JobRepository,
) -> None:
    clock = FrozenClock(START)
    scheduler = _scheduler(cron_repository, job_repository, clock)

    assert scheduler.run_loop(max_ticks=3) == 1
    assert len(job_repository.list_jobs(name="heartbeat")) == 1
