"""Recurring jobs: enqueue a named job whenever its interval has elapsed."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from stitchwork.jobs.models import CronView, JobView
from stitchwork.jobs.registry import BaseJob
from stitchwork.jobs.repository import JobRepository
from stitchwork.jobs.worker import stop_on_signals
from stitchwork.storage.alembic_runner import upgrade_head
from stitchwork.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from stitchwork.storage.sqlmodel_models import Cron

logger = logging.getLogger(__name__)

_CRONS = Cron.__table__  # type: ignore[attr-defined]
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(slots=True)
class CronEntry:
    name: str
    interval: timedelta
    factory: Callable[[], BaseJob[Any]]


class CronRegistry:
    """Recurring jobs keyed by name."""

    def __init__(self) -> None:
        self._entries: dict[str, CronEntry] = {}

    def register(
        self,
        name: str,
        interval: timedelta,
        factory: Callable[[], BaseJob[Any]],
    ) -> None:
        if interval <= timedelta(0):
            raise ValueError(f"Cron {name!r} needs a positive interval, got {interval}")
        if name in self._entries:
            raise ValueError(f"Cron already registered: {name}")
        self._entries[name] = CronEntry(name=name, interval=interval, factory=factory)

    def register_job(self, job: BaseJob[Any], interval: timedelta) -> None:
        """Enqueue ``job`` under its own ``NAME`` every ``interval``."""

        self.register(job.NAME, interval, lambda: job)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._entries))

    def get(self, name: str) -> CronEntry | None:
        return self._entries.get(name)

    def entries(self) -> list[CronEntry]:
        return [self._entries[name] for name in self.names]


class CronRepository:
    """Last-run bookkeeping in the ``crons`` table."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def try_mark_run(self, name: str, *, now: datetime, interval: timedelta) -> bool:
        """Record a run at ``now`` iff ``interval`` has passed since the last one.

        The first call for a name always succeeds. Concurrent schedulers race
        on one conditional statement, so each interval is won by one of them.
        """

        now_db = to_db_datetime(now)
        first_run = (
            sqlite_insert(_CRONS)
            .values(
                cron_id=str(uuid4()),
                name=name,
                last_run_at=now_db,
                created_at=now_db,
                updated_at=now_db,
            )
            .on_conflict_do_nothing(index_elements=["name"])
        )
        next_run = (
            sa_update(_CRONS)
            .where(_CRONS.c.name == name, _CRONS.c.last_run_at <= now_db - interval)
            .values(last_run_at=now_db, updated_at=now_db)
        )
        with Session(self.engine) as session:
            if session.execute(first_run).rowcount == 1:
                session.commit()
                return True
            marked = session.execute(next_run).rowcount == 1
            session.commit()
        return marked

    def list_crons(self) -> list[CronView]:
        with Session(self.engine) as session:
            rows = session.exec(select(Cron).order_by(col(Cron.name))).all()
            return [_to_cron_view(row) for row in rows]

    def reset(self, name: str) -> bool:
        """Make ``name`` due on the next tick."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.execute(
                sa_update(_CRONS)
                .where(_CRONS.c.name == name)
                .values(last_run_at=to_db_datetime(_EPOCH), updated_at=now),
            )
            session.commit()
        return result.rowcount == 1


class CronScheduler:
    """Enqueues due recurring jobs into the job queue."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: CronRegistry,
        crons: CronRepository,
        jobs: JobRepository,
        poll_interval_seconds: float = 10.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.registry = registry
        self.crons = crons
        self.jobs = jobs
        self.poll_interval_seconds = poll_interval_seconds
        self.clock = clock
        self._stop_requested = False

    def tick(self) -> list[JobView]:
        """Enqueue every job whose interval has elapsed; returns the new jobs."""

        now = self.clock()
        enqueued = []
        for entry in self.registry.entries():
            if not self.crons.try_mark_run(entry.name, now=now, interval=entry.interval):
                continue
            job = entry.factory().enqueue(self.jobs, context=f"cron:{entry.name}")
            logger.info("Cron %s enqueued job %s", entry.name, job.job_id)
            enqueued.append(job)
        return enqueued

    def run_loop(self, *, max_ticks: int | None = None) -> int:
        """Tick until stopped; returns the number of jobs enqueued."""

        ticks = 0
        total = 0
        with stop_on_signals(self.request_stop):
            while not self._stop_requested:
                total += len(self.tick())
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                self._sleep_with_stop(self.poll_interval_seconds)
        return total

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_requested = True
        logger.info("Cron scheduler stop requested (%s)", signal_name)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))


def _to_cron_view(row: Cron) -> CronView:
    return CronView(
        cron_id=row.cron_id,
        name=row.name,
        last_run_at=to_utc_aware_datetime(row.last_run_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
