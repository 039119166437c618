"""Persistent job queue with lease-based claiming."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import case, func
from sqlalchemy import delete as sa_delete
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from stitchwork.jobs.models import (
    DEFAULT_RETRY_BACKOFF_SECONDS,
    FailOutcome,
    JobCreate,
    JobView,
)
from stitchwork.storage.alembic_runner import upgrade_head
from stitchwork.storage.common import (
    build_sqlite_engine,
    dump_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from stitchwork.storage.sqlmodel_models import Job

logger = logging.getLogger(__name__)

_JOBS = Job.__table__  # type: ignore[attr-defined]


class JobRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every state change is a single conditional statement, so concurrent
    workers sharing one database file never observe a half-applied lease.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(self, payload: JobCreate) -> JobView:
        """Insert a new job row. No de-duplication is performed."""

        now = utc_now()
        row = Job(
            job_id=payload.job_id or str(uuid4()),
            name=payload.name,
            payload=dump_json(payload.payload),
            priority=payload.priority,
            run_at=to_db_datetime(payload.run_at or now),
            created_at=to_db_datetime(now),
            context=payload.context,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            view = _to_job_view(row)
        logger.debug("Enqueued job %s (%s) priority=%d", view.job_id, view.name, view.priority)
        return view

    def claim_next(self, *, worker_id: str) -> JobView | None:
        """Atomically lock the most urgent runnable job for ``worker_id``.

        Selection and locking happen in one UPDATE; the outer
        ``locked_by IS NULL`` guard turns it into a compare-and-set, so a row
        is handed to at most one claimant.
        """

        now = to_db_datetime(utc_now())
        candidate = (
            sa_select(_JOBS.c.job_id)
            .where(
                _JOBS.c.run_at <= now,
                _JOBS.c.locked_by.is_(None),
                _JOBS.c.dead_at.is_(None),
            )
            .order_by(_JOBS.c.priority.desc(), _JOBS.c.created_at.asc())
            .limit(1)
            .scalar_subquery()
        )
        statement = (
            sa_update(_JOBS)
            .where(_JOBS.c.job_id == candidate, _JOBS.c.locked_by.is_(None))
            .values(locked_by=worker_id, locked_at=now, attempts=_JOBS.c.attempts + 1)
            .returning(_JOBS)
        )
        with Session(self.engine) as session:
            claimed = session.execute(statement).mappings().one_or_none()
            session.commit()
        if claimed is None:
            return None
        return _to_job_view(Job(**dict(claimed)))

    def complete(self, *, job_id: str, worker_id: str) -> bool:
        """Delete a job iff it is still leased by ``worker_id``."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(Job).where(
                    col(Job.job_id) == job_id,
                    col(Job.locked_by) == worker_id,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def fail(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str,
        backoff: timedelta = timedelta(seconds=DEFAULT_RETRY_BACKOFF_SECONDS),
        error: str | None = None,
        max_attempts: int | None = None,
    ) -> FailOutcome:
        """Release the lease and push ``run_at`` forward by ``backoff``.

        A no-op returning ``LEASE_LOST`` when the job is no longer leased by
        ``worker_id``. With ``max_attempts`` set, a job that has already been
        claimed that many times is dead-lettered instead of rescheduled.
        """

        now = to_db_datetime(utc_now())
        retry_at = now + backoff
        if max_attempts is not None and max_attempts > 0:
            exhausted = _JOBS.c.attempts >= max_attempts
            dead_at = case((exhausted, now), else_=None)
            run_at = case((exhausted, _JOBS.c.run_at), else_=retry_at)
        else:
            dead_at = None
            run_at = retry_at

        statement = (
            sa_update(_JOBS)
            .where(_JOBS.c.job_id == job_id, _JOBS.c.locked_by == worker_id)
            .values(
                locked_by=None,
                locked_at=None,
                run_at=run_at,
                dead_at=dead_at,
                last_error=error,
            )
            .returning(_JOBS.c.dead_at)
        )
        with Session(self.engine) as session:
            row = session.execute(statement).one_or_none()
            session.commit()
        if row is None:
            return FailOutcome.LEASE_LOST
        if row.dead_at is not None:
            return FailOutcome.DEAD_LETTERED
        return FailOutcome.RETRY_SCHEDULED

    def release_stale(self, *, older_than: timedelta) -> int:
        """Clear leases held longer than ``older_than`` (crashed workers)."""

        cutoff = to_db_datetime(utc_now()) - older_than
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.locked_by).is_not(None),
                    col(Job.locked_at) < cutoff,
                    col(Job.dead_at).is_(None),
                )
                .values(locked_by=None, locked_at=None),
            )
            released = result.rowcount or 0
            session.commit()
        if released:
            logger.warning("Released %d stale job lease(s) older than %s", released, older_than)
        return released

    def requeue_dead(self, *, job_id: str) -> bool:
        """Give a dead-lettered job a fresh retry budget."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(col(Job.job_id) == job_id, col(Job.dead_at).is_not(None))
                .values(dead_at=None, attempts=0, run_at=now, last_error=None),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def get(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        name: str | None = None,
        include_dead: bool = True,
        limit: int = 50,
    ) -> list[JobView]:
        """List jobs in claim order, optionally filtered by name."""

        statement = select(Job)
        if name is not None:
            statement = statement.where(Job.name == name)
        if not include_dead:
            statement = statement.where(col(Job.dead_at).is_(None))
        statement = statement.order_by(
            col(Job.priority).desc(),
            col(Job.created_at).asc(),
        ).limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def exists_live_job(
        self,
        *,
        name: str,
        payload_match: Mapping[str, str],
        exclude_job_id: str | None = None,
        unlocked_only: bool = False,
    ) -> bool:
        """Whether a non-dead job with ``name`` and matching payload keys exists.

        With ``unlocked_only`` jobs currently held by a worker are ignored.
        """

        statement = select(Job.job_id).where(Job.name == name, col(Job.dead_at).is_(None))
        for key, value in payload_match.items():
            statement = statement.where(func.json_extract(Job.payload, f"$.{key}") == value)
        if exclude_job_id is not None:
            statement = statement.where(Job.job_id != exclude_job_id)
        if unlocked_only:
            statement = statement.where(col(Job.locked_by).is_(None))
        with Session(self.engine) as session:
            return session.exec(statement.limit(1)).first() is not None

    def payload_values(self, *, name: str, key: str) -> set[str]:
        """Distinct ``payload[key]`` values across jobs named ``name``, dead ones included."""

        value = func.json_extract(Job.payload, f"$.{key}")
        statement = select(value).where(Job.name == name, value.is_not(None)).distinct()
        with Session(self.engine) as session:
            return {str(item) for item in session.exec(statement).all()}


def _to_job_view(row: Job) -> JobView:
    payload: Any = json.loads(row.payload) if row.payload else {}
    return JobView(
        job_id=row.job_id,
        name=row.name,
        payload=payload if isinstance(payload, dict) else {"value": payload},
        priority=row.priority,
        run_at=to_utc_aware_datetime(row.run_at),
        created_at=to_utc_aware_datetime(row.created_at),
        locked_by=row.locked_by,
        locked_at=to_utc_aware_datetime(row.locked_at) if row.locked_at is not None else None,
        context=row.context,
        attempts=row.attempts,
        last_error=row.last_error,
        dead_at=to_utc_aware_datetime(row.dead_at) if row.dead_at is not None else None,
    )
