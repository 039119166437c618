"""Domain models for the job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

DEFAULT_RETRY_BACKOFF_SECONDS = 60


class FailOutcome(str, Enum):
    """What happened to a job after its handler raised."""

    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    LEASE_LOST = "lease_lost"


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    run_at: datetime | None = None
    context: str = ""
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job row for workers and CLI."""

    job_id: str
    name: str
    payload: dict[str, Any]
    priority: int
    run_at: datetime
    created_at: datetime
    locked_by: str | None
    locked_at: datetime | None
    context: str
    attempts: int
    last_error: str | None
    dead_at: datetime | None

    @property
    def is_dead(self) -> bool:
        return self.dead_at is not None


@dataclass(slots=True)
class CronView:
    """Last enqueue time of one recurring job."""

    cron_id: str
    name: str
    last_run_at: datetime
    created_at: datetime
    updated_at: datetime
