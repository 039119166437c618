"""Queue worker: claim one job, dispatch it by name, settle the lease."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Generic

from stitchwork.jobs.models import DEFAULT_RETRY_BACKOFF_SECONDS, FailOutcome, JobView
from stitchwork.jobs.registry import JobRegistry, StateT
from stitchwork.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    dead: int = 0
    lost_leases: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.dead += other.dead
        self.lost_leases += other.lost_leases
        self.idle_polls += other.idle_polls


class JobWorker(Generic[StateT]):
    """Consumes queued jobs one at a time and runs them via the registry."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        registry: JobRegistry[StateT],
        state: StateT,
        worker_id: str,
        poll_interval_seconds: float = 5.0,
        retry_backoff_seconds: int = DEFAULT_RETRY_BACKOFF_SECONDS,
        max_attempts: int | None = None,
        stale_lock_seconds: int = 0,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.state = state
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_backoff_seconds = retry_backoff_seconds
        self.max_attempts = max_attempts
        self.stale_lock_seconds = stale_lock_seconds
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._current_job_id: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        job = self._claim_job()
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._current_job_id = job.job_id
        try:
            self._run_claimed(job=job, summary=summary)
        finally:
            self._current_job_id = None
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Poll until stopped.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: Stop after this many consecutive empty polls
                (None = keep polling forever).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with stop_on_signals(self.request_stop):
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    logger.debug(
                        "Worker %s found no job, sleeping %.1fs",
                        self.worker_id,
                        self.poll_interval_seconds,
                    )
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue

                consecutive_idle = 0

    def request_stop(self, *, signal_name: str = "manual") -> None:
        """Finish the in-flight job, then leave ``run_loop``."""

        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info(
            "Worker %s stop requested (%s), in-flight job: %s",
            self.worker_id,
            signal_name,
            self._current_job_id or "none",
        )

    def _claim_job(self) -> JobView | None:
        if self.stale_lock_seconds > 0:
            self.repository.release_stale(older_than=timedelta(seconds=self.stale_lock_seconds))
        return self.repository.claim_next(worker_id=self.worker_id)

    def _run_claimed(self, *, job: JobView, summary: WorkerRunSummary) -> None:
        started = time.monotonic()
        try:
            self.registry.run_job(job, self.state)
        except Exception as error:  # noqa: BLE001
            logger.exception(
                "Job %s (%s) errored on attempt %d",
                job.job_id,
                job.name,
                job.attempts,
            )
            outcome = self.repository.fail(
                job_id=job.job_id,
                worker_id=self.worker_id,
                backoff=timedelta(seconds=self.retry_backoff_seconds),
                error=f"{type(error).__name__}: {error}",
                max_attempts=self.max_attempts,
            )
            if outcome == FailOutcome.RETRY_SCHEDULED:
                summary.failed = 1
            elif outcome == FailOutcome.DEAD_LETTERED:
                summary.dead = 1
                logger.error(
                    "Job %s (%s) dead-lettered after %d attempts",
                    job.job_id,
                    job.name,
                    job.attempts,
                )
            else:
                summary.lost_leases = 1
                logger.warning("Job %s lease lost before failure was recorded", job.job_id)
            return

        if self.repository.complete(job_id=job.job_id, worker_id=self.worker_id):
            summary.succeeded = 1
            logger.info(
                "Job %s (%s) ran in %.2fs",
                job.job_id,
                job.name,
                time.monotonic() - started,
            )
        else:
            summary.lost_leases = 1
            logger.warning("Job %s finished but its lease was lost", job.job_id)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))


@contextmanager
def stop_on_signals(request_stop: Callable[..., None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``request_stop(signal_name=...)`` for the duration."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        request_stop(signal_name=name)

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
