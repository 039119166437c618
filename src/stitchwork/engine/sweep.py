"""Recurring maintenance: requeue running threads that lost their step job."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, ClassVar

from stitchwork.config import Settings
from stitchwork.engine.service import PROCESS_THREAD_STEP, ThreadService
from stitchwork.jobs.cron import CronRegistry
from stitchwork.jobs.models import JobView
from stitchwork.jobs.registry import BaseJob
from stitchwork.threads.models import ThreadStatus

if TYPE_CHECKING:
    from stitchwork.state import AppState

logger = logging.getLogger(__name__)

SWEEP_ORPHANED_THREADS = "sweep_orphaned_threads"


@dataclass(slots=True)
class SweepOrphanedThreads(BaseJob["AppState"]):
    """Queue a step for every running thread with no step job and no active child.

    Threads whose step job was dead-lettered are left alone.
    """

    NAME: ClassVar[str] = SWEEP_ORPHANED_THREADS

    limit: int = 500

    def run(self, state: AppState, *, job: JobView) -> None:
        requeued = sweep_orphaned_threads(state, limit=self.limit)
        if requeued:
            logger.warning("Requeued steps for %d orphaned thread(s)", len(requeued))


def sweep_orphaned_threads(state: AppState, *, limit: int = 500) -> list[str]:
    covered = state.jobs.payload_values(name=PROCESS_THREAD_STEP, key="thread_id")
    service = ThreadService(state)
    requeued = []
    for thread in state.threads.list_threads(status=ThreadStatus.RUNNING, limit=limit):
        if thread.thread_id in covered:
            continue
        children = state.threads.get_children(thread.thread_id)
        if any(not child.status.is_terminal for child in children):
            continue
        last = state.threads.get_last_stitch(thread.thread_id)
        service.enqueue_step(thread.thread_id, last.stitch_id if last is not None else None)
        logger.info("Thread %s had no step job, requeued", thread.thread_id)
        requeued.append(thread.thread_id)
    return requeued


def cron_registry(settings: Settings) -> CronRegistry:
    registry = CronRegistry()
    registry.register_job(
        SweepOrphanedThreads(),
        timedelta(seconds=settings.threads.sweep_interval_seconds),
    )
    return registry
