"""Thread orchestration on top of the job queue."""

from stitchwork.engine.service import PROCESS_THREAD_STEP, ThreadService
from stitchwork.engine.step import (
    JOB_REGISTRY,
    ProcessThreadStep,
    StepAction,
    StepReport,
    ThreadStepProcessor,
)
from stitchwork.engine.sweep import SweepOrphanedThreads, cron_registry, sweep_orphaned_threads

__all__ = [
    "JOB_REGISTRY",
    "PROCESS_THREAD_STEP",
    "ProcessThreadStep",
    "StepAction",
    "StepReport",
    "SweepOrphanedThreads",
    "ThreadService",
    "ThreadStepProcessor",
    "cron_registry",
    "sweep_orphaned_threads",
]
