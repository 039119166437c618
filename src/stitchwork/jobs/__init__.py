"""Relational job queue: lease-based claiming, a polling worker and recurring jobs."""

from stitchwork.jobs.cron import CronRegistry, CronRepository, CronScheduler
from stitchwork.jobs.models import CronView, FailOutcome, JobCreate, JobView
from stitchwork.jobs.registry import BaseJob, JobRegistry
from stitchwork.jobs.repository import JobRepository
from stitchwork.jobs.worker import JobWorker, WorkerRunSummary

__all__ = [
    "BaseJob",
    "CronRegistry",
    "CronRepository",
    "CronScheduler",
    "CronView",
    "FailOutcome",
    "JobCreate",
    "JobRegistry",
    "JobRepository",
    "JobView",
    "JobWorker",
    "WorkerRunSummary",
]
