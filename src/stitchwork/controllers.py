"""Controllers for stitchwork CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from stitchwork.config import Settings
from stitchwork.engine.service import ThreadService
from stitchwork.engine.step import JOB_REGISTRY
from stitchwork.engine.sweep import cron_registry
from stitchwork.jobs.cron import CronScheduler
from stitchwork.jobs.models import JobCreate
from stitchwork.jobs.worker import JobWorker
from stitchwork.llm.anthropic import LlmClient
from stitchwork.state import AppState, build_llm_client
from stitchwork.storage.common import dump_json, utc_now
from stitchwork.threads.messages import reconstruct_messages
from stitchwork.threads.models import StitchType, ThreadStatus


@dataclass(slots=True)
class DbInitCommand:
    db_path: Path | None


@dataclass(slots=True)
class JobsListCommand:
    db_path: Path | None
    name: str | None
    include_dead: bool
    limit: int


@dataclass(slots=True)
class JobsEnqueueCommand:
    """CLI input for raw job enqueue."""

    db_path: Path | None
    name: str
    payload: str
    priority: int
    delay_seconds: int


@dataclass(slots=True)
class JobsRequeueCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None


@dataclass(slots=True)
class CronRunCommand:
    """CLI input for the recurring-job scheduler."""

    db_path: Path | None
    once: bool
    max_ticks: int | None


@dataclass(slots=True)
class CronListCommand:
    db_path: Path | None


@dataclass(slots=True)
class CronResetCommand:
    db_path: Path | None
    name: str


@dataclass(slots=True)
class ThreadStartCommand:
    db_path: Path | None
    goal: str
    prompt: str | None
    tasks: tuple[str, ...]


@dataclass(slots=True)
class ThreadListCommand:
    db_path: Path | None
    status: str | None
    top_level_only: bool
    limit: int


@dataclass(slots=True)
class ThreadInspectCommand:
    db_path: Path | None
    thread_id: str


@dataclass(slots=True)
class ThreadAbortCommand:
    db_path: Path | None
    thread_id: str
    reason: str


class StitchworkCliController:
    """Adapter layer between click commands and stitchwork services.

    ``llm_factory`` builds the model client for ``worker run``; tests swap it
    for a fake.
    """

    def __init__(self, llm_factory: Callable[[], LlmClient] | None = None) -> None:
        self._llm_factory = llm_factory

    def init_db(self, command: DbInitCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _state(settings):
            pass
        return [f"Database ready: {settings.db_path}"]

    def list_jobs(self, command: JobsListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _state(settings) as state:
            jobs = state.jobs.list_jobs(
                name=command.name,
                include_dead=command.include_dead,
                limit=command.limit,
            )
        if not jobs:
            return ["No jobs."]
        lines = [f"Jobs ({len(jobs)}):"]
        for job in jobs:
            if job.is_dead:
                state_label = "dead"
            elif job.locked_by:
                state_label = f"locked_by={job.locked_by}"
            else:
                state_label = "queued"
            lines.append(
                f"- {job.job_id} {job.name} priority={job.priority} attempts={job.attempts} "
                f"run_at={job.run_at.isoformat()} {state_label} payload={dump_json(job.payload)}",
            )
            if job.last_error:
                lines.append(f"  last_error: {job.last_error}")
        return lines

    def enqueue_job(self, command: JobsEnqueueCommand) -> list[str]:
        if command.name not in JOB_REGISTRY.names:
            raise ValueError(
                f"Unknown job name: {command.name!r}. Known: {', '.join(JOB_REGISTRY.names)}",
            )
        try:
            payload = json.loads(command.payload)
        except json.JSONDecodeError as error:
            raise ValueError(f"Payload is not valid JSON: {error}") from error
        if not isinstance(payload, dict):
            raise ValueError("Payload must be a JSON object.")

        settings = _settings(command.db_path)
        with _state(settings) as state:
            job = state.jobs.enqueue(
                JobCreate(
                    name=command.name,
                    payload=payload,
                    priority=command.priority,
                    run_at=utc_now() + timedelta(seconds=command.delay_seconds),
                    context="cli",
                ),
            )
        return [f"Job enqueued: job_id={job.job_id} name={job.name} priority={job.priority}"]

    def requeue_job(self, command: JobsRequeueCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _state(settings) as state:
            if not state.jobs.requeue_dead(job_id=command.job_id):
                raise ValueError(f"Job is not dead-lettered: {command.job_id}")
        return [f"Job requeued: {command.job_id}"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        if self._llm_factory is None:
            settings.validate_for_llm()
            llm: LlmClient = build_llm_client(settings)
        else:
            llm = self._llm_factory()
        with _state(settings, llm=llm) as state:
            worker = JobWorker(
                repository=state.jobs,
                registry=JOB_REGISTRY,
                state=state,
                worker_id=settings.worker.worker_id,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                retry_backoff_seconds=settings.jobs.retry_backoff_seconds,
                max_attempts=settings.max_attempts_or_none,
                stale_lock_seconds=settings.jobs.stale_lock_seconds,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} dead={summary.dead} "
            f"lost_leases={summary.lost_leases} idle_polls={summary.idle_polls}",
        ]

    def run_cron(self, command: CronRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _state(settings) as state:
            scheduler = CronScheduler(
                registry=cron_registry(settings),
                crons=state.crons,
                jobs=state.jobs,
                poll_interval_seconds=settings.worker.cron_poll_interval_seconds,
            )
            if command.once:
                enqueued = scheduler.tick()
                if not enqueued:
                    return ["No crons due."]
                return [f"Cron enqueued: job_id={job.job_id} name={job.name}" for job in enqueued]
            total = scheduler.run_loop(max_ticks=command.max_ticks)
        return [f"Cron summary: enqueued={total}"]

    def list_crons(self, command: CronListCommand) -> list[str]:
        settings = _settings(command.db_path)
        registry = cron_registry(settings)
        with _state(settings) as state:
            last_runs = {cron.name: cron.last_run_at for cron in state.crons.list_crons()}
        lines = [f"Crons ({len(registry.names)}):"]
        for entry in registry.entries():
            last_run = last_runs.get(entry.name)
            lines.append(
                f"- {entry.name} every={int(entry.interval.total_seconds())}s "
                f"last_run={last_run.isoformat() if last_run is not None else 'never'}",
            )
        return lines

    def reset_cron(self, command: CronResetCommand) -> list[str]:
        settings = _settings(command.db_path)
        if command.name not in cron_registry(settings).names:
            raise ValueError(f"Unknown cron: {command.name!r}")
        with _state(settings) as state:
            if not state.crons.reset(command.name):
                return [f"Cron has not run yet: {command.name} is already due"]
        return [f"Cron reset: {command.name} runs on the next tick"]

    def start_thread(self, command: ThreadStartCommand) -> list[str]:
        if not command.goal.strip():
            raise ValueError("Thread goal cannot be empty.")
        settings = _settings(command.db_path)
        with _state(settings) as state:
            thread = ThreadService(state).start_thread(
                goal=command.goal,
                prompt=command.prompt or command.goal,
                tasks=list(command.tasks),
            )
        return [
            f"Thread started: thread_id={thread.thread_id} status={thread.status.value}",
            "Run `stitchwork worker run` to process it.",
        ]

    def list_threads(self, command: ThreadListCommand) -> list[str]:
        status = _parse_status(command.status)
        settings = _settings(command.db_path)
        with _state(settings) as state:
            threads = state.threads.list_threads(
                status=status,
                top_level_only=command.top_level_only,
                limit=command.limit,
            )
        if not threads:
            return ["No threads."]
        lines = [f"Threads ({len(threads)}):"]
        for thread in threads:
            parent = " child" if thread.branching_stitch_id else ""
            lines.append(
                f"- {thread.thread_id} [{thread.status.value}]{parent} "
                f"{thread.created_at.isoformat()} goal={_shorten(thread.goal)}",
            )
        return lines

    def show_thread(self, command: ThreadInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _state(settings) as state:
            thread = state.threads.get(command.thread_id)
            if thread is None:
                raise ValueError(f"Thread not found: {command.thread_id}")
            ancestors = state.threads.get_parent_chain(thread)
            children = state.threads.get_children(thread.thread_id)
            stitches = state.threads.get_by_thread_ordered(thread.thread_id)

        lines = [
            f"Thread: {thread.thread_id}",
            f"Status: {thread.status.value}",
            f"Goal: {thread.goal}",
            f"Created: {thread.created_at.isoformat()}",
            f"Updated: {thread.updated_at.isoformat()}",
        ]
        if thread.tasks:
            lines.append(f"Tasks: {dump_json(thread.tasks)}")
        if thread.result is not None:
            lines.append(f"Result: {dump_json(thread.result)}")
        if ancestors:
            lines.append("Ancestors: " + " > ".join(parent.thread_id for parent in ancestors))
        if children:
            lines.append(f"Children ({len(children)}):")
            lines.extend(f"- {child.thread_id} [{child.status.value}]" for child in children)
        if thread.pending_child_results:
            lines.append(f"Queued child results: {len(thread.pending_child_results)}")
        lines.append(f"Stitches ({len(stitches)}):")
        for index, stitch in enumerate(stitches, start=1):
            detail = ""
            if stitch.stitch_type == StitchType.TOOL_CALL:
                is_error = isinstance(stitch.tool_output, dict) and "error" in stitch.tool_output
                detail = f" {stitch.tool_name}{' (error)' if is_error else ''}"
            elif stitch.stitch_type == StitchType.THREAD_RESULT:
                detail = f" from {stitch.child_thread_id}"
            lines.append(
                f"{index:>3}. {stitch.stitch_type.value}{detail} "
                f"{stitch.created_at.isoformat()} {stitch.stitch_id}",
            )
        return lines

    def thread_messages(self, command: ThreadInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _state(settings) as state:
            if state.threads.get(command.thread_id) is None:
                raise ValueError(f"Thread not found: {command.thread_id}")
            stitches = state.threads.get_by_thread_ordered(command.thread_id)
        messages = [message.to_api() for message in reconstruct_messages(stitches)]
        return [json.dumps(messages, ensure_ascii=False, indent=2)]

    def abort_thread(self, command: ThreadAbortCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _state(settings) as state:
            if state.threads.get(command.thread_id) is None:
                raise ValueError(f"Thread not found: {command.thread_id}")
            updated = ThreadService(state).abort_thread(command.thread_id, command.reason)
        if updated is None:
            return [f"Thread already finished: {command.thread_id}"]
        return [f"Thread aborted: {command.thread_id}"]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_status(value: str | None) -> ThreadStatus | None:
    if value is None:
        return None
    try:
        return ThreadStatus(value)
    except ValueError as error:
        raise ValueError(f"Unsupported thread status: {value!r}") from error


def _shorten(text: str, limit: int = 80) -> str:
    single_line = " ".join(text.split())
    if len(single_line) <= limit:
        return single_line
    return single_line[: limit - 3] + "..."


@contextmanager
def _state(settings: Settings, *, llm: LlmClient | None = None) -> Iterator[AppState]:
    state = AppState.open(settings, llm=llm)
    try:
        state.jobs.init_schema()
        yield state
    finally:
        state.close()
