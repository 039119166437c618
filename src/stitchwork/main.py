"""CLI entrypoint for stitchwork."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from stitchwork import __version__
from stitchwork.controllers import (
    CronListCommand,
    CronResetCommand,
    CronRunCommand,
    DbInitCommand,
    JobsEnqueueCommand,
    JobsListCommand,
    JobsRequeueCommand,
    StitchworkCliController,
    ThreadAbortCommand,
    ThreadInspectCommand,
    ThreadListCommand,
    ThreadStartCommand,
    WorkerRunCommand,
)
from stitchwork.threads.models import ThreadStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = StitchworkCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="stitchwork")
def stitchwork() -> None:
    """Durable agent threads on a SQLite job queue."""

    logging.basicConfig(
        level=os.getenv("STITCHWORK_LOG_LEVEL", "INFO").strip().upper(),
        format=LOG_FORMAT,
    )


@stitchwork.group()
def db() -> None:
    """Database commands."""


@db.command("init")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def db_init(db_path: Path | None) -> None:
    """Create or migrate the database schema."""

    _run(CONTROLLER.init_db, DbInitCommand(db_path=db_path))


@stitchwork.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", default=None, help="Only jobs with this name.")
@click.option(
    "--include-dead/--live-only",
    default=True,
    show_default=True,
    help="Include dead-lettered jobs.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs_list(db_path: Path | None, name: str | None, include_dead: bool, limit: int) -> None:
    """List queued, locked and dead-lettered jobs."""

    _run(
        CONTROLLER.list_jobs,
        JobsListCommand(db_path=db_path, name=name, include_dead=include_dead, limit=limit),
    )


@jobs.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Registered job name.")
@click.option("--payload", default="{}", show_default=True, help="Job payload as JSON object.")
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
@click.option(
    "--delay-seconds",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Do not run before this many seconds from now.",
)
def jobs_enqueue(
    db_path: Path | None,
    name: str,
    payload: str,
    priority: int,
    delay_seconds: int,
) -> None:
    """Insert a raw job into the queue."""

    _run(
        CONTROLLER.enqueue_job,
        JobsEnqueueCommand(
            db_path=db_path,
            name=name,
            payload=payload,
            priority=priority,
            delay_seconds=delay_seconds,
        ),
    )


@jobs.command("requeue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_requeue(db_path: Path | None, job_id: str) -> None:
    """Put a dead-lettered job back in the queue."""

    _run(CONTROLLER.requeue_job, JobsRequeueCommand(db_path=db_path, job_id=job_id))


@stitchwork.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, help="Process at most one job and exit.")
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many jobs.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many consecutive empty polls (default: poll forever).",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int | None,
) -> None:
    """Claim and run jobs until stopped (SIGINT/SIGTERM finish the current job first)."""

    _run(
        CONTROLLER.run_worker,
        WorkerRunCommand(
            db_path=db_path,
            once=once,
            max_jobs=max_jobs,
            max_idle_polls=max_idle_polls,
        ),
    )


@stitchwork.group()
def cron() -> None:
    """Recurring job commands."""


@cron.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, help="Enqueue whatever is due now and exit.")
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many scheduler ticks (default: run until stopped).",
)
def cron_run(db_path: Path | None, once: bool, max_ticks: int | None) -> None:
    """Enqueue recurring jobs as their intervals elapse."""

    _run(
        CONTROLLER.run_cron,
        CronRunCommand(db_path=db_path, once=once, max_ticks=max_ticks),
    )


@cron.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def cron_list(db_path: Path | None) -> None:
    """Show registered recurring jobs and when each last ran."""

    _run(CONTROLLER.list_crons, CronListCommand(db_path=db_path))


@cron.command("reset")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("name")
def cron_reset(db_path: Path | None, name: str) -> None:
    """Make a recurring job due on the next tick."""

    _run(CONTROLLER.reset_cron, CronResetCommand(db_path=db_path, name=name))


@stitchwork.group()
def threads() -> None:
    """Agent thread commands."""


@threads.command("start")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--goal", required=True, help="What the thread should achieve.")
@click.option("--prompt", default=None, help="Opening user message (defaults to the goal).")
@click.option("--task", "tasks", multiple=True, help="Task checklist item. Can be repeated.")
def threads_start(
    db_path: Path | None,
    goal: str,
    prompt: str | None,
    tasks: tuple[str, ...],
) -> None:
    """Create a thread and queue its first step."""

    _run(
        CONTROLLER.start_thread,
        ThreadStartCommand(db_path=db_path, goal=goal, prompt=prompt, tasks=tasks),
    )


@threads.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in ThreadStatus]),
    default=None,
    help="Filter by status.",
)
@click.option("--top-level", is_flag=True, help="Hide child threads.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Max number of threads to print.",
)
def threads_list(db_path: Path | None, status: str | None, top_level: bool, limit: int) -> None:
    """List recent threads."""

    _run(
        CONTROLLER.list_threads,
        ThreadListCommand(
            db_path=db_path,
            status=status,
            top_level_only=top_level,
            limit=limit,
        ),
    )


@threads.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("thread_id")
def threads_show(db_path: Path | None, thread_id: str) -> None:
    """Show a thread, its family and its stitch history."""

    _run(CONTROLLER.show_thread, ThreadInspectCommand(db_path=db_path, thread_id=thread_id))


@threads.command("messages")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("thread_id")
def threads_messages(db_path: Path | None, thread_id: str) -> None:
    """Print the conversation that the next step would send to the model."""

    _run(CONTROLLER.thread_messages, ThreadInspectCommand(db_path=db_path, thread_id=thread_id))


@threads.command("abort")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--reason", default="aborted by operator", show_default=True)
@click.argument("thread_id")
def threads_abort(db_path: Path | None, reason: str, thread_id: str) -> None:
    """Abort a pending or running thread."""

    _run(
        CONTROLLER.abort_thread,
        ThreadAbortCommand(db_path=db_path, thread_id=thread_id, reason=reason),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    stitchwork()
