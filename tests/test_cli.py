from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

import allure
import pytest
from click.testing import CliRunner

from stitchwork import main
from stitchwork.controllers import DbInitCommand, StitchworkCliController
from stitchwork.jobs.models import JobCreate
from stitchwork.jobs.repository import JobRepository
from stitchwork.main import stitchwork
from stitchwork.state import AppState

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Command Line"),
]

_THREAD_ID = re.compile(r"thread_id=(\S+)")


class CannedLlm:
    def __init__(self, responses: list[dict[str, Any]]) -> None:
        self.responses = responses
        self.requests: list[dict[str, Any]] = []

    def create_message(self, request: dict[str, Any]) -> dict[str, Any]:
        self.requests.append(request)
        return self.responses.pop(0)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("STITCHWORK_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY", "STITCHWORK_MAX_ATTEMPTS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("STITCHWORK_POLL_INTERVAL_SECONDS", "0.01")
    monkeypatch.setenv("STITCHWORK_RETRY_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("STITCHWORK_LOG_LEVEL", "WARNING")


def _invoke(*args: str) -> Any:
    return CliRunner().invoke(stitchwork, list(args))


def _start_thread(db_path: Path, goal: str = "Say hello") -> str:
    result = _invoke(
        "threads",
        "start",
        "--db-path",
        str(db_path),
        "--goal",
        goal,
        "--task",
        "greet",
    )
    assert result.exit_code == 0, result.output
    match = _THREAD_ID.search(result.output)
    assert match is not None
    return match.group(1)


def test_db_init_creates_database(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    result = _invoke("db", "init", "--db-path", str(db_path))

    assert result.exit_code == 0, result.output
    assert "Database ready" in result.output
    assert db_path.exists()


def test_thread_lifecycle_commands(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    thread_id = _start_thread(db_path)

    listed = _invoke("threads", "list", "--db-path", str(db_path), "--status", "running")
    shown = _invoke("threads", "show", "--db-path", str(db_path), thread_id)
    messages = _invoke("threads", "messages", "--db-path", str(db_path), thread_id)
    jobs = _invoke("jobs", "list", "--db-path", str(db_path))

    assert "Threads (1):" in listed.output
    assert thread_id in listed.output
    assert "Status: running" in shown.output
    assert 'Tasks: ["greet"]' in shown.output
    assert "Stitches (1):" in shown.output
    assert "initial_prompt" in shown.output
    assert json.loads(messages.output) == [
        {"role": "user", "content": [{"type": "text", "text": "Say hello"}]},
    ]
    assert "Jobs (1):" in jobs.output
    assert "process_thread_step" in jobs.output

    aborted = _invoke("threads", "abort", "--db-path", str(db_path), "--reason", "stop", thread_id)
    again = _invoke("threads", "abort", "--db-path", str(db_path), thread_id)
    shown_after = _invoke("threads", "show", "--db-path", str(db_path), thread_id)

    assert f"Thread aborted: {thread_id}" in aborted.output
    assert f"Thread already finished: {thread_id}" in again.output
    assert "Status: aborted" in shown_after.output
    assert 'Result: {"reason": "stop"}' in shown_after.output


def test_unknown_thread_is_reported_as_cli_error(tmp_path: Path) -> None:
    result = _invoke("threads", "show", "--db-path", str(tmp_path / "cli.db"), "nope")

    assert result.exit_code != 0
    assert "Thread not found: nope" in result.output


def test_jobs_enqueue_validates_name_and_payload(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    unknown = _invoke("jobs", "enqueue", "--db-path", str(db_path), "--name", "mystery")
    bad_payload = _invoke(
        "jobs",
        "enqueue",
        "--db-path",
        str(db_path),
        "--name",
        "process_thread_step",
        "--payload",
        "[1, 2]",
    )
    queued = _invoke(
        "jobs",
        "enqueue",
        "--db-path",
        str(db_path),
        "--name",
        "process_thread_step",
        "--payload",
        '{"thread_id": "t-1"}',
        "--priority",
        "7",
    )

    assert unknown.exit_code != 0
    assert "Unknown job name" in unknown.output
    assert bad_payload.exit_code != 0
    assert "JSON object" in bad_payload.output
    assert queued.exit_code == 0, queued.output
    assert "name=process_thread_step priority=7" in queued.output


def test_jobs_requeue_revives_dead_job(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    repository = JobRepository(db_path)
    repository.init_schema()
    job = repository.enqueue(JobCreate(name="process_thread_step", payload={"thread_id": "t"}))
    claimed = repository.claim_next(worker_id="w")
    assert claimed is not None
    repository.fail(job_id=job.job_id, worker_id="w", error="boom", max_attempts=1)
    repository.close()

    dead = _invoke("jobs", "list", "--db-path", str(db_path))
    requeued = _invoke("jobs", "requeue", "--db-path", str(db_path), job.job_id)
    not_dead = _invoke("jobs", "requeue", "--db-path", str(db_path), job.job_id)

    assert " dead " in dead.output
    assert "last_error: boom" in dead.output
    assert f"Job requeued: {job.job_id}" in requeued.output
    assert not_dead.exit_code != 0
    assert "not dead-lettered" in not_dead.output


def test_worker_run_requires_api_key(tmp_path: Path) -> None:
    result = _invoke("worker", "run", "--db-path", str(tmp_path / "cli.db"), "--once")

    assert result.exit_code != 0
    assert "API key is required" in result.output


def test_worker_run_drives_thread_to_completion(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    llm = CannedLlm(
        [
            {
                "content": [
                    {
                        "type": "tool_use",
                        "id": "toolu_1",
                        "name": "complete_thread",
                        "input": {"reason": "hello said"},
                    },
                ],
            },
        ],
    )
    monkeypatch.setattr(main, "CONTROLLER", StitchworkCliController(llm_factory=lambda: llm))
    db_path = tmp_path / "cli.db"
    thread_id = _start_thread(db_path)

    result = _invoke("worker", "run", "--db-path", str(db_path), "--max-idle-polls", "1")
    shown = _invoke("threads", "show", "--db-path", str(db_path), thread_id)

    assert result.exit_code == 0, result.output
    assert "processed=1 succeeded=1 failed=0 dead=0" in result.output
    assert "Status: completed" in shown.output
    assert "complete_thread" in shown.output
    assert len(llm.requests) == 1


def test_info_logs_survive_schema_migration(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    monkeypatch.setenv("STITCHWORK_LOG_LEVEL", "INFO")
    root = logging.getLogger()

    with caplog.at_level(logging.INFO):
        thread_id = _start_thread(tmp_path / "cli.db")

        assert root.level == logging.INFO
        assert caplog.handler in root.handlers

    messages = [record.getMessage() for record in caplog.records]
    assert f"Thread {thread_id} -> running" in messages


def test_state_is_closed_when_migration_fails(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    closed: list[bool] = []
    original_close = AppState.close

    def _broken_migration(_self: JobRepository) -> None:
        raise RuntimeError("migration failed")

    def _close(self: AppState) -> None:
        closed.append(True)
        original_close(self)

    monkeypatch.setattr(JobRepository, "init_schema", _broken_migration)
    monkeypatch.setattr(AppState, "close", _close)

    with pytest.raises(RuntimeError, match="migration failed"):
        StitchworkCliController().init_db(DbInitCommand(db_path=tmp_path / "cli.db"))

    assert closed == [True]


def test_cron_commands_schedule_the_orphan_sweep(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    before = _invoke("cron", "list", "--db-path", str(db_path))
    first = _invoke("cron", "run", "--once", "--db-path", str(db_path))
    second = _invoke("cron", "run", "--once", "--db-path", str(db_path))
    after = _invoke("cron", "list", "--db-path", str(db_path))
    reset = _invoke("cron", "reset", "--db-path", str(db_path), "sweep_orphaned_threads")
    third = _invoke("cron", "run", "--max-ticks", "1", "--db-path", str(db_path))
    unknown = _invoke("cron", "reset", "--db-path", str(db_path), "nightly_report")

    assert before.exit_code == 0, before.output
    assert "- sweep_orphaned_threads every=3600s last_run=never" in before.output
    assert first.exit_code == 0, first.output
    assert "Cron enqueued:" in first.output
    assert "name=sweep_orphaned_threads" in first.output
    assert "No crons due." in second.output
    assert "last_run=never" not in after.output
    assert "Cron reset: sweep_orphaned_threads" in reset.output
    assert "Cron summary: enqueued=1" in third.output
    assert unknown.exit_code != 0
    assert "Unknown cron" in unknown.output

    jobs = JobRepository(db_path)
    try:
        assert len(jobs.list_jobs(name="sweep_orphaned_threads")) == 2
    finally:
        jobs.close()


def test_sweep_interval_comes_from_environment(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("STITCHWORK_SWEEP_INTERVAL_SECONDS", "120")

    result = _invoke("cron", "list", "--db-path", str(tmp_path / "cli.db"))

    assert result.exit_code == 0, result.output
    assert "every=120s" in result.output
