"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from stitchwork.config import JobSettings, Settings, ThreadSettings, WorkerSettings
from stitchwork.jobs.repository import JobRepository
from stitchwork.state import AppState
from stitchwork.threads.repository import ThreadRepository


class ScriptedLlm:
    """LlmClient that replays canned responses and records every request."""

    def __init__(self, responses: list[dict[str, Any]] | None = None) -> None:
        self.responses = list(responses or [])
        self.requests: list[dict[str, Any]] = []

    def create_message(self, request: dict[str, Any]) -> dict[str, Any]:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError("ScriptedLlm ran out of responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "stitchwork.db"


@pytest.fixture()
def job_repository(db_path: Path) -> Iterator[JobRepository]:
    repository = JobRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def thread_repository(db_path: Path) -> Iterator[ThreadRepository]:
    repository = ThreadRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def scripted_llm() -> ScriptedLlm:
    return ScriptedLlm()


@pytest.fixture()
def app_state(db_path: Path, scripted_llm: ScriptedLlm) -> Iterator[AppState]:
    settings = Settings(
        db_path=db_path,
        jobs=JobSettings(retry_backoff_seconds=0),
        worker=WorkerSettings(worker_id="test-worker", poll_interval_seconds=0.01),
        threads=ThreadSettings(max_steps=5),
    )
    state = AppState.open(settings, llm=scripted_llm)
    state.jobs.init_schema()
    yield state
    state.close()
