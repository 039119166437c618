from __future__ import annotations

from pathlib import Path

import allure
import pytest

from stitchwork.config import JobSettings, LlmSettings, Settings, ThreadSettings, WorkerSettings

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def test_from_env_uses_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "STITCHWORK_DB_PATH",
        "STITCHWORK_MAX_ATTEMPTS",
        "STITCHWORK_LLM_MODEL",
        "STITCHWORK_ANTHROPIC_API_KEY",
        "ANTHROPIC_API_KEY",
        "STITCHWORK_FORCE_TOOL_USE",
        "STITCHWORK_WORKER_ID",
        "STITCHWORK_LOG_LEVEL",
        "STITCHWORK_THREAD_MAX_STEPS",
        "STITCHWORK_RETRY_BACKOFF_SECONDS",
        "STITCHWORK_SWEEP_INTERVAL_SECONDS",
        "STITCHWORK_CRON_POLL_INTERVAL_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".stitchwork.db")
    assert settings.jobs.max_attempts == 20
    assert settings.jobs.retry_backoff_seconds == 60
    assert settings.worker.poll_interval_seconds == 5.0
    assert settings.worker.worker_id
    assert settings.llm.model == "claude-sonnet-4-0"
    assert settings.llm.anthropic_version == "2023-06-01"
    assert settings.llm.api_key == ""
    assert settings.threads.max_steps == 50
    assert settings.threads.sweep_interval_seconds == 3600
    assert settings.worker.cron_poll_interval_seconds == 10.0
    assert settings.threads.force_tool_use is True
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("STITCHWORK_DB_PATH", str(tmp_path / "custom.db"))
    monkeypatch.setenv("STITCHWORK_MAX_ATTEMPTS", "0")
    monkeypatch.setenv("STITCHWORK_WORKER_ID", "worker-7")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "fallback-key")
    monkeypatch.setenv("STITCHWORK_THREAD_MAX_STEPS", "3")
    monkeypatch.setenv("STITCHWORK_FORCE_TOOL_USE", "off")
    monkeypatch.setenv("STITCHWORK_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "custom.db"
    assert settings.max_attempts_or_none is None
    assert settings.worker.worker_id == "worker-7"
    assert settings.llm.api_key == "fallback-key"
    assert settings.threads.max_steps == 3
    assert settings.threads.force_tool_use is False
    assert settings.log_level == "DEBUG"
    settings.validate_for_llm()


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("STITCHWORK_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STITCHWORK_FORCE_TOOL_USE", "sometimes")

    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(jobs=JobSettings(max_attempts=-1)), "MAX_ATTEMPTS"),
        (Settings(threads=ThreadSettings(max_steps=0)), "MAX_STEPS"),
        (Settings(threads=ThreadSettings(sweep_interval_seconds=0)), "SWEEP_INTERVAL"),
        (Settings(worker=WorkerSettings(cron_poll_interval_seconds=0)), "CRON_POLL_INTERVAL"),
        (Settings(llm=LlmSettings(max_tokens=0)), "MAX_TOKENS"),
        (Settings(log_level="CHATTY"), "LOG_LEVEL"),
    ],
)
def test_validate_rejects_bad_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_validate_for_llm_requires_api_key() -> None:
    with pytest.raises(ValueError, match="API key is required"):
        Settings().validate_for_llm()
