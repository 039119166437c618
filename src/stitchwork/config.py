"""Runtime configuration for the job queue, worker, cron scheduler, LLM client and threads."""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_SYSTEM_PROMPT = (
    "You are an autonomous agent working towards a goal inside a thread. "
    "Use the available tools to make progress. When the goal is met call "
    "complete_thread; if it cannot be met call fail_thread."
)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass(slots=True)
class JobSettings:
    """Retry and lease policy for queued jobs."""

    retry_backoff_seconds: int = 60
    max_attempts: int = 20
    stale_lock_seconds: int = 0


@dataclass(slots=True)
class WorkerSettings:
    """Worker process settings."""

    worker_id: str = field(default_factory=default_worker_id)
    poll_interval_seconds: float = 5.0
    cron_poll_interval_seconds: float = 10.0


@dataclass(slots=True)
class LlmSettings:
    """Messages API client settings."""

    api_key: str = ""
    base_url: str = "https://api.anthropic.com"
    model: str = "claude-sonnet-4-0"
    max_tokens: int = 1024
    anthropic_version: str = "2023-06-01"
    request_timeout_seconds: float = 120.0
    max_retries: int = 2
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


@dataclass(slots=True)
class ThreadSettings:
    """Thread step settings."""

    max_steps: int = 50
    step_priority: int = 0
    force_tool_use: bool = True
    sweep_interval_seconds: int = 3600


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".stitchwork.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    jobs: JobSettings = field(default_factory=JobSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    llm: LlmSettings = field(default_factory=LlmSettings)
    threads: ThreadSettings = field(default_factory=ThreadSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from ``STITCHWORK_*`` environment variables."""

        return cls(
            db_path=db_path or Path(os.getenv("STITCHWORK_DB_PATH", ".stitchwork.db")),
            sqlite_busy_timeout_ms=int(os.getenv("STITCHWORK_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("STITCHWORK_LOG_LEVEL", "INFO").strip().upper(),
            jobs=JobSettings(
                retry_backoff_seconds=int(os.getenv("STITCHWORK_RETRY_BACKOFF_SECONDS", "60")),
                max_attempts=int(os.getenv("STITCHWORK_MAX_ATTEMPTS", "20")),
                stale_lock_seconds=int(os.getenv("STITCHWORK_STALE_LOCK_SECONDS", "0")),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("STITCHWORK_WORKER_ID", "").strip() or default_worker_id(),
                poll_interval_seconds=float(os.getenv("STITCHWORK_POLL_INTERVAL_SECONDS", "5.0")),
                cron_poll_interval_seconds=float(
                    os.getenv("STITCHWORK_CRON_POLL_INTERVAL_SECONDS", "10"),
                ),
            ),
            llm=LlmSettings(
                api_key=os.getenv(
                    "STITCHWORK_ANTHROPIC_API_KEY",
                    os.getenv("ANTHROPIC_API_KEY", ""),
                ).strip(),
                base_url=os.getenv("STITCHWORK_ANTHROPIC_BASE_URL", "https://api.anthropic.com"),
                model=os.getenv("STITCHWORK_LLM_MODEL", "claude-sonnet-4-0"),
                max_tokens=int(os.getenv("STITCHWORK_LLM_MAX_TOKENS", "1024")),
                anthropic_version=os.getenv("STITCHWORK_ANTHROPIC_VERSION", "2023-06-01"),
                request_timeout_seconds=float(
                    os.getenv("STITCHWORK_LLM_REQUEST_TIMEOUT_SECONDS", "120"),
                ),
                max_retries=int(os.getenv("STITCHWORK_LLM_MAX_RETRIES", "2")),
                system_prompt=os.getenv("STITCHWORK_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
            ),
            threads=ThreadSettings(
                max_steps=int(os.getenv("STITCHWORK_THREAD_MAX_STEPS", "50")),
                step_priority=int(os.getenv("STITCHWORK_THREAD_STEP_PRIORITY", "0")),
                force_tool_use=_env_bool("STITCHWORK_FORCE_TOOL_USE", True),
                sweep_interval_seconds=int(os.getenv("STITCHWORK_SWEEP_INTERVAL_SECONDS", "3600")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the worker cannot run with."""

        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("STITCHWORK_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if logging.getLevelName(self.log_level) == f"Level {self.log_level}":
            raise ValueError(f"Unknown STITCHWORK_LOG_LEVEL: {self.log_level!r}")
        if self.jobs.retry_backoff_seconds < 0:
            raise ValueError("STITCHWORK_RETRY_BACKOFF_SECONDS must be >= 0.")
        if self.jobs.max_attempts < 0:
            raise ValueError("STITCHWORK_MAX_ATTEMPTS must be >= 0 (0 disables dead-lettering).")
        if self.jobs.stale_lock_seconds < 0:
            raise ValueError("STITCHWORK_STALE_LOCK_SECONDS must be >= 0.")
        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("STITCHWORK_POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.cron_poll_interval_seconds <= 0:
            raise ValueError("STITCHWORK_CRON_POLL_INTERVAL_SECONDS must be > 0.")
        if self.llm.max_tokens <= 0:
            raise ValueError("STITCHWORK_LLM_MAX_TOKENS must be a positive integer.")
        if self.llm.request_timeout_seconds <= 0:
            raise ValueError("STITCHWORK_LLM_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.llm.max_retries < 0:
            raise ValueError("STITCHWORK_LLM_MAX_RETRIES must be >= 0.")
        if self.threads.max_steps <= 0:
            raise ValueError("STITCHWORK_THREAD_MAX_STEPS must be a positive integer.")
        if self.threads.sweep_interval_seconds <= 0:
            raise ValueError("STITCHWORK_SWEEP_INTERVAL_SECONDS must be a positive integer.")

    def validate_for_llm(self) -> None:
        self.validate()
        if not self.llm.api_key:
            raise ValueError(
                "An API key is required. Set STITCHWORK_ANTHROPIC_API_KEY or ANTHROPIC_API_KEY.",
            )

    @property
    def max_attempts_or_none(self) -> int | None:
        return self.jobs.max_attempts or None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
