"""Shared application state handed to every job and tool."""

from __future__ import annotations

from dataclasses import dataclass, field

from stitchwork.config import Settings
from stitchwork.jobs.cron import CronRepository
from stitchwork.jobs.repository import JobRepository
from stitchwork.llm.anthropic import AnthropicClient, LlmClient
from stitchwork.threads.repository import ThreadRepository
from stitchwork.tools.base import Tool, ToolBag
from stitchwork.tools.threads import builtin_tools


@dataclass(slots=True)
class AppState:
    settings: Settings
    jobs: JobRepository
    threads: ThreadRepository
    crons: CronRepository
    llm: LlmClient | None = None
    extra_tools: list[Tool] = field(default_factory=list)

    @classmethod
    def open(
        cls,
        settings: Settings,
        *,
        llm: LlmClient | None = None,
        extra_tools: list[Tool] | None = None,
    ) -> AppState:
        """Open repositories against ``settings.db_path``."""

        return cls(
            settings=settings,
            jobs=JobRepository(
                settings.db_path,
                sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            ),
            threads=ThreadRepository(
                settings.db_path,
                sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            ),
            crons=CronRepository(
                settings.db_path,
                sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            ),
            llm=llm,
            extra_tools=list(extra_tools or []),
        )

    def build_tool_bag(self) -> ToolBag:
        return ToolBag([*builtin_tools(), *self.extra_tools])

    def close(self) -> None:
        self.jobs.close()
        self.threads.close()
        self.crons.close()
        if isinstance(self.llm, AnthropicClient):
            self.llm.close()


def build_llm_client(settings: Settings) -> AnthropicClient:
    return AnthropicClient(
        api_key=settings.llm.api_key,
        base_url=settings.llm.base_url,
        api_version=settings.llm.anthropic_version,
        timeout_seconds=settings.llm.request_timeout_seconds,
        max_retries=settings.llm.max_retries,
    )
