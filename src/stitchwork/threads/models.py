"""Domain models for agent threads and their stitch log."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ThreadStatus(str, Enum):
    """Thread lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ThreadStatus.COMPLETED, ThreadStatus.FAILED, ThreadStatus.ABORTED},
)

# Allowed source states for each transition target.
ALLOWED_TRANSITIONS: dict[ThreadStatus, frozenset[ThreadStatus]] = {
    ThreadStatus.PENDING: frozenset(),
    ThreadStatus.RUNNING: frozenset({ThreadStatus.PENDING}),
    ThreadStatus.COMPLETED: frozenset({ThreadStatus.PENDING, ThreadStatus.RUNNING}),
    ThreadStatus.FAILED: frozenset({ThreadStatus.PENDING, ThreadStatus.RUNNING}),
    ThreadStatus.ABORTED: frozenset({ThreadStatus.PENDING, ThreadStatus.RUNNING}),
}


class StitchType(str, Enum):
    """Kinds of entries in a thread's append-only history."""

    INITIAL_PROMPT = "initial_prompt"
    LLM_CALL = "llm_call"
    TOOL_CALL = "tool_call"
    THREAD_RESULT = "thread_result"


@dataclass(slots=True)
class ThreadView:
    thread_id: str
    branching_stitch_id: str | None
    goal: str
    tasks: list[Any]
    status: ThreadStatus
    result: Any
    pending_child_results: list[dict[str, Any]]
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class StitchView:
    """One immutable log entry. Only the fields of its ``stitch_type`` are set."""

    stitch_id: str
    thread_id: str
    previous_stitch_id: str | None
    stitch_type: StitchType
    created_at: datetime
    llm_request: dict[str, Any] | None = None
    llm_response: dict[str, Any] | None = None
    tool_name: str | None = None
    tool_input: Any = None
    tool_output: Any = None
    child_thread_id: str | None = None
    thread_result_summary: str | None = None


@dataclass(slots=True)
class ChildThreadReport:
    """Outcome of a child thread, queued on its parent until the next step."""

    child_thread_id: str
    status: ThreadStatus
    summary: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        return {
            "child_thread_id": self.child_thread_id,
            "status": self.status.value,
            "summary": self.summary,
            "details": self.details,
        }

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> ChildThreadReport:
        return cls(
            child_thread_id=str(raw["child_thread_id"]),
            status=ThreadStatus(raw["status"]),
            summary=str(raw.get("summary", "")),
            details=dict(raw.get("details") or {}),
        )
