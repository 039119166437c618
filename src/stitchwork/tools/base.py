"""Tool contract, tool bag dispatch, and the per-step thread context."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import BaseModel, ValidationError

from stitchwork.errors import ToolExecutionError
from stitchwork.threads.messages import ToolUseBlock
from stitchwork.threads.models import ThreadStatus, ThreadView

if TYPE_CHECKING:
    from stitchwork.state import AppState

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StepOutcome:
    """Status change requested by tools during one step."""

    status: ThreadStatus | None = None
    result: Any = None
    awaiting_children: bool = False
    spawned_thread_ids: list[str] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.status is not None


@dataclass(slots=True)
class ThreadContext:
    """What a tool knows about the thread it runs in.

    ``stitch_id`` is the ``llm_call`` stitch whose response requested the tool.
    """

    thread: ThreadView
    stitch_id: str
    outcome: StepOutcome = field(default_factory=StepOutcome)

    def request_completion(self, result: Any) -> None:
        self._request(ThreadStatus.COMPLETED, result)

    def request_failure(self, result: Any) -> None:
        self._request(ThreadStatus.FAILED, result)

    def await_children(self) -> None:
        self.outcome.awaiting_children = True

    def _request(self, status: ThreadStatus, result: Any) -> None:
        if self.outcome.status is not None:
            raise ToolExecutionError(
                f"Thread already marked {self.outcome.status.value} in this step",
            )
        self.outcome.status = status
        self.outcome.result = result


@dataclass(slots=True)
class ToolResult:
    is_error: bool
    content: Any

    @classmethod
    def ok(cls, content: Any) -> ToolResult:
        return cls(is_error=False, content=content)

    @classmethod
    def error(cls, kind: str, message: str, **details: Any) -> ToolResult:
        return cls(is_error=True, content={"kind": kind, "message": message, **details})

    def to_output(self) -> Any:
        """Value persisted as the stitch's ``tool_output``."""

        if self.is_error:
            return {"error": self.content}
        return self.content


class Tool(ABC):
    """A capability the model can invoke by name."""

    name: ClassVar[str]
    description: ClassVar[str]
    input_model: ClassVar[type[BaseModel]]

    @abstractmethod
    def run(self, tool_input: Any, state: AppState, context: ThreadContext) -> Any:
        """Execute with validated input; raise ``ToolExecutionError`` for expected failures."""

    def to_api(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_model.model_json_schema(),
        }


class ToolBag:
    """Named tools offered to the model for one thread step."""

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.add_tool(tool)

    def add_tool(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    @property
    def names(self) -> list[str]:
        return sorted(self._tools)

    def as_api(self) -> list[dict[str, Any]]:
        return [self._tools[name].to_api() for name in self.names]

    def call_tool(
        self,
        tool_use: ToolUseBlock,
        state: AppState,
        context: ThreadContext,
    ) -> ToolResult:
        """Run one tool use; every failure comes back as an error result."""

        tool = self._tools.get(tool_use.name)
        if tool is None:
            return ToolResult.error("not_found", f"Tool not found: {tool_use.name}")

        try:
            parsed = tool.input_model.model_validate(tool_use.input)
        except ValidationError as error:
            return ToolResult.error(
                "input_error",
                f"Invalid input for {tool.name}",
                errors=json.loads(error.json(include_url=False)),
            )

        try:
            output = tool.run(parsed, state, context)
        except ToolExecutionError as error:
            logger.info("Tool %s reported an error: %s", tool.name, error)
            return ToolResult.error("execution_error", str(error))
        except Exception as error:  # noqa: BLE001
            logger.exception("Tool %s raised unexpectedly", tool.name)
            return ToolResult.error("execution_error", f"{type(error).__name__}: {error}")

        if isinstance(output, BaseModel):
            output = output.model_dump(mode="json")
        try:
            json.dumps(output)
        except (TypeError, ValueError) as error:
            return ToolResult.error("output_error", f"Tool output is not JSON: {error}")
        return ToolResult.ok(output)
