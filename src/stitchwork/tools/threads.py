"""Built-in tools that let the model finish its thread or delegate work."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from stitchwork.engine.service import ThreadService
from stitchwork.tools.base import ThreadContext, Tool

if TYPE_CHECKING:
    from stitchwork.state import AppState


class CompleteThreadInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str = Field(min_length=1, description="Summary of what was accomplished.")


class FailThreadInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str = Field(min_length=1, description="Why the goal cannot be reached.")


class SpawnChildThreadInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    goal: str = Field(min_length=1, description="Goal of the child thread.")
    prompt: str = Field(min_length=1, description="Opening instructions for the child.")
    wait: bool = Field(
        default=True,
        description="Pause this thread until the child reports back.",
    )


class CompleteThread(Tool):
    name = "complete_thread"
    description = (
        "Mark the current thread as successfully completed. Call this once the goal is met."
    )
    input_model = CompleteThreadInput

    def run(
        self,
        tool_input: CompleteThreadInput,
        state: AppState,
        context: ThreadContext,
    ) -> dict[str, Any]:
        context.request_completion({"reason": tool_input.reason})
        return {"status": "completed", "reason": tool_input.reason}


class FailThread(Tool):
    name = "fail_thread"
    description = "Mark the current thread as failed when the goal cannot be achieved."
    input_model = FailThreadInput

    def run(
        self,
        tool_input: FailThreadInput,
        state: AppState,
        context: ThreadContext,
    ) -> dict[str, Any]:
        context.request_failure({"reason": tool_input.reason})
        return {"status": "failed", "reason": tool_input.reason}


class SpawnChildThread(Tool):
    name = "spawn_child_thread"
    description = (
        "Start a child thread working on a sub-goal. Its final result is delivered back "
        "to this thread as a message."
    )
    input_model = SpawnChildThreadInput

    def run(
        self,
        tool_input: SpawnChildThreadInput,
        state: AppState,
        context: ThreadContext,
    ) -> dict[str, Any]:
        child = ThreadService(state).spawn_child(
            branching_stitch_id=context.stitch_id,
            goal=tool_input.goal,
            prompt=tool_input.prompt,
        )
        context.outcome.spawned_thread_ids.append(child.thread_id)
        if tool_input.wait:
            context.await_children()
        return {"child_thread_id": child.thread_id, "status": child.status.value}


def builtin_tools() -> list[Tool]:
    return [CompleteThread(), FailThread(), SpawnChildThread()]
