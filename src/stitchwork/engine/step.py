"""One step of an agent thread: call the model, run its tools, queue the next step."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

from stitchwork.engine.service import PROCESS_THREAD_STEP, ThreadService
from stitchwork.engine.sweep import SweepOrphanedThreads
from stitchwork.errors import FatalOrchestrationError
from stitchwork.jobs.models import JobView
from stitchwork.jobs.registry import BaseJob, JobRegistry
from stitchwork.threads.messages import (
    Message,
    ToolUseBlock,
    outstanding_tool_uses,
    parse_response_content,
    reconstruct_messages,
    response_text,
    tool_uses,
)
from stitchwork.threads.models import StitchType, StitchView, ThreadStatus, ThreadView
from stitchwork.tools.base import ThreadContext, ToolBag

if TYPE_CHECKING:
    from stitchwork.state import AppState

logger = logging.getLogger(__name__)


class StepAction(str, Enum):
    SKIPPED_TERMINAL = "skipped_terminal"
    DROPPED_STALE = "dropped_stale"
    MAX_STEPS_EXCEEDED = "max_steps_exceeded"
    LLM_CALL = "llm_call"
    RESUMED_TOOLS = "resumed_tools"


@dataclass(slots=True)
class StepReport:
    """What a single step did, for logs and tests."""

    thread_id: str
    action: StepAction
    status: ThreadStatus
    llm_call_stitch_id: str | None = None
    tool_names: list[str] = field(default_factory=list)
    continuation_job_id: str | None = None


@dataclass(slots=True)
class ProcessThreadStep(BaseJob["AppState"]):
    NAME: ClassVar[str] = PROCESS_THREAD_STEP

    thread_id: str
    last_stitch_id: str | None = None

    def run(self, state: AppState, *, job: JobView) -> None:
        ThreadStepProcessor(state).process(self, job_id=job.job_id)


JOB_REGISTRY: JobRegistry[AppState] = JobRegistry(
    {
        ProcessThreadStep.NAME: ProcessThreadStep,
        SweepOrphanedThreads.NAME: SweepOrphanedThreads,
    },
)


class ThreadStepProcessor:
    def __init__(self, state: AppState) -> None:
        self.state = state
        self.service = ThreadService(state)

    def process(self, step: ProcessThreadStep, *, job_id: str | None = None) -> StepReport:
        threads = self.state.threads
        thread = threads.get(step.thread_id)
        if thread is None:
            raise FatalOrchestrationError(f"Thread not found: {step.thread_id}")
        if thread.status.is_terminal:
            logger.info("Thread %s is %s, step skipped", thread.thread_id, thread.status.value)
            return StepReport(thread.thread_id, StepAction.SKIPPED_TERMINAL, thread.status)
        if thread.status != ThreadStatus.RUNNING:
            raise FatalOrchestrationError(
                f"Thread {thread.thread_id} is {thread.status.value}, expected running",
            )
        if self._is_stale(step, job_id):
            logger.info(
                "Dropping stale step for thread %s (expected last stitch %s)",
                thread.thread_id,
                step.last_stitch_id,
            )
            return StepReport(thread.thread_id, StepAction.DROPPED_STALE, thread.status)

        threads.drain_child_results(thread.thread_id)
        stitches = threads.get_by_thread_ordered(thread.thread_id)
        if not stitches:
            raise FatalOrchestrationError(f"Thread {thread.thread_id} has no history")

        bag = self.state.build_tool_bag()
        pending = outstanding_tool_uses(stitches)
        if pending:
            llm_stitch = _last_llm_call(stitches)
            previous_stitch_id = stitches[-1].stitch_id
            action = StepAction.RESUMED_TOOLS
            logger.info(
                "Thread %s: resuming %d unrecorded tool call(s)",
                thread.thread_id,
                len(pending),
            )
        else:
            llm_calls = sum(1 for s in stitches if s.stitch_type == StitchType.LLM_CALL)
            if llm_calls >= self.state.settings.threads.max_steps:
                return self._abort_max_steps(thread, llm_calls)
            llm_stitch, pending = self._call_model(thread, stitches, bag)
            previous_stitch_id = llm_stitch.stitch_id
            action = StepAction.LLM_CALL

        context = ThreadContext(thread=thread, stitch_id=llm_stitch.stitch_id)
        for tool_use in pending:
            result = bag.call_tool(tool_use, self.state, context)
            recorded = threads.create_tool_call(
                thread.thread_id,
                previous_stitch_id,
                tool_use.name,
                tool_use.input,
                result.to_output(),
            )
            previous_stitch_id = recorded.stitch_id

        if action == StepAction.LLM_CALL and not pending:
            # Plain text answer: the model is done.
            text = response_text(parse_response_content(llm_stitch.llm_response))
            context.request_completion({"reason": text or "Finished without a tool call."})

        report = StepReport(
            thread.thread_id,
            action,
            thread.status,
            llm_call_stitch_id=llm_stitch.stitch_id if action == StepAction.LLM_CALL else None,
            tool_names=[tool_use.name for tool_use in pending],
        )
        final = self._apply_outcome(thread, context)
        report.status = final.status
        if final.status == ThreadStatus.RUNNING:
            report.continuation_job_id = self._continue(
                final,
                previous_stitch_id,
                awaiting_children=context.outcome.awaiting_children,
            )
        return report

    def _is_stale(self, step: ProcessThreadStep, job_id: str | None) -> bool:
        if step.last_stitch_id is None:
            return False
        last = self.state.threads.get_last_stitch(step.thread_id)
        if last is None or last.stitch_id == step.last_stitch_id:
            return False
        return self.state.jobs.exists_live_job(
            name=PROCESS_THREAD_STEP,
            payload_match={"thread_id": step.thread_id},
            exclude_job_id=job_id,
        )

    def _call_model(
        self,
        thread: ThreadView,
        stitches: list[StitchView],
        bag: ToolBag,
    ) -> tuple[StitchView, list[ToolUseBlock]]:
        llm = self.state.llm
        if llm is None:
            raise FatalOrchestrationError("No LLM client configured")
        messages = reconstruct_messages(stitches)
        if not messages:
            raise FatalOrchestrationError(f"Thread {thread.thread_id} has no messages to send")

        request = self._build_request(thread, messages, bag)
        response = llm.create_message(request)
        blocks = parse_response_content(response)
        llm_stitch = self.state.threads.create_llm_call(
            thread.thread_id,
            stitches[-1].stitch_id,
            request,
            response,
        )
        logger.info(
            "Thread %s: model requested %d tool call(s)",
            thread.thread_id,
            len(tool_uses(blocks)),
        )
        return llm_stitch, tool_uses(blocks)

    def _build_request(
        self,
        thread: ThreadView,
        messages: list[Message],
        bag: ToolBag,
    ) -> dict[str, Any]:
        settings = self.state.settings
        request: dict[str, Any] = {
            "model": settings.llm.model,
            "max_tokens": settings.llm.max_tokens,
            "system": f"{settings.llm.system_prompt}\n\nThread goal: {thread.goal}",
            "messages": [message.to_api() for message in messages],
            "tools": bag.as_api(),
        }
        if settings.threads.force_tool_use:
            request["tool_choice"] = {"type": "any"}
        return request

    def _apply_outcome(self, thread: ThreadView, context: ThreadContext) -> ThreadView:
        outcome = context.outcome
        if outcome.status is None:
            current = self.state.threads.get(thread.thread_id)
            return current if current is not None else thread
        if outcome.status == ThreadStatus.COMPLETED:
            updated = self.state.threads.complete(thread.thread_id, outcome.result)
        else:
            updated = self.state.threads.fail(thread.thread_id, outcome.result)
        if updated is None:
            # Finished concurrently, e.g. aborted from the CLI.
            current = self.state.threads.get(thread.thread_id)
            return current if current is not None else thread
        self.service.report_to_parent(updated)
        return updated

    def _abort_max_steps(self, thread: ThreadView, llm_calls: int) -> StepReport:
        logger.warning(
            "Thread %s reached %d LLM calls, aborting",
            thread.thread_id,
            llm_calls,
        )
        updated = self.state.threads.abort(
            thread.thread_id,
            {"reason": "max_steps_exceeded", "llm_calls": llm_calls},
        )
        if updated is not None:
            self.service.report_to_parent(updated)
            return StepReport(thread.thread_id, StepAction.MAX_STEPS_EXCEEDED, updated.status)
        current = self.state.threads.get(thread.thread_id)
        status = current.status if current is not None else thread.status
        return StepReport(thread.thread_id, StepAction.MAX_STEPS_EXCEEDED, status)

    def _continue(
        self,
        thread: ThreadView,
        last_stitch_id: str,
        *,
        awaiting_children: bool,
    ) -> str | None:
        if awaiting_children:
            active = [
                child.thread_id
                for child in self.state.threads.get_children(thread.thread_id)
                if not child.status.is_terminal
            ]
            if active:
                logger.info(
                    "Thread %s waiting for %d child thread(s)",
                    thread.thread_id,
                    len(active),
                )
                return None
        return self.service.enqueue_step(thread.thread_id, last_stitch_id).job_id


def _last_llm_call(stitches: list[StitchView]) -> StitchView:
    for stitch in reversed(stitches):
        if stitch.stitch_type == StitchType.LLM_CALL:
            return stitch
    raise FatalOrchestrationError("No llm_call stitch to resume from")
