"""Thread lifecycle operations shared by the CLI, tools and the step processor."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from stitchwork.errors import FatalOrchestrationError
from stitchwork.jobs.models import JobCreate, JobView
from stitchwork.storage.common import dump_json
from stitchwork.threads.models import ChildThreadReport, ThreadStatus, ThreadView

if TYPE_CHECKING:
    from stitchwork.state import AppState

logger = logging.getLogger(__name__)

PROCESS_THREAD_STEP = "process_thread_step"


def user_prompt_messages(prompt: str) -> list[dict[str, Any]]:
    return [{"role": "user", "content": [{"type": "text", "text": prompt}]}]


def summarize_result(thread: ThreadView) -> str:
    """One-line outcome of a finished thread as shown to its parent."""

    result = thread.result
    if isinstance(result, dict) and isinstance(result.get("reason"), str):
        text = result["reason"]
    elif isinstance(result, str):
        text = result
    elif result is None:
        text = ""
    else:
        text = dump_json(result)
    return f"{thread.status.value}: {text}" if text else thread.status.value


class ThreadService:
    def __init__(self, state: AppState) -> None:
        self.state = state

    def start_thread(
        self,
        *,
        goal: str,
        prompt: str,
        tasks: list[Any] | None = None,
    ) -> ThreadView:
        """Create a top-level thread, record its prompt and queue the first step."""

        thread = self.state.threads.create(goal=goal, tasks=tasks)
        return self._launch(thread, prompt)

    def spawn_child(
        self,
        *,
        branching_stitch_id: str,
        goal: str,
        prompt: str,
        tasks: list[Any] | None = None,
    ) -> ThreadView:
        thread = self.state.threads.create_child(
            branching_stitch_id=branching_stitch_id,
            goal=goal,
            tasks=tasks,
        )
        logger.info("Spawned child thread %s from stitch %s", thread.thread_id, branching_stitch_id)
        return self._launch(thread, prompt)

    def enqueue_step(self, thread_id: str, last_stitch_id: str | None) -> JobView:
        job = self.state.jobs.enqueue(
            JobCreate(
                name=PROCESS_THREAD_STEP,
                payload={"thread_id": thread_id, "last_stitch_id": last_stitch_id},
                priority=self.state.settings.threads.step_priority,
                context=f"thread:{thread_id}",
            ),
        )
        logger.debug("Queued step %s for thread %s", job.job_id, thread_id)
        return job

    def abort_thread(self, thread_id: str, reason: str) -> ThreadView | None:
        """Abort a pending or running thread; ``None`` if it already finished."""

        updated = self.state.threads.abort(thread_id, {"reason": reason})
        if updated is not None:
            self.report_to_parent(updated)
        return updated

    def report_to_parent(self, thread: ThreadView) -> bool:
        """Queue a finished child's summary on its parent and wake the parent up."""

        if not thread.status.is_terminal:
            raise FatalOrchestrationError(
                f"Thread {thread.thread_id} is {thread.status.value}, not finished",
            )
        parent = self.state.threads.get_parent(thread)
        if parent is None:
            return False

        report = ChildThreadReport(
            child_thread_id=thread.thread_id,
            status=thread.status,
            summary=summarize_result(thread),
            details={"result": thread.result},
        )
        if not self.state.threads.queue_child_result(parent.thread_id, report):
            logger.info(
                "Parent %s of thread %s already finished, result dropped",
                parent.thread_id,
                thread.thread_id,
            )
            return False

        if parent.status == ThreadStatus.RUNNING and not self.state.jobs.exists_live_job(
            name=PROCESS_THREAD_STEP,
            payload_match={"thread_id": parent.thread_id},
            unlocked_only=True,
        ):
            last = self.state.threads.get_last_stitch(parent.thread_id)
            self.enqueue_step(parent.thread_id, last.stitch_id if last is not None else None)
        return True

    def _launch(self, thread: ThreadView, prompt: str) -> ThreadView:
        initial = self.state.threads.create_initial_prompt(
            thread.thread_id,
            user_prompt_messages(prompt),
        )
        running = self.state.threads.update_status(thread.thread_id, ThreadStatus.RUNNING)
        if running is None:
            raise FatalOrchestrationError(f"Thread {thread.thread_id} could not be started")
        self.enqueue_step(thread.thread_id, initial.stitch_id)
        return running
