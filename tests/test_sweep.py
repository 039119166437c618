from __future__ import annotations

import allure

from stitchwork.engine.service import PROCESS_THREAD_STEP, ThreadService
from stitchwork.engine.step import JOB_REGISTRY
from stitchwork.engine.sweep import SweepOrphanedThreads, sweep_orphaned_threads
from stitchwork.jobs.models import FailOutcome
from stitchwork.jobs.worker import JobWorker
from stitchwork.state import AppState

pytestmark = [
    allure.epic("Agent Threads"),
    allure.feature("Orphaned Thread Sweep"),
]


def _start(state: AppState, goal: str) -> str:
    return ThreadService(state).start_thread(goal=goal, prompt=goal).thread_id


def _drop_step_job(state: AppState, thread_id: str) -> None:
    job = state.jobs.claim_next(worker_id="crashed")
    assert job is not None
    assert job.payload["thread_id"] == thread_id
    assert state.jobs.complete(job_id=job.job_id, worker_id="crashed")


def _step_jobs_for(state: AppState, thread_id: str) -> list[str]:
    return [
        job.job_id
        for job in state.jobs.list_jobs(name=PROCESS_THREAD_STEP)
        if job.payload["thread_id"] == thread_id
    ]


def test_running_thread_without_step_job_is_requeued(app_state: AppState) -> None:
    orphan = _start(app_state, "Lost its step")
    _drop_step_job(app_state, orphan)
    covered = _start(app_state, "Still queued")

    requeued = sweep_orphaned_threads(app_state)

    assert requeued == [orphan]
    assert len(_step_jobs_for(app_state, orphan)) == 1
    assert len(_step_jobs_for(app_state, covered)) == 1
    (job,) = [
        job for job in app_state.jobs.list_jobs(name=PROCESS_THREAD_STEP)
        if job.payload["thread_id"] == orphan
    ]
    assert job.payload["last_stitch_id"] == app_state.threads.get_last_stitch(orphan).stitch_id
    assert sweep_orphaned_threads(app_state) == []


def test_dead_lettered_step_job_is_left_for_the_operator(app_state: AppState) -> None:
    thread_id = _start(app_state, "Keeps failing")
    job = app_state.jobs.claim_next(worker_id="w1")
    assert job is not None
    outcome = app_state.jobs.fail(job_id=job.job_id, worker_id="w1", max_attempts=1)
    assert outcome == FailOutcome.DEAD_LETTERED

    assert sweep_orphaned_threads(app_state) == []
    assert _step_jobs_for(app_state, thread_id) == [job.job_id]


def test_thread_waiting_on_a_child_is_not_requeued(app_state: AppState) -> None:
    service = ThreadService(app_state)
    parent = _start(app_state, "Delegates work")
    _drop_step_job(app_state, parent)
    branch = app_state.threads.get_last_stitch(parent)
    child = service.spawn_child(
        branching_stitch_id=branch.stitch_id,
        goal="Does the work",
        prompt="Does the work",
    )

    assert sweep_orphaned_threads(app_state) == []
    assert _step_jobs_for(app_state, parent) == []
    assert len(_step_jobs_for(app_state, child.thread_id)) == 1


def test_sweep_job_runs_through_the_worker(app_state: AppState) -> None:
    orphan = _start(app_state, "Lost its step")
    _drop_step_job(app_state, orphan)
    SweepOrphanedThreads().enqueue(app_state.jobs, context="test")
    worker = JobWorker(
        repository=app_state.jobs,
        registry=JOB_REGISTRY,
        state=app_state,
        worker_id="test-worker",
        poll_interval_seconds=0.01,
        retry_backoff_seconds=0,
    )

    summary = worker.run_once()

    assert summary.succeeded == 1
    assert len(_step_jobs_for(app_state, orphan)) == 1
    assert app_state.jobs.list_jobs(name=SweepOrphanedThreads.NAME) == []
