"""Thread rows and their append-only stitch log."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func, literal
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from stitchwork.errors import FatalOrchestrationError, StitchChainConflictError
from stitchwork.storage.alembic_runner import upgrade_head
from stitchwork.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from stitchwork.storage.sqlmodel_models import AgentThread, Stitch
from stitchwork.threads.models import (
    ALLOWED_TRANSITIONS,
    ChildThreadReport,
    StitchType,
    StitchView,
    ThreadStatus,
    ThreadView,
)

logger = logging.getLogger(__name__)

_THREADS = AgentThread.__table__  # type: ignore[attr-defined]
_STITCHES = Stitch.__table__  # type: ignore[attr-defined]
_UNSET: Any = object()


class ThreadRepository:
    """Persistence facade for threads and stitches backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Threads

    def create(
        self,
        *,
        goal: str,
        tasks: list[Any] | None = None,
        branching_stitch_id: str | None = None,
    ) -> ThreadView:
        """Insert a thread in ``pending`` state."""

        if not goal.strip():
            raise ValueError("Thread goal cannot be empty")
        now = to_db_datetime(utc_now())
        row = AgentThread(
            thread_id=str(uuid4()),
            branching_stitch_id=branching_stitch_id,
            goal=goal,
            tasks=dump_json(tasks or []),
            status=ThreadStatus.PENDING.value,
            pending_child_results="[]",
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_thread_view(row)

    def create_child(
        self,
        *,
        branching_stitch_id: str,
        goal: str,
        tasks: list[Any] | None = None,
    ) -> ThreadView:
        """Insert a ``pending`` thread anchored at a stitch of its parent."""

        if self.get_stitch(branching_stitch_id) is None:
            raise FatalOrchestrationError(f"Branching stitch not found: {branching_stitch_id}")
        return self.create(goal=goal, tasks=tasks, branching_stitch_id=branching_stitch_id)

    def get(self, thread_id: str) -> ThreadView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(AgentThread).where(AgentThread.thread_id == thread_id),
            ).one_or_none()
            return _to_thread_view(row) if row is not None else None

    def list_threads(
        self,
        *,
        status: ThreadStatus | None = None,
        top_level_only: bool = False,
        limit: int = 50,
    ) -> list[ThreadView]:
        """List recent threads, newest first."""

        statement = select(AgentThread)
        if status is not None:
            statement = statement.where(AgentThread.status == status.value)
        if top_level_only:
            statement = statement.where(col(AgentThread.branching_stitch_id).is_(None))
        statement = statement.order_by(col(AgentThread.created_at).desc()).limit(limit)
        with Session(self.engine) as session:
            return [_to_thread_view(row) for row in session.exec(statement).all()]

    def update_status(self, thread_id: str, status: ThreadStatus) -> ThreadView | None:
        """Move a thread to ``status`` if the transition is allowed from its current state.

        Returns the updated thread, or ``None`` when the thread is missing or
        its current status does not permit the transition.
        """

        return self._transition(thread_id, status)

    def complete(self, thread_id: str, result: Any) -> ThreadView | None:
        return self._transition(thread_id, ThreadStatus.COMPLETED, result=result)

    def fail(self, thread_id: str, result: Any) -> ThreadView | None:
        return self._transition(thread_id, ThreadStatus.FAILED, result=result)

    def abort(self, thread_id: str, result: Any) -> ThreadView | None:
        return self._transition(thread_id, ThreadStatus.ABORTED, result=result)

    def update_tasks(self, thread_id: str, tasks: list[Any]) -> ThreadView | None:
        now = to_db_datetime(utc_now())
        statement = (
            sa_update(_THREADS)
            .where(_THREADS.c.thread_id == thread_id)
            .values(tasks=dump_json(tasks), updated_at=now)
            .returning(_THREADS)
        )
        with Session(self.engine) as session:
            row = session.execute(statement).mappings().one_or_none()
            session.commit()
        return _to_thread_view(AgentThread(**dict(row))) if row is not None else None

    def get_parent(self, thread: ThreadView) -> ThreadView | None:
        """Thread owning the stitch this thread branched from."""

        if thread.branching_stitch_id is None:
            return None
        stitch = self.get_stitch(thread.branching_stitch_id)
        if stitch is None:
            return None
        return self.get(stitch.thread_id)

    def get_parent_chain(self, thread: ThreadView) -> list[ThreadView]:
        """Ancestors ordered root first."""

        chain: list[ThreadView] = []
        current = thread
        seen = {thread.thread_id}
        while (parent := self.get_parent(current)) is not None:
            if parent.thread_id in seen:
                raise FatalOrchestrationError(f"Thread ancestry cycle at {parent.thread_id}")
            seen.add(parent.thread_id)
            chain.append(parent)
            current = parent
        chain.reverse()
        return chain

    def get_children(self, thread_id: str) -> list[ThreadView]:
        statement = (
            select(AgentThread)
            .join(Stitch, col(AgentThread.branching_stitch_id) == col(Stitch.stitch_id))
            .where(Stitch.thread_id == thread_id)
            .order_by(col(AgentThread.created_at).asc())
        )
        with Session(self.engine) as session:
            return [_to_thread_view(row) for row in session.exec(statement).all()]

    def queue_child_result(self, parent_thread_id: str, report: ChildThreadReport) -> bool:
        """Append a child outcome to the parent's queue while it is still active."""

        now = to_db_datetime(utc_now())
        active = [ThreadStatus.PENDING.value, ThreadStatus.RUNNING.value]
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentThread)
                .where(
                    col(AgentThread.thread_id) == parent_thread_id,
                    col(AgentThread.status).in_(active),
                )
                .values(
                    pending_child_results=func.json_insert(
                        AgentThread.pending_child_results,
                        "$[#]",
                        func.json(dump_json(report.to_json())),
                    ),
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def drain_child_results(self, thread_id: str) -> list[StitchView]:
        """Move queued child outcomes into ``thread_result`` stitches."""

        while True:
            with Session(self.engine) as session:
                row = session.exec(
                    select(AgentThread).where(AgentThread.thread_id == thread_id),
                ).one_or_none()
                if row is None:
                    raise FatalOrchestrationError(f"Thread not found: {thread_id}")
                raw = row.pending_child_results
                reports = [ChildThreadReport.from_json(item) for item in json.loads(raw or "[]")]
                if not reports:
                    return []

                result = session.exec(
                    sa_update(AgentThread)
                    .where(
                        col(AgentThread.thread_id) == thread_id,
                        col(AgentThread.pending_child_results) == raw,
                    )
                    .values(
                        pending_child_results="[]",
                        updated_at=to_db_datetime(utc_now()),
                    ),
                )
                if result.rowcount != 1:
                    # A child reported concurrently; re-read the queue.
                    session.rollback()
                    continue

                last = self._last_stitch_row(session, thread_id)
                previous_stitch_id = last.stitch_id if last is not None else None
                created: list[Stitch] = []
                for report in reports:
                    stitch = Stitch(
                        stitch_id=str(uuid4()),
                        thread_id=thread_id,
                        previous_stitch_id=previous_stitch_id,
                        stitch_type=StitchType.THREAD_RESULT.value,
                        child_thread_id=report.child_thread_id,
                        thread_result_summary=report.summary,
                        created_at=to_db_datetime(utc_now()),
                    )
                    session.add(stitch)
                    session.flush()
                    previous_stitch_id = stitch.stitch_id
                    created.append(stitch)
                try:
                    session.commit()
                except IntegrityError as error:
                    raise StitchChainConflictError(
                        f"Concurrent append to thread {thread_id}",
                    ) from error
                views = [_to_stitch_view(stitch) for stitch in created]
            logger.info("Thread %s received %d child result(s)", thread_id, len(views))
            return views

    # Stitches

    def create_initial_prompt(
        self,
        thread_id: str,
        messages: list[dict[str, Any]],
    ) -> StitchView:
        """Record the opening user messages as the root stitch of a thread."""

        return self._append(
            Stitch(
                thread_id=thread_id,
                previous_stitch_id=None,
                stitch_type=StitchType.INITIAL_PROMPT.value,
                llm_request=dump_json({"messages": messages}),
                llm_response=dump_json({"content": []}),
            ),
        )

    def create_llm_call(
        self,
        thread_id: str,
        previous_stitch_id: str | None,
        llm_request: dict[str, Any],
        llm_response: dict[str, Any],
    ) -> StitchView:
        return self._append(
            Stitch(
                thread_id=thread_id,
                previous_stitch_id=previous_stitch_id,
                stitch_type=StitchType.LLM_CALL.value,
                llm_request=dump_json(llm_request),
                llm_response=dump_json(llm_response),
            ),
        )

    def create_tool_call(  # noqa: PLR0913
        self,
        thread_id: str,
        previous_stitch_id: str | None,
        tool_name: str,
        tool_input: Any,
        tool_output: Any,
    ) -> StitchView:
        return self._append(
            Stitch(
                thread_id=thread_id,
                previous_stitch_id=previous_stitch_id,
                stitch_type=StitchType.TOOL_CALL.value,
                tool_name=tool_name,
                tool_input=dump_json(tool_input),
                tool_output=dump_json(tool_output),
            ),
        )

    def create_thread_result(
        self,
        thread_id: str,
        previous_stitch_id: str | None,
        child_thread_id: str,
        thread_result_summary: str,
    ) -> StitchView:
        return self._append(
            Stitch(
                thread_id=thread_id,
                previous_stitch_id=previous_stitch_id,
                stitch_type=StitchType.THREAD_RESULT.value,
                child_thread_id=child_thread_id,
                thread_result_summary=thread_result_summary,
            ),
        )

    def get_stitch(self, stitch_id: str) -> StitchView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Stitch).where(Stitch.stitch_id == stitch_id)).one_or_none()
            return _to_stitch_view(row) if row is not None else None

    def get_last_stitch(self, thread_id: str) -> StitchView | None:
        """The stitch no other stitch of the thread points back to."""

        with Session(self.engine) as session:
            row = self._last_stitch_row(session, thread_id)
            return _to_stitch_view(row) if row is not None else None

    def get_by_thread_ordered(self, thread_id: str) -> list[StitchView]:
        """Full linear history, oldest first, walked from the root stitch."""

        stitches = _STITCHES
        chain = (
            sa_select(*stitches.c, literal(0).label("depth"))
            .where(
                stitches.c.thread_id == thread_id,
                stitches.c.previous_stitch_id.is_(None),
            )
            .cte("chain", recursive=True)
        )
        following = stitches.alias("following")
        chain = chain.union_all(
            sa_select(*following.c, (chain.c.depth + 1).label("depth"))
            .select_from(
                following.join(chain, following.c.previous_stitch_id == chain.c.stitch_id),
            )
            .where(following.c.thread_id == thread_id),
        )
        statement = sa_select(chain).order_by(chain.c.depth)
        with Session(self.engine) as session:
            rows = session.execute(statement).mappings().all()
        return [_to_stitch_view(_stitch_from_mapping(row)) for row in rows]

    def count_stitches(self, thread_id: str, *, stitch_type: StitchType | None = None) -> int:
        statement = select(func.count()).select_from(Stitch).where(Stitch.thread_id == thread_id)
        if stitch_type is not None:
            statement = statement.where(Stitch.stitch_type == stitch_type.value)
        with Session(self.engine) as session:
            return int(session.exec(statement).one())

    def count_llm_calls(self, thread_id: str) -> int:
        return self.count_stitches(thread_id, stitch_type=StitchType.LLM_CALL)

    def _transition(
        self,
        thread_id: str,
        target: ThreadStatus,
        *,
        result: Any = _UNSET,
    ) -> ThreadView | None:
        sources = ALLOWED_TRANSITIONS[target]
        if not sources:
            raise ValueError(f"Threads cannot transition into {target.value}")
        values: dict[str, Any] = {
            "status": target.value,
            "updated_at": to_db_datetime(utc_now()),
        }
        if result is not _UNSET:
            values["result"] = dump_json(result)
        statement = (
            sa_update(_THREADS)
            .where(
                _THREADS.c.thread_id == thread_id,
                _THREADS.c.status.in_([status.value for status in sources]),
            )
            .values(**values)
            .returning(_THREADS)
        )
        with Session(self.engine) as session:
            row = session.execute(statement).mappings().one_or_none()
            session.commit()
        if row is None:
            logger.info("Thread %s: transition to %s not applied", thread_id, target.value)
            return None
        logger.info("Thread %s -> %s", thread_id, target.value)
        return _to_thread_view(AgentThread(**dict(row)))

    def _append(self, stitch: Stitch) -> StitchView:
        stitch.stitch_id = str(uuid4())
        stitch.created_at = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            if stitch.previous_stitch_id is not None:
                owner = session.exec(
                    select(Stitch.thread_id).where(Stitch.stitch_id == stitch.previous_stitch_id),
                ).one_or_none()
                if owner is None:
                    raise FatalOrchestrationError(
                        f"Previous stitch not found: {stitch.previous_stitch_id}",
                    )
                if owner != stitch.thread_id:
                    raise FatalOrchestrationError(
                        f"Stitch {stitch.previous_stitch_id} belongs to thread {owner}, "
                        f"not {stitch.thread_id}",
                    )
            session.add(stitch)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise StitchChainConflictError(
                    f"Thread {stitch.thread_id} already has a stitch after "
                    f"{stitch.previous_stitch_id or 'the root'}",
                ) from error
            session.refresh(stitch)
            return _to_stitch_view(stitch)

    @staticmethod
    def _last_stitch_row(session: Session, thread_id: str) -> Stitch | None:
        referenced = sa_select(_STITCHES.c.previous_stitch_id).where(
            _STITCHES.c.thread_id == thread_id,
            _STITCHES.c.previous_stitch_id.is_not(None),
        )
        return session.exec(
            select(Stitch)
            .where(
                Stitch.thread_id == thread_id,
                col(Stitch.stitch_id).not_in(referenced),
            )
            .order_by(col(Stitch.created_at).desc())
            .limit(1),
        ).first()


def _stitch_from_mapping(row: Any) -> Stitch:
    return Stitch(**{column.name: row[column.name] for column in _STITCHES.columns})


def _load_object(raw: str | None) -> dict[str, Any] | None:
    value = load_json(raw)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise FatalOrchestrationError(
            f"Expected a JSON object in stitch, got {type(value).__name__}",
        )
    return value


def _to_stitch_view(row: Stitch) -> StitchView:
    return StitchView(
        stitch_id=row.stitch_id,
        thread_id=row.thread_id,
        previous_stitch_id=row.previous_stitch_id,
        stitch_type=StitchType(row.stitch_type),
        created_at=to_utc_aware_datetime(row.created_at),
        llm_request=_load_object(row.llm_request),
        llm_response=_load_object(row.llm_response),
        tool_name=row.tool_name,
        tool_input=load_json(row.tool_input),
        tool_output=load_json(row.tool_output),
        child_thread_id=row.child_thread_id,
        thread_result_summary=row.thread_result_summary,
    )


def _to_thread_view(row: AgentThread) -> ThreadView:
    pending: Iterable[Any] = load_json(row.pending_child_results) or []
    return ThreadView(
        thread_id=row.thread_id,
        branching_stitch_id=row.branching_stitch_id,
        goal=row.goal,
        tasks=list(load_json(row.tasks) or []),
        status=ThreadStatus(row.status),
        result=load_json(row.result),
        pending_child_results=[dict(item) for item in pending],
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
