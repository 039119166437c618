"""Named job types and the closed registry the worker dispatches through."""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from datetime import datetime
from typing import Any, ClassVar, Generic, Self, TypeVar

from stitchwork.errors import FatalOrchestrationError, UnknownJobError
from stitchwork.jobs.models import JobCreate, JobView
from stitchwork.jobs.repository import JobRepository

StateT = TypeVar("StateT")


class BaseJob(Generic[StateT]):
    """A JSON-serializable unit of work identified by ``NAME``.

    Subclasses are dataclasses; their fields are the job payload.
    """

    NAME: ClassVar[str]

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Self:
        field_names = {field.name for field in dataclasses.fields(cls)}  # type: ignore[arg-type]
        unexpected = sorted(set(payload) - field_names)
        if unexpected:
            raise FatalOrchestrationError(
                f"{cls.NAME} payload has unexpected keys: {', '.join(unexpected)}",
            )
        try:
            return cls(**payload)
        except TypeError as error:
            raise FatalOrchestrationError(f"Invalid {cls.NAME} payload: {error}") from error

    def to_payload(self) -> dict[str, Any]:
        return dataclasses.asdict(self)  # type: ignore[call-overload]

    def run(self, state: StateT, *, job: JobView) -> None:
        raise NotImplementedError

    def enqueue(
        self,
        repository: JobRepository,
        *,
        context: str = "",
        priority: int = 0,
        run_at: datetime | None = None,
    ) -> JobView:
        return repository.enqueue(
            JobCreate(
                name=self.NAME,
                payload=self.to_payload(),
                priority=priority,
                run_at=run_at,
                context=context,
            ),
        )


class JobRegistry(Generic[StateT]):
    """Maps job names to job types; names outside the map are rejected."""

    def __init__(self, jobs: Mapping[str, type[BaseJob[StateT]]]) -> None:
        for name, job_type in jobs.items():
            if name != job_type.NAME:
                raise ValueError(f"Job registered as {name!r} declares NAME={job_type.NAME!r}")
        self._jobs = dict(jobs)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._jobs))

    def run_job(self, job: JobView, state: StateT) -> None:
        job_type = self._jobs.get(job.name)
        if job_type is None:
            raise UnknownJobError(job.name)
        job_type.from_payload(job.payload).run(state, job=job)
