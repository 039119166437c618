"""Error taxonomy shared by the queue worker, the step processor and tools."""

from __future__ import annotations


class StitchworkError(Exception):
    """Base class for errors raised by stitchwork."""


class TransientJobError(StitchworkError):
    """Database or network hiccup while running a job; the job is retried."""


class ExternalApiError(TransientJobError):
    """Non-success response from the LLM provider."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"LLM API error: HTTP {status_code}: {body[:500]}")
        self.status_code = status_code
        self.body = body


class StitchChainConflictError(TransientJobError):
    """Another writer already appended a stitch after the same predecessor."""


class FatalOrchestrationError(StitchworkError):
    """The orchestration state does not allow this job to proceed."""


class UnknownJobError(FatalOrchestrationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown job type: {name}")
        self.name = name


class ToolExecutionError(StitchworkError):
    """A tool failed; always reported back to the LLM as an error tool result."""
