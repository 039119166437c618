"""Agent threads: lifecycle, stitch log, and conversation reconstruction."""

from stitchwork.threads.models import (
    ChildThreadReport,
    StitchType,
    StitchView,
    ThreadStatus,
    ThreadView,
)
from stitchwork.threads.repository import ThreadRepository

__all__ = [
    "ChildThreadReport",
    "StitchType",
    "StitchView",
    "ThreadRepository",
    "ThreadStatus",
    "ThreadView",
]
