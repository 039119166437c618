"""Tools the model can call while a thread runs."""

from stitchwork.tools.base import StepOutcome, ThreadContext, Tool, ToolBag, ToolResult

__all__ = ["StepOutcome", "ThreadContext", "Tool", "ToolBag", "ToolResult"]
