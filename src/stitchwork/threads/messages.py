"""Conversation content blocks and replay of a stitch log into LLM messages."""

from __future__ import annotations

import json
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from stitchwork.errors import FatalOrchestrationError
from stitchwork.threads.models import StitchType, StitchView


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(slots=True)
class TextBlock:
    text: str

    def to_api(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(slots=True)
class ToolUseBlock:
    id: str
    name: str
    input: Any = field(default_factory=dict)

    def to_api(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass(slots=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False

    def to_api(self) -> dict[str, Any]:
        return {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
            "is_error": self.is_error,
        }


@dataclass(slots=True)
class ThinkingBlock:
    thinking: str
    signature: str = ""

    def to_api(self) -> dict[str, Any]:
        return {"type": "thinking", "thinking": self.thinking, "signature": self.signature}


@dataclass(slots=True)
class RedactedThinkingBlock:
    data: str

    def to_api(self) -> dict[str, Any]:
        return {"type": "redacted_thinking", "data": self.data}


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock | ThinkingBlock | RedactedThinkingBlock


def _tool_result_content(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    return to_tool_content(raw)


_BLOCK_PARSERS: dict[str, Callable[[dict[str, Any]], ContentBlock]] = {
    "text": lambda raw: TextBlock(text=str(raw["text"])),
    "tool_use": lambda raw: ToolUseBlock(
        id=str(raw["id"]),
        name=str(raw["name"]),
        input=raw.get("input", {}),
    ),
    "tool_result": lambda raw: ToolResultBlock(
        tool_use_id=str(raw["tool_use_id"]),
        content=_tool_result_content(raw.get("content", "")),
        is_error=bool(raw.get("is_error", False)),
    ),
    "thinking": lambda raw: ThinkingBlock(
        thinking=str(raw["thinking"]),
        signature=str(raw.get("signature", "")),
    ),
    "redacted_thinking": lambda raw: RedactedThinkingBlock(data=str(raw["data"])),
}


def parse_content_block(raw: Any) -> ContentBlock:
    if not isinstance(raw, dict):
        raise FatalOrchestrationError(f"Content block must be an object, got {raw!r}")
    block_type = raw.get("type")
    parser = _BLOCK_PARSERS.get(block_type) if isinstance(block_type, str) else None
    if parser is None:
        raise FatalOrchestrationError(f"Unknown content type: {block_type!r}")
    try:
        return parser(raw)
    except KeyError as error:
        raise FatalOrchestrationError(
            f"Content block {block_type!r} is missing field {error.args[0]!r}",
        ) from error


@dataclass(slots=True)
class Message:
    role: Role
    content: list[ContentBlock]

    def to_api(self) -> dict[str, Any]:
        return {"role": self.role.value, "content": [block.to_api() for block in self.content]}

    @classmethod
    def from_api(cls, raw: Any) -> Message:
        if not isinstance(raw, dict):
            raise FatalOrchestrationError(f"Message must be an object, got {raw!r}")
        try:
            role = Role(raw.get("role"))
        except ValueError as error:
            raise FatalOrchestrationError(f"Unknown message role: {raw.get('role')!r}") from error
        content = raw.get("content", [])
        if isinstance(content, str):
            return cls(role=role, content=[TextBlock(text=content)])
        if not isinstance(content, list):
            raise FatalOrchestrationError("Message content must be a string or a list")
        return cls(role=role, content=[parse_content_block(item) for item in content])


def to_tool_content(value: Any) -> str:
    """JSON text sent back to the model as a tool result."""

    return json.dumps(value, ensure_ascii=False)


def parse_response_content(response: dict[str, Any] | None) -> list[ContentBlock]:
    """Validate an assistant response body and return its content blocks."""

    if not isinstance(response, dict) or not isinstance(response.get("content"), list):
        raise FatalOrchestrationError("LLM response has no content list")
    blocks = [parse_content_block(item) for item in response["content"]]
    for block in blocks:
        if isinstance(block, ToolResultBlock):
            raise FatalOrchestrationError("Assistant response contains a tool_result block")
    return blocks


def response_text(blocks: Sequence[ContentBlock]) -> str:
    return "\n".join(block.text for block in blocks if isinstance(block, TextBlock)).strip()


def tool_uses(blocks: Sequence[ContentBlock]) -> list[ToolUseBlock]:
    return [block for block in blocks if isinstance(block, ToolUseBlock)]


def child_result_text(child_thread_id: str, summary: str) -> str:
    return f"[Child thread {child_thread_id} finished] {summary}"


def _request_messages(stitch: StitchView) -> list[Message]:
    request = stitch.llm_request or {}
    raw_messages = request.get("messages") or []
    if not isinstance(raw_messages, list):
        raise FatalOrchestrationError(f"Stitch {stitch.stitch_id} has malformed request messages")
    return [Message.from_api(item) for item in raw_messages]


def reconstruct_messages(stitches: Sequence[StitchView]) -> list[Message]:
    """Rebuild the conversation from an ordered stitch history.

    Assistant turns come from recorded ``llm_call`` responses. Tool results and
    child outcomes are buffered and emitted together as one user turn, either
    before the next assistant turn or at the end of the history.
    """

    messages: list[Message] = []
    buffered: list[ContentBlock] = []
    expected: deque[tuple[str, str]] = deque()

    def flush() -> None:
        if buffered:
            # The API expects tool results ahead of any other user content.
            ordered = sorted(buffered, key=lambda block: not isinstance(block, ToolResultBlock))
            messages.append(Message(role=Role.USER, content=ordered))
            buffered.clear()

    for stitch in stitches:
        if stitch.stitch_type == StitchType.INITIAL_PROMPT:
            flush()
            messages.extend(_request_messages(stitch))
        elif stitch.stitch_type == StitchType.LLM_CALL:
            flush()
            if not messages:
                messages.extend(_request_messages(stitch))
            blocks = parse_response_content(stitch.llm_response)
            expected = deque((block.name, block.id) for block in tool_uses(blocks))
            messages.append(Message(role=Role.ASSISTANT, content=blocks))
        elif stitch.stitch_type == StitchType.TOOL_CALL:
            buffered.append(_tool_result_block(stitch, expected))
        elif stitch.stitch_type == StitchType.THREAD_RESULT:
            buffered.append(
                TextBlock(
                    text=child_result_text(
                        stitch.child_thread_id or "unknown",
                        stitch.thread_result_summary or "",
                    ),
                ),
            )
        else:
            raise FatalOrchestrationError(f"Unsupported stitch type: {stitch.stitch_type}")

    flush()
    return messages


def _tool_result_block(stitch: StitchView, expected: deque[tuple[str, str]]) -> ToolResultBlock:
    tool_name = stitch.tool_name or ""
    if expected and expected[0][0] == tool_name:
        tool_use_id = expected.popleft()[1]
    else:
        tool_use_id = f"tool_{tool_name}_{stitch.stitch_id}"

    output = stitch.tool_output
    if isinstance(output, dict) and "error" in output:
        return ToolResultBlock(
            tool_use_id=tool_use_id,
            content=to_tool_content(output["error"]),
            is_error=True,
        )
    return ToolResultBlock(tool_use_id=tool_use_id, content=to_tool_content(output))


def outstanding_tool_uses(stitches: Sequence[StitchView]) -> list[ToolUseBlock]:
    """Tool uses requested by the latest LLM call that were never recorded."""

    last_call = None
    for index in range(len(stitches) - 1, -1, -1):
        if stitches[index].stitch_type == StitchType.LLM_CALL:
            last_call = index
            break
    if last_call is None:
        return []
    requested = tool_uses(parse_response_content(stitches[last_call].llm_response))
    recorded = sum(
        1 for stitch in stitches[last_call + 1 :] if stitch.stitch_type == StitchType.TOOL_CALL
    )
    return requested[recorded:]
