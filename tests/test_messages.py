from __future__ import annotations

import json
from datetime import UTC, datetime

import allure
import pytest

from stitchwork.errors import FatalOrchestrationError
from stitchwork.threads.messages import (
    Role,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    outstanding_tool_uses,
    parse_content_block,
    parse_response_content,
    reconstruct_messages,
)
from stitchwork.threads.models import StitchType, StitchView

pytestmark = [
    allure.epic("Agent Threads"),
    allure.feature("Message Reconstruction"),
]

_CREATED = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
_USER_PROMPT = {"role": "user", "content": [{"type": "text", "text": "Plan a trip"}]}


def _stitch(stitch_id: str, stitch_type: StitchType, **fields) -> StitchView:
    return StitchView(
        stitch_id=stitch_id,
        thread_id="thread-1",
        previous_stitch_id=None,
        stitch_type=stitch_type,
        created_at=_CREATED,
        **fields,
    )


def _llm_call(
    stitch_id: str,
    content: list[dict],
    messages: list[dict] | None = None,
) -> StitchView:
    return _stitch(
        stitch_id,
        StitchType.LLM_CALL,
        llm_request={"messages": messages or []},
        llm_response={"content": content},
    )


def _tool_call(stitch_id: str, name: str, output) -> StitchView:
    return _stitch(
        stitch_id,
        StitchType.TOOL_CALL,
        tool_name=name,
        tool_input={},
        tool_output=output,
    )


def test_single_llm_call_round_trips_request_and_response() -> None:
    response = [
        {"type": "thinking", "thinking": "hmm", "signature": "sig"},
        {"type": "text", "text": "Sure."},
    ]
    messages = reconstruct_messages([_llm_call("s1", response, messages=[_USER_PROMPT])])

    assert [message.to_api() for message in messages] == [
        _USER_PROMPT,
        {"role": "assistant", "content": response},
    ]


def test_initial_prompt_is_used_and_first_call_request_not_repeated() -> None:
    stitches = [
        _stitch("s0", StitchType.INITIAL_PROMPT, llm_request={"messages": [_USER_PROMPT]}),
        _llm_call("s1", [{"type": "text", "text": "ok"}], messages=[_USER_PROMPT]),
    ]

    messages = reconstruct_messages(stitches)

    assert [message.role for message in messages] == [Role.USER, Role.ASSISTANT]
    assert messages[0].content == [TextBlock(text="Plan a trip")]


def test_string_content_in_request_becomes_text_block() -> None:
    stitches = [
        _stitch(
            "s0",
            StitchType.INITIAL_PROMPT,
            llm_request={"messages": [{"role": "user", "content": "hello"}]},
        ),
    ]

    assert reconstruct_messages(stitches)[0].content == [TextBlock(text="hello")]


def test_tool_results_are_batched_into_one_user_message() -> None:
    stitches = [
        _llm_call(
            "s1",
            [
                {"type": "tool_use", "id": "toolu_a", "name": "search", "input": {"q": "x"}},
                {"type": "tool_use", "id": "toolu_b", "name": "fetch", "input": {}},
            ],
            messages=[_USER_PROMPT],
        ),
        _tool_call("s2", "search", {"hits": 3}),
        _tool_call("s3", "fetch", {"body": "ok"}),
    ]

    messages = reconstruct_messages(stitches)

    assert len(messages) == 3
    assert messages[2].role == Role.USER
    assert messages[2].content == [
        ToolResultBlock(tool_use_id="toolu_a", content=json.dumps({"hits": 3})),
        ToolResultBlock(tool_use_id="toolu_b", content=json.dumps({"body": "ok"})),
    ]


def test_error_output_becomes_error_tool_result() -> None:
    stitches = [
        _llm_call(
            "s1",
            [{"type": "tool_use", "id": "toolu_a", "name": "search", "input": {}}],
            messages=[_USER_PROMPT],
        ),
        _tool_call("s2", "search", {"error": {"kind": "execution_error", "message": "down"}}),
    ]

    result = reconstruct_messages(stitches)[-1].content[0]

    assert isinstance(result, ToolResultBlock)
    assert result.is_error is True
    assert json.loads(result.content) == {"kind": "execution_error", "message": "down"}


def test_unmatched_tool_name_gets_synthesized_id() -> None:
    stitches = [
        _llm_call(
            "s1",
            [{"type": "tool_use", "id": "toolu_a", "name": "search", "input": {}}],
            messages=[_USER_PROMPT],
        ),
        _tool_call("s2", "fetch", {}),
        _tool_call("s3", "search", {}),
    ]

    results = reconstruct_messages(stitches)[-1].content

    assert [block.tool_use_id for block in results] == ["tool_fetch_s2", "toolu_a"]


def test_results_flush_before_next_assistant_turn() -> None:
    stitches = [
        _llm_call(
            "s1",
            [{"type": "tool_use", "id": "toolu_a", "name": "search", "input": {}}],
            messages=[_USER_PROMPT],
        ),
        _tool_call("s2", "search", {"hits": 0}),
        _llm_call(
            "s3",
            [{"type": "tool_use", "id": "toolu_b", "name": "search", "input": {}}],
            messages=[{"role": "user", "content": "ignored"}],
        ),
        _tool_call("s4", "search", {"hits": 1}),
    ]

    messages = reconstruct_messages(stitches)

    assert [message.role for message in messages] == [
        Role.USER,
        Role.ASSISTANT,
        Role.USER,
        Role.ASSISTANT,
        Role.USER,
    ]
    assert messages[2].content[0].tool_use_id == "toolu_a"
    assert messages[4].content[0].tool_use_id == "toolu_b"


def test_child_thread_result_follows_tool_results() -> None:
    stitches = [
        _llm_call(
            "s1",
            [{"type": "tool_use", "id": "toolu_a", "name": "spawn_child_thread", "input": {}}],
            messages=[_USER_PROMPT],
        ),
        _stitch(
            "s2",
            StitchType.THREAD_RESULT,
            child_thread_id="child-1",
            thread_result_summary="completed: found 3 flights",
        ),
        _tool_call("s3", "spawn_child_thread", {"child_thread_id": "child-1"}),
    ]

    content = reconstruct_messages(stitches)[-1].content

    assert isinstance(content[0], ToolResultBlock)
    assert content[1] == TextBlock(
        text="[Child thread child-1 finished] completed: found 3 flights",
    )


def test_tool_result_inside_assistant_response_is_fatal() -> None:
    stitches = [
        _llm_call(
            "s1",
            [{"type": "tool_result", "tool_use_id": "x", "content": "oops"}],
            messages=[_USER_PROMPT],
        ),
    ]

    with pytest.raises(FatalOrchestrationError, match="tool_result"):
        reconstruct_messages(stitches)


def test_unknown_content_type_is_fatal() -> None:
    with pytest.raises(FatalOrchestrationError, match="Unknown content type"):
        parse_content_block({"type": "image_of_a_cat"})
    with pytest.raises(FatalOrchestrationError, match="missing field"):
        parse_content_block({"type": "tool_use", "name": "x"})


def test_parse_response_content_requires_content_list() -> None:
    with pytest.raises(FatalOrchestrationError):
        parse_response_content({"id": "msg_1"})

    blocks = parse_response_content(
        {"content": [{"type": "tool_use", "id": "t", "name": "n", "input": {"a": 1}}]},
    )
    assert blocks == [ToolUseBlock(id="t", name="n", input={"a": 1})]
    assert ThinkingBlock(thinking="x").to_api()["signature"] == ""


def test_outstanding_tool_uses_lists_unrecorded_calls() -> None:
    call = _llm_call(
        "s1",
        [
            {"type": "text", "text": "working"},
            {"type": "tool_use", "id": "toolu_a", "name": "search", "input": {}},
            {"type": "tool_use", "id": "toolu_b", "name": "fetch", "input": {}},
        ],
        messages=[_USER_PROMPT],
    )

    assert [block.id for block in outstanding_tool_uses([call])] == ["toolu_a", "toolu_b"]
    assert [
        block.id for block in outstanding_tool_uses([call, _tool_call("s2", "search", {})])
    ] == ["toolu_b"]
    assert (
        outstanding_tool_uses(
            [call, _tool_call("s2", "search", {}), _tool_call("s3", "fetch", {})],
        )
        == []
    )
    assert outstanding_tool_uses([]) == []
