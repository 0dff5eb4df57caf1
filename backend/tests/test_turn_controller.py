from __future__ import annotations

import pytest
from pydantic import BaseModel

from carely_agent_core import (
    AgentExecutor,
    ExecutionContext,
    HookRunner,
    ModelInvocationFailed,
    ToolCallPart,
    ToolDefinition,
    ToolRegistry,
    ToolResultPart,
    Turn,
    TurnController,
)
from carely_agent_core.provider import to_model_messages
from conftest import ScriptedProvider, say, tool_call


class LookupInput(BaseModel):
    query: str


class ChoiceInput(BaseModel):
    reason: str


def _registry(calls: list[str]) -> ToolRegistry:
    def lookup(ctx, payload):
        calls.append(payload["query"])
        if payload["query"] == "boom":
            raise RuntimeError("lookup backend unavailable")
        return {"status": "succeeded", "data": {"answer": payload["query"].upper()}, "errors": []}

    registry = ToolRegistry()
    registry.register(ToolDefinition("lookup", "Look something up.", LookupInput, handler=lookup))
    registry.register(
        ToolDefinition(
            "choose",
            "Ask the human to choose.",
            ChoiceInput,
            mode="interactive",
            skip_output=lambda params: {"selectedOption": "skipped", "skippedByUser": True},
        )
    )
    return registry


def _run(provider: ScriptedProvider, *, budget: int = 5, transcript: list[Turn] | None = None, calls=None):
    registry = _registry(calls if calls is not None else [])
    controller = TurnController(
        registry=registry,
        executor=AgentExecutor(registry=registry, hooks=HookRunner()),
        provider=provider,
        step_budget=budget,
    )
    run = controller.start(
        ctx=ExecutionContext(user_id="alice", conversation_id="conv-1", request_id="req-1"),
        system_prompt="You are a test assistant.",
        transcript=transcript or [Turn.human("hello")],
    )
    events = list(run)
    return run, events


def test_text_only_step_completes_after_one_model_call():
    provider = ScriptedProvider([say("Hi there.")])

    run, events = _run(provider)

    assert run.finish_reason == "completed"
    assert run.model_calls == 1
    assert run.turn.text == "Hi there."
    assert [event.event for event in events] == ["token"]


def test_autonomous_results_loop_back_into_the_model():
    calls: list[str] = []
    provider = ScriptedProvider(
        [
            [*say("Checking. "), tool_call("lookup", {"query": "flu"}, "call-a")],
            say("It is FLU."),
        ]
    )

    run, events = _run(provider, calls=calls)

    assert run.finish_reason == "completed"
    assert run.model_calls == 2
    assert calls == ["flu"]
    assert [event.event for event in events] == ["token", "tool_call", "tool_result", "token"]
    call = run.turn.tool_calls[0]
    assert call.state == "resolved"
    assert call.output == {"answer": "FLU"}
    second_messages = provider.calls[1]["messages"]
    assert second_messages[-1] == {"role": "tool", "tool_call_id": "call-a", "content": '{"answer": "FLU"}'}


@pytest.mark.parametrize("budget", [1, 2, 4])
def test_step_budget_bounds_model_invocations(budget):
    calls: list[str] = []
    provider = ScriptedProvider([[tool_call("lookup", {"query": f"q{i}"})] for i in range(10)])

    run, _ = _run(provider, budget=budget, calls=calls)

    assert run.finish_reason == "step_budget_exhausted"
    assert len(provider.calls) == budget
    assert run.model_calls == budget
    assert len(calls) == budget


def test_interactive_call_stops_the_loop_but_siblings_still_execute():
    calls: list[str] = []
    provider = ScriptedProvider(
        [[tool_call("lookup", {"query": "clinic"}, "call-a"), tool_call("choose", {"reason": "follow up"}, "call-b")]]
    )

    run, events = _run(provider, calls=calls)

    assert run.finish_reason == "awaiting_input"
    assert run.model_calls == 1
    assert calls == ["clinic"]
    pending = [call for call in run.turn.tool_calls if call.state == "requested"]
    assert [call.tool_call_id for call in pending] == ["call-b"]
    assert pending[0].mode == "interactive"
    assert [event.data["tool_call_id"] for event in events if event.event == "tool_result"] == ["call-a"]


def test_tool_failure_becomes_error_result_and_turn_continues():
    provider = ScriptedProvider([[tool_call("lookup", {"query": "boom"}, "call-a")], say("Sorry, that failed.")])

    run, _ = _run(provider)

    assert run.finish_reason == "completed"
    result = run.turn.tool_results[0]
    assert result.is_error
    assert result.output == {"error": {"code": "tool_execution_failed", "message": "lookup backend unavailable"}}
    assert run.turn.text.endswith("Sorry, that failed.")


def test_invalid_interactive_input_is_answered_with_error_instead_of_surfaced():
    provider = ScriptedProvider([[tool_call("choose", {"wrong": 1}, "call-a")], say("Let me try again.")])

    run, _ = _run(provider)

    assert run.finish_reason == "completed"
    call = run.turn.tool_calls[0]
    assert call.state == "resolved"
    assert call.is_error
    assert call.output["error"]["code"] == "tool_input_invalid"


def test_unknown_tool_is_reported_to_the_model():
    provider = ScriptedProvider([[tool_call("teleport", {}, "call-a")], say("I can't do that.")])

    run, _ = _run(provider)

    assert run.turn.tool_results[0].output["error"]["code"] == "unknown_tool"


def test_reused_or_missing_call_ids_are_replaced():
    earlier = Turn.assistant()
    earlier.parts.append(ToolCallPart(tool_call_id="call-a", tool_name="lookup", input={"query": "x"}, state="resolved"))
    provider = ScriptedProvider(
        [[tool_call("lookup", {"query": "one"}, "call-a"), tool_call("lookup", {"query": "two"}, "")], say("Done.")]
    )

    run, _ = _run(provider, transcript=[Turn.human("first"), earlier, Turn.human("again")])

    ids = [call.tool_call_id for call in run.turn.tool_calls]
    assert "call-a" not in ids
    assert len(set(ids)) == 2
    assert all(ids)


def test_model_failure_propagates_without_finish_reason():
    provider = ScriptedProvider([ModelInvocationFailed("upstream timeout")])

    registry = _registry([])
    controller = TurnController(
        registry=registry,
        executor=AgentExecutor(registry=registry, hooks=HookRunner()),
        provider=provider,
    )
    run = controller.start(
        ctx=ExecutionContext(user_id="alice", conversation_id="conv-1", request_id="req-1"),
        system_prompt="",
        transcript=[Turn.human("hello")],
    )
    with pytest.raises(ModelInvocationFailed):
        list(run)
    assert run.finish_reason is None


def test_model_messages_place_tool_results_after_their_calls():
    assistant = Turn.assistant()
    assistant.parts.extend(
        [
            ToolCallPart(tool_call_id="call-a", tool_name="lookup", input={"query": "x"}),
            ToolResultPart(tool_call_id="call-a", tool_name="lookup", output={"answer": "X"}),
            ToolCallPart(tool_call_id="call-b", tool_name="choose", input={"reason": "r"}, mode="interactive"),
        ]
    )
    resolution = Turn.resolution([ToolResultPart(tool_call_id="call-b", tool_name="choose", output={"ok": True})])
    continuation = Turn.human("Here's my location.", visible=False)

    messages = to_model_messages([Turn.human("hi"), assistant, resolution, continuation])

    assert [message["role"] for message in messages] == ["user", "assistant", "tool", "assistant", "tool", "user"]
    assert messages[1]["tool_calls"][0]["id"] == "call-a"
    assert messages[3]["tool_calls"][0]["id"] == "call-b"
    assert messages[-1]["content"] == "Here's my location."
