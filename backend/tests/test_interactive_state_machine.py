from __future__ import annotations

import asyncio

import pytest

from carely_agent_core import ToolCallPart, ToolResultPart, Turn
from carely_client import InteractiveToolHandler, InteractiveToolStateMachine, RecordedOutput, default_handlers


async def _no_sleep(_seconds: float) -> None:
    return None


class RecordingBackend:
    """Records resolutions the way the server does: first output wins."""

    def __init__(self, fail_times: int = 0) -> None:
        self.fail_times = fail_times
        self.calls: list[tuple[str, dict]] = []
        self.recorded: dict[str, dict] = {}

    async def record(self, call: ToolCallPart, output: dict) -> RecordedOutput:
        self.calls.append((call.tool_call_id, output))
        await asyncio.sleep(0)
        if self.fail_times:
            self.fail_times -= 1
            raise ConnectionError("backend unreachable")
        replayed = call.tool_call_id in self.recorded
        return RecordedOutput(self.recorded.setdefault(call.tool_call_id, output), replayed=replayed)


def _assistant(*calls: ToolCallPart) -> Turn:
    turn = Turn.assistant()
    turn.parts.extend(calls)
    return turn


def _follow_up_call(call_id: str = "call-follow") -> ToolCallPart:
    return ToolCallPart(
        tool_call_id=call_id,
        tool_name="scheduleFollowUp",
        input={"reason": "recheck rash", "recommendedDate": "next week"},
        mode="interactive",
    )


def _location_call(call_id: str = "call-loc") -> ToolCallPart:
    return ToolCallPart(
        tool_call_id=call_id,
        tool_name="getUserLocation",
        input={"reason": "find urgent care"},
        mode="interactive",
    )


def _machine(backend: RecordingBackend) -> InteractiveToolStateMachine:
    return InteractiveToolStateMachine(default_handlers(), record=backend.record, sleep=_no_sleep)


def test_observe_creates_idle_records_and_auto_triggers_location():
    machine = _machine(RecordingBackend())

    triggered = machine.observe([Turn.human("hi"), _assistant(_follow_up_call(), _location_call())])

    assert triggered == ["call-loc"]
    assert machine.status("call-follow") == "idle"
    assert machine.status("call-loc") == "awaiting-input"
    assert machine.trigger("call-follow") is True
    assert machine.trigger("call-follow") is False
    assert machine.status("call-follow") == "awaiting-input"


def test_observe_ignores_calls_resolved_in_the_transcript():
    machine = _machine(RecordingBackend())
    resolution = Turn.resolution(
        [ToolResultPart(tool_call_id="call-follow", tool_name="scheduleFollowUp", output={"skippedByUser": True})]
    )

    machine.observe([_assistant(_follow_up_call()), resolution])

    assert machine.pending_ids() == []
    assert machine.status("call-follow") == "skipped"


@pytest.mark.asyncio
async def test_resolve_settles_after_durable_record():
    backend = RecordingBackend()
    machine = _machine(backend)
    machine.observe([_assistant(_follow_up_call())])
    seen: list[str] = []

    resolution = await machine.resolve(
        "call-follow",
        "email_scheduled",
        on_recorded=lambda record, _resolution: seen.append(machine.status(record.tool_call_id)),
    )

    assert resolution.output["selectedOption"] == "email_scheduled"
    assert resolution.continuation == "Send me a reminder email when it's time for the follow-up."
    assert seen == ["resolving"]
    assert machine.status("call-follow") == "resolved"
    assert backend.calls == [("call-follow", resolution.output)]


@pytest.mark.asyncio
async def test_concurrent_resolutions_record_once():
    backend = RecordingBackend()
    machine = _machine(backend)
    machine.observe([_assistant(_follow_up_call())])

    results = await asyncio.gather(
        machine.resolve("call-follow", "calendar"),
        machine.resolve("call-follow", "email_now"),
        machine.resolve("call-follow", {"selectedOption": "calendar"}),
    )

    assert [result is not None for result in results] == [True, False, False]
    assert len(backend.calls) == 1
    assert "follow-up.ics" in results[0].artifacts


@pytest.mark.asyncio
async def test_observe_during_resolution_keeps_in_flight_record():
    backend = RecordingBackend()
    machine = _machine(backend)
    call = _follow_up_call()
    machine.observe([_assistant(call)])

    async def record_and_observe(part, output):
        resolved = Turn.resolution([ToolResultPart(tool_call_id=part.tool_call_id, tool_name=part.tool_name, output=output)])
        machine.observe([_assistant(call), resolved])
        return RecordedOutput(output)

    machine._record = record_and_observe
    await machine.resolve("call-follow", "calendar")

    assert machine.status("call-follow") == "resolved"


@pytest.mark.asyncio
async def test_failed_record_returns_call_to_awaiting_input():
    backend = RecordingBackend(fail_times=1)
    machine = _machine(backend)
    machine.observe([_assistant(_location_call())])

    with pytest.raises(ConnectionError):
        await machine.resolve("call-loc", {"granted": True, "latitude": 40.44, "longitude": -79.99})

    assert machine.status("call-loc") == "awaiting-input"
    assert machine.pending_ids() == ["call-loc"]
    retried = await machine.resolve("call-loc", {"granted": True, "latitude": 40.44, "longitude": -79.99})
    assert retried.output == {"success": True, "latitude": 40.44, "longitude": -79.99}
    assert machine.status("call-loc") == "resolved"


@pytest.mark.asyncio
async def test_invalid_decision_leaves_call_open():
    machine = _machine(RecordingBackend())
    machine.observe([_assistant(_follow_up_call(), _location_call())])

    with pytest.raises(ValueError):
        await machine.resolve("call-follow", "fax_me")
    with pytest.raises(ValueError):
        await machine.resolve("call-loc", {"granted": True, "latitude": "north"})

    assert machine.pending_ids() == ["call-follow", "call-loc"]


@pytest.mark.asyncio
async def test_denied_location_settles_as_denied():
    machine = _machine(RecordingBackend())
    machine.observe([_assistant(_location_call())])

    resolution = await machine.resolve("call-loc", {"granted": False})

    assert resolution.output == {"success": False, "error": "User denied location access"}
    assert resolution.continuation_visible is False
    assert machine.status("call-loc") == "denied"


@pytest.mark.asyncio
async def test_replayed_record_reports_first_outcome():
    backend = RecordingBackend()
    backend.recorded["call-follow"] = {"selectedOption": "skipped", "skippedByUser": True}
    machine = _machine(backend)
    machine.observe([_assistant(_follow_up_call())])

    recorded_elsewhere: list[str] = []

    result = await machine.resolve(
        "call-follow",
        "calendar",
        on_recorded=lambda record, _resolution: recorded_elsewhere.append(record.tool_call_id),
    )

    assert result is None
    assert recorded_elsewhere == []
    assert machine.status("call-follow") == "skipped"
    assert machine.pending_ids() == []


@pytest.mark.asyncio
async def test_losing_resolution_with_same_choice_sends_no_continuation():
    backend = RecordingBackend()
    backend.recorded["call-follow"] = {
        "selectedOption": "calendar",
        "reason": "recheck rash",
        "recommendedDate": "next week",
    }
    machine = _machine(backend)
    machine.observe([_assistant(_follow_up_call())])
    continued: list[str] = []

    result = await machine.resolve(
        "call-follow",
        "calendar",
        on_recorded=lambda record, resolution: continued.append(resolution.continuation),
    )

    assert result is None
    assert continued == []
    assert machine.status("call-follow") == "resolved"
    assert await machine.resolve("call-follow", "email_now") is None


@pytest.mark.asyncio
async def test_skip_uses_each_tools_skip_value():
    backend = RecordingBackend()
    machine = _machine(backend)
    machine.observe([_assistant(_follow_up_call(), _location_call())])

    follow_up = await machine.skip("call-follow")
    location = await machine.skip("call-loc")

    assert follow_up["selectedOption"] == "skipped"
    assert follow_up["recommendedDate"] == "next week"
    assert location == {
        "success": False,
        "error": "User continued conversation without sharing location",
        "skippedByUser": True,
    }
    assert machine.status("call-follow") == "skipped"
    assert machine.status("call-loc") == "skipped"
    assert await machine.skip("call-loc") is None


@pytest.mark.asyncio
async def test_unknown_call_cannot_be_resolved():
    machine = _machine(RecordingBackend())

    with pytest.raises(KeyError):
        await machine.resolve("call-missing", "calendar")


def test_handler_without_skip_value_cannot_be_created():
    class PromptOnlyHandler(InteractiveToolHandler):
        tool_name = "confirmPharmacy"

        def build_output(self, call, value):
            raise ValueError("unused")

    with pytest.raises(TypeError):
        PromptOnlyHandler()
