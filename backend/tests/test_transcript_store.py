from __future__ import annotations

import threading

import pytest

from carely_agent_core import (
    DuplicateResolutionAttempt,
    Forbidden,
    NotFound,
    PersistenceConflict,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    Turn,
    TurnInFlight,
    UnresolvedToolCalls,
)
from memory import SQLiteMemoryDB, TranscriptStore


@pytest.fixture
def store(tmp_path) -> TranscriptStore:
    transcripts = TranscriptStore(SQLiteMemoryDB(str(tmp_path / "transcripts.sqlite")))
    transcripts.create_conversation(principal_id="alice", conversation_id="conv-1")
    return transcripts


def _assistant_with_interactive_call(call_id: str = "call-follow") -> Turn:
    turn = Turn.assistant()
    turn.parts.append(TextPart("Would you like a follow-up?"))
    turn.parts.append(
        ToolCallPart(
            tool_call_id=call_id,
            tool_name="scheduleFollowUp",
            input={"reason": "check cough", "recommendedDate": "in 3 days"},
            mode="interactive",
        )
    )
    return turn


def _resolution(call_id: str, output: dict) -> Turn:
    return Turn.resolution([ToolResultPart(tool_call_id=call_id, tool_name="scheduleFollowUp", output=output)])


def test_append_and_read_preserve_order_and_hidden_turns(store):
    human = Turn.human("I have a cough")
    hidden = Turn.human("Here's my location.", visible=False)
    store.append("conv-1", "alice", [human, Turn.assistant(), hidden])

    turns = store.read("conv-1", "alice")

    assert [turn.id for turn in turns] == [human.id, turns[1].id, hidden.id]
    assert turns[2].visible is False
    assert turns[2].text == "Here's my location."


def test_retried_append_is_applied_once(store):
    batch = [Turn.human("hello"), _assistant_with_interactive_call()]

    first = store.append("conv-1", "alice", batch)
    second = store.append("conv-1", "alice", batch)

    assert len(first) == 2
    assert second == []
    assert len(store.read("conv-1", "alice")) == 2


def test_read_hydrates_call_state_from_resolutions(store):
    store.append("conv-1", "alice", [Turn.human("hello"), _assistant_with_interactive_call()])
    store.append("conv-1", "alice", [_resolution("call-follow", {"selectedOption": "email_now"})])

    call = store.read("conv-1", "alice")[1].tool_calls[0]

    assert call.state == "resolved"
    assert call.output == {"selectedOption": "email_now"}


def test_second_resolution_is_rejected_and_rolls_back_batch(store):
    store.append("conv-1", "alice", [Turn.human("hello"), _assistant_with_interactive_call()])
    store.append("conv-1", "alice", [_resolution("call-follow", {"selectedOption": "calendar"})])
    follow_up = Turn.human("another message")

    with pytest.raises(DuplicateResolutionAttempt) as exc_info:
        store.append("conv-1", "alice", [_resolution("call-follow", {"selectedOption": "email_now"}), follow_up])

    assert exc_info.value.existing_output == {"selectedOption": "calendar"}
    assert follow_up.id not in [turn.id for turn in store.read("conv-1", "alice")]


def test_record_tool_result_replays_first_output(store):
    store.append("conv-1", "alice", [Turn.human("hello"), _assistant_with_interactive_call()])

    first = store.record_tool_result(
        conversation_id="conv-1",
        principal_id="alice",
        tool_call_id="call-follow",
        output={"selectedOption": "email_now"},
    )
    second = store.record_tool_result(
        conversation_id="conv-1",
        principal_id="alice",
        tool_call_id="call-follow",
        output={"selectedOption": "calendar"},
    )

    assert first["replayed"] is False
    assert first["turn"].visible is False
    assert second == {"output": {"selectedOption": "email_now"}, "replayed": True, "turn": None}
    assert len(store.read("conv-1", "alice")) == 3


def test_concurrent_resolutions_change_state_once(store):
    store.append("conv-1", "alice", [Turn.human("hello"), _assistant_with_interactive_call()])
    results: list[dict] = []
    barrier = threading.Barrier(4)

    def resolve(option: str) -> None:
        barrier.wait()
        results.append(
            store.record_tool_result(
                conversation_id="conv-1",
                principal_id="alice",
                tool_call_id="call-follow",
                output={"selectedOption": option},
            )
        )

    threads = [
        threading.Thread(target=resolve, args=(option,))
        for option in ("calendar", "email_now", "email_scheduled", "calendar")
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    recorded = [result for result in results if not result["replayed"]]
    assert len(recorded) == 1
    assert {str(result["output"]) for result in results} == {str(recorded[0]["output"])}
    resolution_turns = [turn for turn in store.read("conv-1", "alice") if turn.is_resolution_only]
    assert len(resolution_turns) == 1


def test_visible_human_turn_cannot_leave_interactive_calls_pending(store):
    store.append("conv-1", "alice", [Turn.human("hello"), _assistant_with_interactive_call()])

    with pytest.raises(UnresolvedToolCalls) as exc_info:
        store.append("conv-1", "alice", [Turn.human("never mind")])

    assert exc_info.value.tool_call_ids == ["call-follow"]
    assert [call.tool_call_id for call in store.pending_interactive_calls("conv-1", "alice")] == ["call-follow"]


def test_skip_then_message_in_one_batch_is_accepted(store):
    store.append("conv-1", "alice", [Turn.human("hello"), _assistant_with_interactive_call()])

    store.append(
        "conv-1",
        "alice",
        [_resolution("call-follow", {"selectedOption": "skipped", "skippedByUser": True}), Turn.human("never mind")],
    )

    assert store.pending_interactive_calls("conv-1", "alice") == []


def test_other_principal_is_forbidden(store):
    with pytest.raises(Forbidden):
        store.read("conv-1", "mallory")
    with pytest.raises(Forbidden):
        store.append("conv-1", "mallory", [Turn.human("hi")])
    with pytest.raises(Forbidden):
        store.create_conversation(principal_id="mallory", conversation_id="conv-1")


def test_unknown_conversation_and_call_are_not_found(store):
    with pytest.raises(NotFound):
        store.read("conv-missing", "alice")
    with pytest.raises(NotFound):
        store.record_tool_result(
            conversation_id="conv-1",
            principal_id="alice",
            tool_call_id="call-missing",
            output={},
        )


def test_label_is_only_written_once(store):
    assert store.set_label("conv-1", "Cough") is True
    assert store.set_label("conv-1", "Something else") is False
    assert store.get_conversation("conv-1", "alice").label == "Cough"


def test_turn_claim_admits_one_run_per_conversation(store):
    store.append("conv-1", "alice", [Turn.human("hello"), Turn.assistant()])

    head = store.claim_turn("conv-1", "alice", "req-1")

    assert head == 2
    with pytest.raises(TurnInFlight) as exc_info:
        store.claim_turn("conv-1", "alice", "req-2")
    assert exc_info.value.retryable is True
    assert store.release_turn("conv-1", "req-2") is False
    assert store.release_turn("conv-1", "req-1") is True
    assert store.claim_turn("conv-1", "alice", "req-2") == 2


def test_stale_turn_claim_is_taken_over(store):
    store.claim_turn("conv-1", "alice", "req-crashed", now="2026-03-10T09:00:00Z")

    with pytest.raises(TurnInFlight):
        store.claim_turn("conv-1", "alice", "req-early", now="2026-03-10T09:01:00Z")
    assert store.claim_turn("conv-1", "alice", "req-late", now="2026-03-10T09:10:00Z") == 0
    assert store.release_turn("conv-1", "req-crashed") is False


def test_turn_claim_checks_ownership(store):
    with pytest.raises(Forbidden):
        store.claim_turn("conv-1", "mallory", "req-1")


def test_append_refuses_batch_when_transcript_moved(store):
    head = store.claim_turn("conv-1", "alice", "req-1")
    store.append("conv-1", "alice", [Turn.human("from another tab"), Turn.assistant()])

    with pytest.raises(PersistenceConflict) as exc_info:
        store.append("conv-1", "alice", [Turn.human("stale"), Turn.assistant()], expected_seq=head)

    assert exc_info.value.code == "persistence_conflict"
    assert [turn.text for turn in store.read("conv-1", "alice")] == ["from another tab", ""]
    assert store.append("conv-1", "alice", [Turn.human("fresh")], expected_seq=2)
