from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from carely_agent_core.errors import CarelyError, TransportError
from carely_agent_core.models import FilePart, ToolCallPart, Turn
from observability.logging import get_logger

from .handlers import InteractiveToolHandler, Resolution, default_handlers
from .state_machine import InteractiveToolStateMachine, PendingResolution, RecordedOutput
from .transport import ChatTransport
from .turn_queue import TurnQueue

logger = get_logger(__name__)

SESSION_STATES = ("ready", "submitted", "streaming", "error")


class ChatSession:
    """Client engine for one conversation.

    ``submit_human_message`` and ``resolve_interactive_tool`` are the entry points a UI
    calls. Local turns are a cache of the server transcript: they are rebuilt by ``load``
    and never edited except to drop an optimistic turn whose dispatch failed.
    """

    def __init__(
        self,
        transport: ChatTransport,
        conversation_id: str,
        *,
        handlers: dict[str, InteractiveToolHandler] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.conversation_id = conversation_id
        self.turns: list[Turn] = []
        self.label: str | None = None
        self.streaming_text = ""
        self.last_error: CarelyError | None = None
        self.artifacts: dict[str, dict[str, str]] = {}
        self._status = "ready"
        self.machine = InteractiveToolStateMachine(
            handlers or default_handlers(),
            record=self._record_resolution,
            sleep=sleep,
        )
        self.queue = TurnQueue(self._dispatch)

    @property
    def status(self) -> str:
        return self._status

    async def load(self) -> list[Turn]:
        snapshot = await self.transport.read_transcript(self.conversation_id)
        self.turns = snapshot["turns"]
        self.label = snapshot.get("label")
        self.machine.observe(self.turns)
        return self.turns

    async def submit_human_message(self, text: str, attachments: list[FilePart] | None = None) -> Turn:
        if not text.strip() and not attachments:
            raise ValueError("A message needs text or an attachment.")
        turn = Turn.human(text.strip(), attachments=attachments)
        return await self.queue.enqueue(turn)

    async def resolve_interactive_tool(self, tool_call_id: str, value: Any) -> Resolution | None:
        return await self.machine.resolve(tool_call_id, value, on_recorded=self._continue_after)

    def trigger(self, tool_call_id: str) -> bool:
        return self.machine.trigger(tool_call_id)

    def tool_status(self, tool_call_id: str) -> str | None:
        return self.machine.status(tool_call_id)

    async def wait_idle(self) -> None:
        await self.queue.join()

    async def aclose(self) -> None:
        await self.queue.aclose()

    def visible_turns(self) -> list[Turn]:
        return [turn for turn in self.turns if turn.visible]

    def render(self) -> list[dict[str, Any]]:
        rendered: list[dict[str, Any]] = []
        for turn in self.visible_turns():
            rendered.append(
                {
                    "id": turn.id,
                    "role": turn.role,
                    "text": turn.text,
                    "tool_calls": [
                        {
                            "tool_call_id": call.tool_call_id,
                            "tool_name": call.tool_name,
                            "status": self.machine.status(call.tool_call_id) or call.state,
                        }
                        for call in turn.tool_calls
                    ],
                }
            )
        return rendered

    def _continue_after(self, record: PendingResolution, resolution: Resolution) -> None:
        if resolution.artifacts:
            self.artifacts[record.tool_call_id] = resolution.artifacts
        if not resolution.continuation:
            return
        turn = Turn.human(resolution.continuation, visible=resolution.continuation_visible)
        future = self.queue.enqueue(turn)
        future.add_done_callback(self._log_continuation_failure)

    @staticmethod
    def _log_continuation_failure(future: asyncio.Future[Any]) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("continuation_turn_failed", error=str(exc))

    async def _record_resolution(self, call: ToolCallPart, output: dict[str, Any]) -> RecordedOutput:
        result = await self.transport.record_tool_result(self.conversation_id, call.tool_call_id, output)
        if result.get("turn"):
            self.turns.append(Turn.from_dict(result["turn"]))
        else:
            logger.info("tool_result_replayed", tool_call_id=call.tool_call_id)
        return RecordedOutput(result.get("output"), replayed=result.get("status") == "replayed")

    async def _skip_pending(self) -> None:
        for tool_call_id in self.machine.pending_ids():
            await self.machine.skip(tool_call_id)

    async def _dispatch(self, turn: Turn) -> Turn:
        if turn.visible:
            await self._skip_pending()

        self.turns.append(turn)
        self._status = "submitted"
        self.streaming_text = ""
        self.last_error = None
        final: dict[str, Any] | None = None
        try:
            async for event in self.transport.stream_turn(self.conversation_id, turn):
                self._status = "streaming"
                if event.event == "token":
                    self.streaming_text += str(event.data.get("delta") or "")
                elif event.event == "message":
                    final = event.data
            if final is None:
                raise TransportError("Stream ended before the turn was finalized.")
        except CarelyError as exc:
            self.turns = [existing for existing in self.turns if existing.id != turn.id]
            self._status = "error"
            self.last_error = exc
            raise

        if final.get("skipped_tool_call_ids"):
            await self.load()
        else:
            self.turns.append(Turn.from_dict(final["turn"]))
            self.machine.observe(self.turns)
        if final.get("label"):
            self.label = final["label"]
        self.streaming_text = ""
        self._status = "ready"
        return self.turns[-1]
