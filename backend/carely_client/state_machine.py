from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from carely_agent_core.models import ToolCallPart, Turn
from observability.logging import get_logger

from .handlers import InteractiveToolHandler, Resolution

logger = get_logger(__name__)

LOCAL_STATES = ("idle", "awaiting-input", "resolving", "resolved", "denied", "skipped")
_OPEN_STATES = {"idle", "awaiting-input"}

RecordResolution = Callable[[ToolCallPart, dict[str, Any]], Awaitable["RecordedOutput"]]
OnRecorded = Callable[["PendingResolution", Resolution], None]


def settled_status(output: Any) -> str:
    if isinstance(output, dict):
        if output.get("skippedByUser"):
            return "skipped"
        if output.get("success") is False:
            return "denied"
    return "resolved"


@dataclass
class RecordedOutput:
    output: Any
    replayed: bool = False


@dataclass
class PendingResolution:
    tool_call_id: str
    tool_name: str
    call: ToolCallPart
    local_status: str = "idle"
    payload: Any = None


class InteractiveToolStateMachine:
    """Per-call resolution state for interactive tools, keyed by tool call id.

    Records live only while a call is open or being resolved and are dropped once it
    settles. The guard set is checked and filled before the first await of a resolution,
    so re-entrant or repeated events for the same call are rejected no matter how they
    interleave.
    """

    def __init__(
        self,
        handlers: dict[str, InteractiveToolHandler],
        *,
        record: RecordResolution,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._handlers = handlers
        self._record = record
        self._sleep = sleep
        self._pending: dict[str, PendingResolution] = {}
        self._guard: set[str] = set()
        self._settled: dict[str, str] = {}

    def observe(self, turns: list[Turn]) -> list[str]:
        """Sync records with a transcript; returns calls that moved to awaiting-input on their own."""
        resolved_outputs: dict[str, Any] = {}
        for turn in turns:
            for result in turn.tool_results:
                resolved_outputs[result.tool_call_id] = result.output
            for call in turn.tool_calls:
                if call.resolved:
                    resolved_outputs[call.tool_call_id] = call.output

        triggered: list[str] = []
        for turn in turns:
            for call in turn.tool_calls:
                if call.mode != "interactive":
                    continue
                call_id = call.tool_call_id
                if call_id in resolved_outputs:
                    in_flight = self._pending.get(call_id)
                    if in_flight is not None and in_flight.local_status == "resolving":
                        continue
                    self._pending.pop(call_id, None)
                    self._guard.add(call_id)
                    self._settled.setdefault(call_id, settled_status(resolved_outputs[call_id]))
                    continue
                if call_id in self._pending or call_id in self._settled:
                    continue
                handler = self._handlers.get(call.tool_name)
                if handler is None:
                    logger.warning("interactive_handler_missing", tool_name=call.tool_name, tool_call_id=call_id)
                    continue
                record = PendingResolution(tool_call_id=call_id, tool_name=call.tool_name, call=call)
                self._pending[call_id] = record
                if handler.auto_trigger:
                    record.local_status = "awaiting-input"
                    triggered.append(call_id)
        return triggered

    def status(self, tool_call_id: str) -> str | None:
        record = self._pending.get(tool_call_id)
        if record is not None:
            return record.local_status
        return self._settled.get(tool_call_id)

    def record_for(self, tool_call_id: str) -> PendingResolution | None:
        return self._pending.get(tool_call_id)

    def pending_ids(self) -> list[str]:
        return [
            call_id
            for call_id, record in self._pending.items()
            if record.local_status in _OPEN_STATES and call_id not in self._guard
        ]

    def trigger(self, tool_call_id: str) -> bool:
        record = self._pending.get(tool_call_id)
        if record is None or record.local_status != "idle":
            return False
        record.local_status = "awaiting-input"
        return True

    async def resolve(
        self,
        tool_call_id: str,
        value: Any,
        *,
        on_recorded: OnRecorded | None = None,
    ) -> Resolution | None:
        """Resolve a call from a human decision.

        Returns None for a duplicate attempt, including one that lost to a resolution
        recorded elsewhere: the call then settles on the recorded output and no continuation
        is sent. If the durable record fails the call goes back to awaiting-input and the
        error is raised so the decision can be retried.
        """
        if tool_call_id in self._guard:
            logger.info("duplicate_resolution_attempt", tool_call_id=tool_call_id)
            return None
        record = self._pending.get(tool_call_id)
        if record is None:
            raise KeyError(f"No open interactive tool call: {tool_call_id}")
        handler = self._handlers[record.tool_name]
        resolution = handler.build_output(record.call, value)

        self._guard.add(tool_call_id)
        record.local_status = "resolving"
        record.payload = resolution.output
        recorded = await self._commit(record, resolution.output)
        if recorded.replayed:
            logger.info("tool_resolution_replayed", tool_call_id=tool_call_id)
            self._settle(tool_call_id, settled_status(recorded.output))
            return None

        if on_recorded is not None:
            on_recorded(record, resolution)
        if handler.completion_delay > 0:
            await self._sleep(handler.completion_delay)
        self._settle(tool_call_id, resolution.status)
        return resolution

    async def skip(self, tool_call_id: str) -> dict[str, Any] | None:
        """Close an open call with its tool's skipped value."""
        if tool_call_id in self._guard:
            return None
        record = self._pending.get(tool_call_id)
        if record is None:
            return None
        output = self._handlers[record.tool_name].skip_output(record.call)

        self._guard.add(tool_call_id)
        record.local_status = "resolving"
        record.payload = output
        recorded = await self._commit(record, output)
        self._settle(tool_call_id, settled_status(recorded.output))
        return output

    async def _commit(self, record: PendingResolution, output: dict[str, Any]) -> RecordedOutput:
        try:
            return await self._record(record.call, output)
        except Exception as exc:
            record.local_status = "awaiting-input"
            record.payload = None
            self._guard.discard(record.tool_call_id)
            logger.warning("tool_resolution_record_failed", tool_call_id=record.tool_call_id, error=str(exc))
            raise

    def _settle(self, tool_call_id: str, status: str) -> None:
        self._pending.pop(tool_call_id, None)
        self._settled[tool_call_id] = status
