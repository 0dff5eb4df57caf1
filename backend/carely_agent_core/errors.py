from __future__ import annotations

from typing import Any


class CarelyError(Exception):
    code = "carely_error"
    retryable = False

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def as_error(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ToolInputInvalid(CarelyError):
    code = "tool_input_invalid"


class ToolExecutionFailed(CarelyError):
    code = "tool_execution_failed"


class DuplicateResolutionAttempt(CarelyError):
    """A tool call was resolved a second time.

    ``existing_output`` carries the output recorded by the first resolution.
    """

    code = "duplicate_resolution"

    def __init__(self, tool_call_id: str, existing_output: Any = None) -> None:
        super().__init__(f"Tool call already resolved: {tool_call_id}")
        self.tool_call_id = tool_call_id
        self.existing_output = existing_output


class PersistenceConflict(CarelyError):
    code = "persistence_conflict"


class Forbidden(PersistenceConflict):
    code = "forbidden"


class NotFound(PersistenceConflict):
    code = "not_found"


class TurnInFlight(PersistenceConflict):
    """Another Turn Controller run holds the conversation."""

    code = "turn_in_flight"
    retryable = True


class UnresolvedToolCalls(CarelyError):
    code = "unresolved_tool_calls"

    def __init__(self, tool_call_ids: list[str]) -> None:
        super().__init__(f"Interactive tool calls still pending: {', '.join(tool_call_ids)}")
        self.tool_call_ids = tool_call_ids


class ModelInvocationFailed(CarelyError):
    code = "model_invocation_failed"
    retryable = True


class TransportError(CarelyError):
    code = "transport_error"
    retryable = True
