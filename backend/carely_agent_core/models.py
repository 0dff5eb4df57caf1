from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union


TURN_ROLES = {"human", "assistant"}
TOOL_MODES = {"autonomous", "interactive"}
TOOL_CALL_STATES = {"requested", "resolved"}
FINISH_REASONS = {"completed", "awaiting_input", "step_budget_exhausted"}


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class TextPart:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class FilePart:
    url: str
    media_type: str = "application/octet-stream"
    filename: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": "file", "url": self.url, "media_type": self.media_type, "filename": self.filename}


@dataclass
class ToolCallPart:
    tool_call_id: str
    tool_name: str
    input: Any
    mode: str = "autonomous"
    state: str = "requested"
    output: Any = None
    is_error: bool = False

    @property
    def resolved(self) -> bool:
        return self.state == "resolved"

    def resolve(self, output: Any, *, is_error: bool = False) -> None:
        if self.resolved:
            raise ValueError(f"Tool call already resolved: {self.tool_call_id}")
        self.state = "resolved"
        self.output = output
        self.is_error = is_error

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "tool_call",
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "input": self.input,
            "mode": self.mode,
            "state": self.state,
            "output": self.output,
            "is_error": self.is_error,
        }


@dataclass
class ToolResultPart:
    tool_call_id: str
    tool_name: str
    output: Any
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "tool_result",
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "output": self.output,
            "is_error": self.is_error,
        }


Part = Union[TextPart, FilePart, ToolCallPart, ToolResultPart]


def part_from_dict(raw: dict[str, Any]) -> Part:
    kind = raw.get("type")
    if kind == "text":
        return TextPart(text=str(raw.get("text") or ""))
    if kind == "file":
        return FilePart(
            url=str(raw.get("url") or ""),
            media_type=str(raw.get("media_type") or "application/octet-stream"),
            filename=raw.get("filename"),
        )
    if kind == "tool_call":
        return ToolCallPart(
            tool_call_id=str(raw["tool_call_id"]),
            tool_name=str(raw["tool_name"]),
            input=raw.get("input"),
            mode=str(raw.get("mode") or "autonomous"),
            state=str(raw.get("state") or "requested"),
            output=raw.get("output"),
            is_error=bool(raw.get("is_error", False)),
        )
    if kind == "tool_result":
        return ToolResultPart(
            tool_call_id=str(raw["tool_call_id"]),
            tool_name=str(raw["tool_name"]),
            output=raw.get("output"),
            is_error=bool(raw.get("is_error", False)),
        )
    raise ValueError(f"Unknown part type: {kind!r}")


@dataclass
class Turn:
    id: str
    role: str
    parts: list[Part] = field(default_factory=list)
    visible: bool = True
    created_at: str = field(default_factory=now_iso)

    @classmethod
    def human(
        cls,
        text: str = "",
        *,
        attachments: list[FilePart] | None = None,
        visible: bool = True,
        turn_id: str | None = None,
    ) -> "Turn":
        parts: list[Part] = []
        if text:
            parts.append(TextPart(text))
        parts.extend(attachments or [])
        return cls(id=turn_id or new_id("turn"), role="human", parts=parts, visible=visible)

    @classmethod
    def assistant(cls, turn_id: str | None = None) -> "Turn":
        return cls(id=turn_id or new_id("turn"), role="assistant")

    @classmethod
    def resolution(cls, results: list[ToolResultPart], turn_id: str | None = None) -> "Turn":
        """Hidden human turn carrying tool results and nothing else."""
        return cls(id=turn_id or new_id("turn"), role="human", parts=list(results), visible=False)

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [part for part in self.parts if isinstance(part, ToolCallPart)]

    @property
    def tool_results(self) -> list[ToolResultPart]:
        return [part for part in self.parts if isinstance(part, ToolResultPart)]

    @property
    def is_resolution_only(self) -> bool:
        return bool(self.parts) and all(isinstance(part, ToolResultPart) for part in self.parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "created_at": self.created_at,
            "visible": self.visible,
            "parts": [part.to_dict() for part in self.parts],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Turn":
        role = str(raw.get("role") or "")
        if role not in TURN_ROLES:
            raise ValueError(f"Unknown turn role: {role!r}")
        return cls(
            id=str(raw["id"]),
            role=role,
            parts=[part_from_dict(part) for part in raw.get("parts") or []],
            visible=bool(raw.get("visible", True)),
            created_at=str(raw.get("created_at") or now_iso()),
        )


@dataclass
class Conversation:
    id: str
    principal_id: str
    label: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class ExecutionContext:
    user_id: str
    conversation_id: str
    request_id: str
    tool_call_id: str = ""
    patient_name: str = ""
    patient_email: str = ""


@dataclass
class ToolExecutionResult:
    status: str
    data: dict[str, Any] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_error(self) -> bool:
        return self.status != "succeeded"

    def as_tool_output(self) -> dict[str, Any]:
        if not self.is_error:
            return self.data
        error = self.errors[0] if self.errors else {"code": "tool_execution_failed", "message": "Tool failed."}
        return {"error": error}

    def as_envelope(self) -> dict[str, Any]:
        return {"status": self.status, "data": self.data, "errors": self.errors}


@dataclass
class StepBudget:
    limit: int
    used: int = 0

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("Step budget must allow at least one model call.")

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def exhausted(self) -> bool:
        return self.remaining == 0

    def consume(self) -> bool:
        if self.exhausted:
            return False
        self.used += 1
        return True
