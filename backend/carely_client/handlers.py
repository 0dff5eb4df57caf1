from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from carely_agent_core.models import ToolCallPart
from carely_tools.interactive import (
    FOLLOW_UP_OPTIONS,
    GET_USER_LOCATION,
    LOCATION_DENIED_ERROR,
    SCHEDULE_FOLLOW_UP,
    follow_up_skip_output,
    location_skip_output,
)

from .calendar import build_calendar_event


@dataclass
class Resolution:
    output: dict[str, Any]
    status: str = "resolved"
    continuation: str | None = None
    continuation_visible: bool = True
    artifacts: dict[str, str] = field(default_factory=dict)


class InteractiveToolHandler(ABC):
    """Client behaviour for one interactive tool.

    ``build_output`` turns a human decision into the value recorded for the call and the
    continuation text sent afterwards. Raising ValueError rejects the decision without
    touching the call's state.
    """

    tool_name = ""
    auto_trigger = False
    completion_delay = 0.0

    @abstractmethod
    def build_output(self, call: ToolCallPart, value: Any) -> Resolution:
        ...

    @abstractmethod
    def skip_output(self, call: ToolCallPart) -> dict[str, Any]:
        ...


def _call_input(call: ToolCallPart) -> dict[str, Any]:
    return call.input if isinstance(call.input, dict) else {}


class FollowUpHandler(InteractiveToolHandler):
    tool_name = SCHEDULE_FOLLOW_UP
    completion_delay = 2.0

    continuations = {
        "calendar": "I'll add this to my calendar myself.",
        "email_now": "Please send me an email with the follow-up details now.",
        "email_scheduled": "Send me a reminder email when it's time for the follow-up.",
    }

    def build_output(self, call: ToolCallPart, value: Any) -> Resolution:
        option = value.get("selectedOption") if isinstance(value, dict) else value
        if option not in FOLLOW_UP_OPTIONS:
            raise ValueError(f"Unknown follow-up option: {option!r}")
        params = _call_input(call)
        output: dict[str, Any] = {
            "selectedOption": option,
            "reason": params.get("reason", ""),
            "recommendedDate": params.get("recommendedDate", ""),
        }
        if params.get("additionalNotes"):
            output["additionalNotes"] = params["additionalNotes"]

        artifacts: dict[str, str] = {}
        if option == "calendar":
            artifacts["follow-up.ics"] = build_calendar_event(
                reason=output["reason"],
                recommended_date=output["recommendedDate"],
                additional_notes=output.get("additionalNotes"),
            )
        return Resolution(
            output=output,
            continuation=self.continuations[option],
            continuation_visible=True,
            artifacts=artifacts,
        )

    def skip_output(self, call: ToolCallPart) -> dict[str, Any]:
        return follow_up_skip_output(_call_input(call))


class LocationHandler(InteractiveToolHandler):
    tool_name = GET_USER_LOCATION
    auto_trigger = True

    def build_output(self, call: ToolCallPart, value: Any) -> Resolution:
        value = value if isinstance(value, dict) else {}
        if not value.get("granted"):
            return Resolution(
                output={"success": False, "error": str(value.get("error") or LOCATION_DENIED_ERROR)},
                status="denied",
                continuation="I'd prefer not to share my exact location.",
                continuation_visible=False,
            )
        try:
            latitude = float(value["latitude"])
            longitude = float(value["longitude"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError("A granted location needs numeric latitude and longitude.") from exc
        output: dict[str, Any] = {"success": True, "latitude": latitude, "longitude": longitude}
        city = str(value.get("city") or "").strip()
        if city:
            output["city"] = city
        return Resolution(
            output=output,
            continuation=f"I'm located in {city}." if city else "Here's my location.",
            continuation_visible=False,
        )

    def skip_output(self, call: ToolCallPart) -> dict[str, Any]:
        return location_skip_output(_call_input(call))


def default_handlers() -> dict[str, InteractiveToolHandler]:
    handlers: list[InteractiveToolHandler] = [FollowUpHandler(), LocationHandler()]
    return {handler.tool_name: handler for handler in handlers}
