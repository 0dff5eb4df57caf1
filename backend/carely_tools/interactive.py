from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

SCHEDULE_FOLLOW_UP = "scheduleFollowUp"
GET_USER_LOCATION = "getUserLocation"

FOLLOW_UP_OPTIONS = ("calendar", "email_now", "email_scheduled")

LOCATION_SKIPPED_ERROR = "User continued conversation without sharing location"
LOCATION_DENIED_ERROR = "User denied location access"


class ScheduleFollowUpInput(BaseModel):
    message: str | None = Field(default=None, description="Short note shown above the follow-up options.")
    reason: str = Field(min_length=1, description="Why the patient should follow up.")
    recommendedDate: str = Field(
        min_length=1,
        description="When to follow up, e.g. 'in 3 days', 'next week' or an ISO date.",
    )
    additionalNotes: str | None = None


class GetUserLocationInput(BaseModel):
    reason: str = Field(min_length=1, description="Why the location is needed, shown to the patient.")


def follow_up_skip_output(call_input: dict[str, Any]) -> dict[str, Any]:
    output: dict[str, Any] = {
        "selectedOption": "skipped",
        "reason": call_input.get("reason", ""),
        "recommendedDate": call_input.get("recommendedDate", ""),
        "skippedByUser": True,
    }
    if call_input.get("additionalNotes"):
        output["additionalNotes"] = call_input["additionalNotes"]
    return output


def location_skip_output(_call_input: dict[str, Any]) -> dict[str, Any]:
    return {"success": False, "error": LOCATION_SKIPPED_ERROR, "skippedByUser": True}
