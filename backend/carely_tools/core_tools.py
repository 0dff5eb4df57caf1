from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from carely_agent_core.models import ExecutionContext
from carely_agent_core.registry import ToolDefinition, ToolRegistry
from memory.service import MemoryService
from memory.time_utils import parse_iso

from .facility_search import FacilitySearch
from .interactive import (
    GET_USER_LOCATION,
    SCHEDULE_FOLLOW_UP,
    GetUserLocationInput,
    ScheduleFollowUpInput,
    follow_up_skip_output,
    location_skip_output,
)
from .mailer import EmailDeliveryFailed, FollowUpMailer, compose_follow_up_email

HotlineType = Literal[
    "general",
    "poison",
    "suicide",
    "domesticViolence",
    "sexualAssault",
    "childAbuse",
    "substanceAbuse",
    "veterans",
    "lgbtqYouth",
    "eatingDisorders",
]

HOTLINES: dict[str, tuple[str, str]] = {
    "general": ("Emergency", "911"),
    "poison": ("Poison Control", "1-800-222-1222"),
    "suicide": ("Crisis Lifeline", "988"),
    "domesticViolence": ("Domestic Violence", "1-800-799-7233"),
    "sexualAssault": ("Sexual Assault (RAINN)", "1-800-656-4673"),
    "childAbuse": ("Child Abuse", "1-800-422-4453"),
    "substanceAbuse": ("Substance Abuse (SAMHSA)", "1-800-662-4357"),
    "veterans": ("Veterans Crisis", "988 (press 1)"),
    "lgbtqYouth": ("Trevor Project", "1-866-488-7386"),
    "eatingDisorders": ("Eating Disorders", "1-800-931-2237"),
}


class DisplayEmergencyHotlinesInput(BaseModel):
    types: list[HotlineType] = Field(
        min_length=1,
        description=(
            "Which emergency hotlines to display: 'general' for 911, 'poison' for Poison Control, "
            "'suicide' for 988 Crisis Lifeline, 'domesticViolence', 'sexualAssault', 'childAbuse', "
            "'substanceAbuse', 'veterans', 'lgbtqYouth' for Trevor Project, 'eatingDisorders'."
        ),
    )


class FindNearbyHealthcareInput(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    searchQuery: str = Field(min_length=1, description="What kind of care to look for, e.g. 'urgent care'.")


class AddToHistoryInput(BaseModel):
    facts: list[str] = Field(min_length=1, description="Short, durable medical facts about the patient.")
    userId: str = Field(min_length=1)


class SendFollowUpEmailNowInput(BaseModel):
    reason: str = Field(min_length=1)
    recommendedDate: str = Field(min_length=1)
    additionalNotes: str | None = None


class ScheduleFollowUpEmailInput(SendFollowUpEmailNowInput):
    scheduledDateTime: str = Field(description="ISO 8601 date-time at which the reminder is sent.")

    @field_validator("scheduledDateTime")
    @classmethod
    def _iso_datetime(cls, value: str) -> str:
        if parse_iso(value) is None:
            raise ValueError("must be an ISO 8601 date-time")
        return value


def _failed(code: str, message: str) -> dict[str, Any]:
    return {"status": "failed", "data": {}, "errors": [{"code": code, "message": message}]}


class CarelyToolset:
    def __init__(self, memory: MemoryService) -> None:
        self.memory = memory
        self.facility_search = FacilitySearch()
        self.mailer = FollowUpMailer(memory.outbox)

    def display_emergency_hotlines(self, ctx: ExecutionContext, payload: dict[str, Any]) -> dict[str, Any]:
        types = list(dict.fromkeys(payload["types"]))
        hotlines = [{"type": kind, "name": HOTLINES[kind][0], "number": HOTLINES[kind][1]} for kind in types]
        return {"status": "succeeded", "data": {"types": types, "hotlines": hotlines}, "errors": []}

    def find_nearby_healthcare(self, ctx: ExecutionContext, payload: dict[str, Any]) -> dict[str, Any]:
        result = self.facility_search.search(
            latitude=float(payload["latitude"]),
            longitude=float(payload["longitude"]),
            search_query=payload["searchQuery"],
        )
        return {"status": "succeeded", "data": result, "errors": []}

    def add_to_history(self, ctx: ExecutionContext, payload: dict[str, Any]) -> dict[str, Any]:
        result = self.memory.patients.add_facts(
            user_id=ctx.user_id,
            facts=payload["facts"],
            source_conversation_id=ctx.conversation_id,
        )
        return {
            "status": "succeeded",
            "data": {
                "success": True,
                "factsAdded": len(result["added"]),
                "duplicatesSkipped": len(result["duplicates"]),
            },
            "errors": [],
        }

    def send_follow_up_email_now(self, ctx: ExecutionContext, payload: dict[str, Any]) -> dict[str, Any]:
        if not ctx.patient_email:
            return _failed("missing_patient_email", "No e-mail address is on file for this patient.")
        subject, body = compose_follow_up_email(
            patient_name=ctx.patient_name,
            reason=payload["reason"],
            recommended_date=payload["recommendedDate"],
            additional_notes=payload.get("additionalNotes"),
            conversation_id=ctx.conversation_id,
        )
        try:
            entry = self.mailer.send_now(
                user_id=ctx.user_id,
                conversation_id=ctx.conversation_id,
                tool_call_id=ctx.tool_call_id,
                recipient=ctx.patient_email,
                subject=subject,
                body_text=body,
            )
        except EmailDeliveryFailed as exc:
            return _failed("email_delivery_failed", str(exc))
        if entry["status"] != "sent":
            return _failed("email_delivery_failed", entry.get("error_message") or "E-mail was not delivered.")
        return {
            "status": "succeeded",
            "data": {"success": True, "sentTo": entry["recipient"], "messageId": entry["provider_ref"]},
            "errors": [],
        }

    def schedule_follow_up_email(self, ctx: ExecutionContext, payload: dict[str, Any]) -> dict[str, Any]:
        if not ctx.patient_email:
            return _failed("missing_patient_email", "No e-mail address is on file for this patient.")
        send_at = parse_iso(payload["scheduledDateTime"])
        subject, body = compose_follow_up_email(
            patient_name=ctx.patient_name,
            reason=payload["reason"],
            recommended_date=payload["recommendedDate"],
            additional_notes=payload.get("additionalNotes"),
            conversation_id=ctx.conversation_id,
        )
        try:
            entry = self.mailer.schedule(
                user_id=ctx.user_id,
                conversation_id=ctx.conversation_id,
                tool_call_id=ctx.tool_call_id,
                recipient=ctx.patient_email,
                subject=subject,
                body_text=body,
                send_at=send_at,
            )
        except EmailDeliveryFailed as exc:
            return _failed("email_delivery_failed", str(exc))
        if entry["status"] == "failed":
            return _failed("email_delivery_failed", entry.get("error_message") or "E-mail was not delivered.")
        return {
            "status": "succeeded",
            "data": {
                "success": True,
                "scheduledFor": entry["send_at"],
                "outboxId": entry["id"],
                "deliveryStatus": entry["status"],
            },
            "errors": [],
        }


def register_tools(registry: ToolRegistry, toolset: CarelyToolset) -> None:
    registry.register(
        ToolDefinition(
            "displayEmergencyHotlines",
            "Display emergency hotline phone numbers for the patient to call. Use this tool when the patient "
            "describes a medical emergency, crisis situation, or needs specialized support resources.",
            DisplayEmergencyHotlinesInput,
            handler=toolset.display_emergency_hotlines,
        )
    )
    registry.register(
        ToolDefinition(
            SCHEDULE_FOLLOW_UP,
            "Present follow-up options to the patient: add to calendar, e-mail now, or e-mail a reminder later.",
            ScheduleFollowUpInput,
            mode="interactive",
            skip_output=follow_up_skip_output,
        )
    )
    registry.register(
        ToolDefinition(
            GET_USER_LOCATION,
            "Ask the patient to share their current location. Use before searching for nearby care.",
            GetUserLocationInput,
            mode="interactive",
            skip_output=location_skip_output,
        )
    )
    registry.register(
        ToolDefinition(
            "findNearbyHealthcare",
            "Search for healthcare facilities near the given coordinates.",
            FindNearbyHealthcareInput,
            handler=toolset.find_nearby_healthcare,
        )
    )
    registry.register(
        ToolDefinition(
            "addToHistory",
            "Add durable facts to the patient's medical history. Pass the patient's user id.",
            AddToHistoryInput,
            handler=toolset.add_to_history,
        )
    )
    registry.register(
        ToolDefinition(
            "sendFollowUpEmailNow",
            "Send the patient an e-mail with the follow-up details right away.",
            SendFollowUpEmailNowInput,
            handler=toolset.send_follow_up_email_now,
        )
    )
    registry.register(
        ToolDefinition(
            "scheduleFollowUpEmail",
            "Schedule a follow-up reminder e-mail for the given date-time.",
            ScheduleFollowUpEmailInput,
            handler=toolset.schedule_follow_up_email,
        )
    )
