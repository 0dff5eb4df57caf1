from __future__ import annotations

import os
import uuid
from datetime import datetime
from typing import Any

import httpx

from memory.outbox_store import EmailOutboxStore
from memory.service import canonical_payload_hash
from memory.time_utils import parse_iso, to_iso, utc_now
from observability.logging import get_logger

logger = get_logger(__name__)

_RESEND_URL = "https://api.resend.com/emails"


class EmailDeliveryFailed(Exception):
    pass


def compose_follow_up_email(
    *,
    patient_name: str,
    reason: str,
    recommended_date: str,
    additional_notes: str | None = None,
    conversation_id: str | None = None,
) -> tuple[str, str]:
    lines = [
        f"Hi {patient_name or 'there'},",
        "",
        "This is a reminder about your follow-up care from your recent visit with Carely.",
        "",
        f"Reason for follow-up: {reason}",
        f"Recommended date: {recommended_date}",
    ]
    if additional_notes:
        lines.append(f"Additional notes: {additional_notes}")
    if conversation_id:
        base_url = (os.getenv("CARELY_APP_URL") or "http://localhost:3000").rstrip("/")
        lines.extend(["", f"Review your visit: {base_url}/appointment/{conversation_id}"])
    lines.extend(["", "If your symptoms get worse, seek care right away or call 911 in an emergency."])
    return f"Follow-Up Reminder: {reason}", "\n".join(lines)


class FollowUpMailer:
    """Follow-up e-mail delivery through an idempotent outbox.

    Every send is keyed by ``(user_id, tool_call_id)``, so one tool call delivers at most
    one e-mail even if the tool is executed again.
    """

    def __init__(self, outbox: EmailOutboxStore) -> None:
        self.outbox = outbox
        self.api_key = (os.getenv("RESEND_API_KEY") or "").strip()
        self.sender = (os.getenv("CARELY_EMAIL_FROM") or "Carely <no-reply@carely.local>").strip()
        self.timeout = float(os.getenv("CARELY_EMAIL_TIMEOUT_SECONDS", "10"))

    @staticmethod
    def idempotency_key(user_id: str, tool_call_id: str) -> str:
        return canonical_payload_hash({"user_id": user_id, "tool_call_id": tool_call_id})

    def send_now(
        self,
        *,
        user_id: str,
        conversation_id: str,
        tool_call_id: str,
        recipient: str,
        subject: str,
        body_text: str,
    ) -> dict[str, Any]:
        return self.schedule(
            user_id=user_id,
            conversation_id=conversation_id,
            tool_call_id=tool_call_id,
            recipient=recipient,
            subject=subject,
            body_text=body_text,
            send_at=utc_now(),
        )

    def schedule(
        self,
        *,
        user_id: str,
        conversation_id: str,
        tool_call_id: str,
        recipient: str,
        subject: str,
        body_text: str,
        send_at: datetime,
    ) -> dict[str, Any]:
        entry, created = self.outbox.enqueue(
            user_id=user_id,
            conversation_id=conversation_id,
            idempotency_key=self.idempotency_key(user_id, tool_call_id),
            recipient=recipient,
            subject=subject,
            body_text=body_text,
            send_at=to_iso(send_at),
        )
        if not created:
            logger.info("email_outbox_replayed", outbox_id=entry["id"], status=entry["status"])
            return entry
        due_at = parse_iso(entry["send_at"])
        if due_at is not None and due_at <= utc_now():
            return self.deliver(entry)
        logger.info("email_scheduled", outbox_id=entry["id"], send_at=entry["send_at"])
        return entry

    def dispatch_due(self, user_id: str) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for entry in self.outbox.due(user_id):
            try:
                results.append(self.deliver(entry))
            except EmailDeliveryFailed:
                results.append(self.outbox.get(entry["id"]) or entry)
        return results

    def deliver(self, entry: dict[str, Any]) -> dict[str, Any]:
        if not self.api_key:
            provider_ref = f"SIM-{uuid.uuid4().hex[:10].upper()}"
        else:
            provider_ref = self._post_resend(entry)
        self.outbox.mark_sent(entry["id"], provider_ref)
        logger.info("email_sent", outbox_id=entry["id"], provider_ref=provider_ref, recipient=entry["recipient"])
        return self.outbox.get(entry["id"]) or entry

    def _post_resend(self, entry: dict[str, Any]) -> str:
        try:
            response = httpx.post(
                _RESEND_URL,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                    "Idempotency-Key": entry["idempotency_key"],
                },
                json={
                    "from": self.sender,
                    "to": [entry["recipient"]],
                    "subject": entry["subject"],
                    "text": entry["body_text"],
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            self.outbox.mark_failed(entry["id"], str(exc))
            logger.error("email_delivery_failed", outbox_id=entry["id"], error=str(exc))
            raise EmailDeliveryFailed(str(exc)) from exc
        payload = response.json() if response.content else {}
        return str(payload.get("id") or f"resend-{entry['id']}")
