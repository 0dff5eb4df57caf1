from __future__ import annotations

import re
import uuid
from datetime import date, datetime, timedelta

from memory.time_utils import parse_iso, utc_now

_IN_DAYS_RE = re.compile(r"in (\d+) days?")
_IN_WEEKS_RE = re.compile(r"in (\d+) weeks?")
_DEFAULT_OFFSET = timedelta(days=3)


def parse_recommended_date(text: str, now: datetime | None = None) -> date:
    """Best-effort date for phrases like "in 3 days", "next week" or an ISO date."""
    now = now or utc_now()
    lowered = (text or "").lower()

    match = _IN_DAYS_RE.search(lowered)
    if match:
        return (now + timedelta(days=int(match.group(1)))).date()
    match = _IN_WEEKS_RE.search(lowered)
    if match:
        return (now + timedelta(weeks=int(match.group(1)))).date()
    if "next week" in lowered:
        return (now + timedelta(weeks=1)).date()
    if "tomorrow" in lowered:
        return (now + timedelta(days=1)).date()

    parsed = parse_iso(text)
    if parsed is not None:
        return parsed.date()
    return (now + _DEFAULT_OFFSET).date()


def _escape(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def build_calendar_event(
    *,
    reason: str,
    recommended_date: str,
    additional_notes: str | None = None,
    now: datetime | None = None,
) -> str:
    """All-day iCalendar event with a morning display alarm."""
    now = now or utc_now()
    start = parse_recommended_date(recommended_date, now)
    end = start + timedelta(days=1)
    description = f"Follow-up: {reason}"
    if additional_notes:
        description += f"\n\nNotes: {additional_notes}"
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Carely//Follow-up Reminder//EN",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        "BEGIN:VEVENT",
        f"UID:carely-followup-{uuid.uuid4().hex}@carely.app",
        f"DTSTAMP:{now.strftime('%Y%m%dT%H%M%SZ')}",
        f"DTSTART;VALUE=DATE:{start.strftime('%Y%m%d')}",
        f"DTEND;VALUE=DATE:{end.strftime('%Y%m%d')}",
        f"SUMMARY:{_escape(f'Carely Follow-up: {reason}')}",
        f"DESCRIPTION:{_escape(description)}",
        "STATUS:CONFIRMED",
        "BEGIN:VALARM",
        "ACTION:DISPLAY",
        "DESCRIPTION:Carely Follow-up Reminder",
        "TRIGGER:-PT9H",
        "END:VALARM",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(lines)
