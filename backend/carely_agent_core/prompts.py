from __future__ import annotations

import os
from pathlib import Path


DEFAULT_SYSTEM_PROMPT = (
    "You are Carely, a warm and careful virtual visit assistant. "
    "Ask focused questions about the patient's symptoms, explain likely possibilities in plain "
    "language, and be clear about uncertainty. Never claim a confirmed diagnosis. "
    "When the patient describes an emergency or crisis, call displayEmergencyHotlines right away. "
    "When nearby care would help, call getUserLocation and then findNearbyHealthcare with the "
    "coordinates you receive. If the patient declines to share a location, ask for a city or ZIP code. "
    "Record durable medical facts the patient shares with addToHistory. "
    "When a follow-up is appropriate, call scheduleFollowUp; if the patient asks for an email, "
    "use sendFollowUpEmailNow or scheduleFollowUpEmail."
)

LABEL_SYSTEM_PROMPT = """You generate very brief appointment descriptions (2-5 words) for medical visits based on the patient's first message.
Examples:
- "I have a headache" -> "Headache"
- "My throat hurts and I have a fever" -> "Sore throat, fever"
- "I think I sprained my ankle yesterday" -> "Ankle injury"
- "I've been feeling really tired lately" -> "Fatigue"
- "I have a rash on my arm" -> "Skin rash"

If the message is not medically relevant (just a greeting, gibberish, or off-topic), respond with exactly "SKIP".
Only output the brief description or "SKIP", nothing else."""


def load_base_system_prompt() -> str:
    path = (os.getenv("CARELY_SYSTEM_PROMPT_PATH") or "").strip()
    if not path:
        return DEFAULT_SYSTEM_PROMPT
    return Path(path).expanduser().read_text(encoding="utf-8").strip()


def build_system_prompt(
    base_prompt: str,
    *,
    user_id: str,
    conversation_id: str,
    patient_name: str = "",
    patient_email: str = "",
    history_facts: list[str] | None = None,
) -> str:
    sections = [
        base_prompt,
        "---\n"
        "**Patient Information (for tools):**\n"
        f"- Name: {patient_name or 'unknown'}\n"
        f"- Email: {patient_email or 'unknown'}\n"
        f"- User ID: {user_id}\n"
        f"- Appointment ID: {conversation_id}",
    ]
    if history_facts:
        sections.append(
            "---\n"
            "The following is the patient's known medical history. This may not be complete, so some "
            "things are still worth asking about. Do not proactively bring up or reference this history "
            "unless it is directly relevant to what the patient is discussing. Use it only as background "
            "context to inform your responses.\n\n" + "\n".join(history_facts)
        )
    return "\n\n".join(sections)
