from __future__ import annotations

import hashlib
import json
from typing import Any

from carely_agent_core.models import Turn

from .database import SQLiteMemoryDB
from .outbox_store import EmailOutboxStore
from .patient_store import PatientStore
from .transcript_store import TranscriptStore


def canonical_payload_hash(payload: dict[str, Any]) -> str:
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class MemoryService:
    def __init__(self, db: SQLiteMemoryDB) -> None:
        self.db = db
        self.transcripts = TranscriptStore(db)
        self.patients = PatientStore(db)
        self.outbox = EmailOutboxStore(db)

    def patient_context(self, user_id: str) -> dict[str, Any]:
        """Profile and history facts used to build the system prompt."""
        profile = self.patients.get_profile(user_id)
        facts = [fact["content"] for fact in self.patients.list_facts(user_id)]
        return {"name": profile["name"], "email": profile["email"], "history_facts": facts}

    def conversation_snapshot(self, conversation_id: str, principal_id: str) -> dict[str, Any]:
        conversation = self.transcripts.get_conversation(conversation_id, principal_id)
        turns: list[Turn] = self.transcripts.read(conversation_id, principal_id)
        return {**conversation.to_dict(), "turns": [turn.to_dict() for turn in turns]}
