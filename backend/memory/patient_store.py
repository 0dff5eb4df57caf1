from __future__ import annotations

import json
import re
import sqlite3
import uuid
from typing import Any

from .database import SQLiteMemoryDB
from .time_utils import to_iso, utc_now


def _normalize_fact(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip().lower().rstrip(".")


class PatientStore:
    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db

    def get_profile(self, user_id: str) -> dict[str, Any]:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT user_id, name, email, updated_at FROM patients WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if not row:
            return {"user_id": user_id, "name": "", "email": "", "updated_at": None}
        return {
            "user_id": row["user_id"],
            "name": row["name"] or "",
            "email": row["email"] or "",
            "updated_at": row["updated_at"],
        }

    def upsert_profile(self, *, user_id: str, name: str | None = None, email: str | None = None) -> dict[str, Any]:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO patients (user_id, name, email, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                  name = COALESCE(excluded.name, patients.name),
                  email = COALESCE(excluded.email, patients.email),
                  updated_at = excluded.updated_at
                """,
                (user_id, name, email, now, now),
            )
        return self.get_profile(user_id)

    def add_facts(
        self,
        *,
        user_id: str,
        facts: list[str],
        source_conversation_id: str | None = None,
    ) -> dict[str, Any]:
        """Insert facts not yet recorded for the patient (case and whitespace insensitive)."""
        added: list[str] = []
        duplicates: list[str] = []
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            for fact in facts:
                content = fact.strip()
                normalized = _normalize_fact(content)
                if not normalized:
                    continue
                try:
                    conn.execute(
                        """
                        INSERT INTO history_facts (
                          id, user_id, content, normalized, source_conversation_id, created_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (uuid.uuid4().hex, user_id, content, normalized, source_conversation_id, now),
                    )
                except sqlite3.IntegrityError:
                    duplicates.append(content)
                    continue
                added.append(content)
        return {"added": added, "duplicates": duplicates}

    def list_facts(self, user_id: str, limit: int = 200) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, content, source_conversation_id, created_at
                FROM history_facts
                WHERE user_id = ?
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (user_id, max(1, limit)),
            ).fetchall()
        return [
            {
                "id": row["id"],
                "content": row["content"],
                "source_conversation_id": row["source_conversation_id"],
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    def append_tool_event(
        self,
        *,
        user_id: str,
        conversation_id: str,
        tool_call_id: str,
        tool_name: str,
        status: str,
        details: dict[str, Any],
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO tool_events (
                  id, user_id, conversation_id, tool_call_id, tool_name, status, details_json, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    uuid.uuid4().hex,
                    user_id,
                    conversation_id,
                    tool_call_id,
                    tool_name,
                    status,
                    json.dumps(details, sort_keys=True, separators=(",", ":"), default=str),
                    to_iso(utc_now()),
                ),
            )

    def list_tool_events(self, conversation_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT tool_call_id, tool_name, status, details_json, created_at
                FROM tool_events
                WHERE conversation_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (conversation_id,),
            ).fetchall()
        return [
            {
                "tool_call_id": row["tool_call_id"],
                "tool_name": row["tool_name"],
                "status": row["status"],
                "details": json.loads(row["details_json"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]
