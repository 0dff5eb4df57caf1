from __future__ import annotations

import sqlite3
import uuid
from typing import Any

from .database import SQLiteMemoryDB
from .time_utils import to_iso, utc_now

OUTBOX_STATES = {"scheduled", "sent", "failed"}


def _row_to_entry(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "conversation_id": row["conversation_id"],
        "idempotency_key": row["idempotency_key"],
        "recipient": row["recipient"],
        "subject": row["subject"],
        "body_text": row["body_text"],
        "status": row["status"],
        "send_at": row["send_at"],
        "sent_at": row["sent_at"],
        "provider_ref": row["provider_ref"],
        "error_message": row["error_message"],
    }


class EmailOutboxStore:
    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db

    def enqueue(
        self,
        *,
        user_id: str,
        conversation_id: str | None,
        idempotency_key: str,
        recipient: str,
        subject: str,
        body_text: str,
        send_at: str,
    ) -> tuple[dict[str, Any], bool]:
        """Insert an outbox entry; returns ``(entry, created)``.

        A repeated idempotency key returns the stored entry untouched.
        """
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO email_outbox (
                      id, user_id, conversation_id, idempotency_key, recipient, subject, body_text,
                      status, send_at, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, 'scheduled', ?, ?, ?)
                    """,
                    (
                        uuid.uuid4().hex,
                        user_id,
                        conversation_id,
                        idempotency_key,
                        recipient,
                        subject,
                        body_text,
                        send_at,
                        now,
                        now,
                    ),
                )
                created = True
            except sqlite3.IntegrityError:
                created = False
            row = conn.execute(
                "SELECT * FROM email_outbox WHERE idempotency_key = ?",
                (idempotency_key,),
            ).fetchone()
        return _row_to_entry(row), created

    def get(self, entry_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM email_outbox WHERE id = ?", (entry_id,)).fetchone()
        return _row_to_entry(row) if row else None

    def due(self, user_id: str, now: str | None = None) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM email_outbox
                WHERE user_id = ? AND status = 'scheduled' AND send_at <= ?
                ORDER BY send_at ASC
                """,
                (user_id, now or to_iso(utc_now())),
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def mark_sent(self, entry_id: str, provider_ref: str) -> bool:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE email_outbox
                SET status = 'sent', sent_at = ?, provider_ref = ?, error_message = NULL, updated_at = ?
                WHERE id = ? AND status = 'scheduled'
                """,
                (now, provider_ref, now, entry_id),
            )
            return cursor.rowcount == 1

    def mark_failed(self, entry_id: str, error_message: str) -> None:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE email_outbox
                SET status = 'failed', error_message = ?, updated_at = ?
                WHERE id = ? AND status = 'scheduled'
                """,
                (error_message[:500], now, entry_id),
            )
