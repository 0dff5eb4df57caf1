from __future__ import annotations

import json
import sqlite3
from datetime import timedelta
from typing import Any

from carely_agent_core.errors import (
    DuplicateResolutionAttempt,
    Forbidden,
    NotFound,
    PersistenceConflict,
    TurnInFlight,
    UnresolvedToolCalls,
)
from carely_agent_core.models import Conversation, ToolCallPart, ToolResultPart, Turn, new_id
from observability.logging import get_logger

from .database import SQLiteMemoryDB
from .time_utils import parse_iso, to_iso, utc_now

logger = get_logger(__name__)

TURN_CLAIM_TTL_SECONDS = 300


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _json_loads(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


def _conversation_from_row(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        principal_id=row["principal_id"],
        label=row["label"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class TranscriptStore:
    """Append-only transcript persistence.

    ``turns`` rows are written once and never updated. The ``tool_calls`` table is the
    authority for call state: a call moves ``requested -> resolved`` through a single
    conditional update, and ``read`` hydrates every ToolCallPart from it.
    """

    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db

    def create_conversation(
        self,
        *,
        principal_id: str,
        conversation_id: str | None = None,
        label: str | None = None,
    ) -> Conversation:
        conversation_id = conversation_id or new_id("conv")
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO conversations (id, principal_id, label, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (conversation_id, principal_id, label, now, now),
                )
            except sqlite3.IntegrityError:
                pass
            row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        conversation = _conversation_from_row(row)
        if conversation.principal_id != principal_id:
            raise Forbidden("Conversation belongs to another principal.", conversation_id=conversation_id)
        return conversation

    def get_conversation(self, conversation_id: str, principal_id: str) -> Conversation:
        with self._db.connection() as conn:
            return self._owned_conversation(conn, conversation_id, principal_id)

    def list_conversations(self, principal_id: str, limit: int = 50) -> list[Conversation]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM conversations
                WHERE principal_id = ?
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                (principal_id, max(1, limit)),
            ).fetchall()
        return [_conversation_from_row(row) for row in rows]

    def set_label(self, conversation_id: str, label: str) -> bool:
        """Store a label unless one already exists; returns whether it was written."""
        with self._db.connection() as conn:
            cursor = conn.execute(
                "UPDATE conversations SET label = ? WHERE id = ? AND label IS NULL",
                (label, conversation_id),
            )
            return cursor.rowcount == 1

    def read(self, conversation_id: str, principal_id: str) -> list[Turn]:
        with self._db.connection() as conn:
            self._owned_conversation(conn, conversation_id, principal_id)
            turn_rows = conn.execute(
                """
                SELECT id, role, visible, parts_json, created_at
                FROM turns
                WHERE conversation_id = ?
                ORDER BY seq ASC
                """,
                (conversation_id,),
            ).fetchall()
            call_rows = conn.execute(
                """
                SELECT tool_call_id, state, output_json, is_error
                FROM tool_calls
                WHERE conversation_id = ?
                """,
                (conversation_id,),
            ).fetchall()

        calls = {row["tool_call_id"]: row for row in call_rows}
        turns: list[Turn] = []
        for row in turn_rows:
            turn = Turn.from_dict(
                {
                    "id": row["id"],
                    "role": row["role"],
                    "visible": bool(row["visible"]),
                    "created_at": row["created_at"],
                    "parts": json.loads(row["parts_json"]),
                }
            )
            for part in turn.tool_calls:
                call = calls.get(part.tool_call_id)
                if call is None:
                    continue
                part.state = call["state"]
                part.output = _json_loads(call["output_json"])
                part.is_error = bool(call["is_error"])
            turns.append(turn)
        return turns

    def claim_turn(
        self,
        conversation_id: str,
        principal_id: str,
        request_id: str,
        *,
        ttl_seconds: int = TURN_CLAIM_TTL_SECONDS,
        now: str | None = None,
    ) -> int:
        """Reserve the conversation for one Turn Controller run.

        Returns the transcript head ``seq`` at claim time, to be passed back to ``append``
        as ``expected_seq``. A claim older than ``ttl_seconds`` is taken over.
        """
        claimed_at = now or to_iso(utc_now())
        cutoff = to_iso(parse_iso(claimed_at) - timedelta(seconds=ttl_seconds))
        with self._db.transaction() as conn:
            self._owned_conversation(conn, conversation_id, principal_id)
            conn.execute(
                "DELETE FROM turn_claims WHERE conversation_id = ? AND claimed_at < ?",
                (conversation_id, cutoff),
            )
            try:
                conn.execute(
                    "INSERT INTO turn_claims (conversation_id, request_id, claimed_at) VALUES (?, ?, ?)",
                    (conversation_id, request_id, claimed_at),
                )
            except sqlite3.IntegrityError as exc:
                raise TurnInFlight(
                    "Another turn is still running for this conversation.",
                    conversation_id=conversation_id,
                ) from exc
            return self._head_seq(conn, conversation_id)

    def release_turn(self, conversation_id: str, request_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM turn_claims WHERE conversation_id = ? AND request_id = ?",
                (conversation_id, request_id),
            )
            return cursor.rowcount == 1

    def pending_interactive_calls(self, conversation_id: str, principal_id: str) -> list[ToolCallPart]:
        with self._db.connection() as conn:
            self._owned_conversation(conn, conversation_id, principal_id)
            return self._pending_interactive(conn, conversation_id)

    def append(
        self,
        conversation_id: str,
        principal_id: str,
        turns: list[Turn],
        *,
        expected_seq: int | None = None,
    ) -> list[Turn]:
        """Persist ``turns`` atomically and return the ones that were newly written.

        Turns whose id is already stored are skipped, so a retried append is a no-op.
        With ``expected_seq`` the batch is refused if the transcript grew since it was read.
        Any violation rolls back the whole batch.
        """
        appended: list[Turn] = []
        now = to_iso(utc_now())
        with self._db.transaction() as conn:
            self._owned_conversation(conn, conversation_id, principal_id)
            seq = self._head_seq(conn, conversation_id)
            if expected_seq is not None and seq != expected_seq:
                raise PersistenceConflict(
                    "Transcript changed while the turn was running.",
                    conversation_id=conversation_id,
                    expected_seq=expected_seq,
                    head_seq=seq,
                )

            for turn in turns:
                exists = conn.execute(
                    "SELECT 1 FROM turns WHERE conversation_id = ? AND id = ?",
                    (conversation_id, turn.id),
                ).fetchone()
                if exists:
                    logger.info("turn_append_replayed", conversation_id=conversation_id, turn_id=turn.id)
                    continue

                for part in turn.parts:
                    if isinstance(part, ToolCallPart):
                        self._register_call(conn, conversation_id, turn.id, part, now)
                    elif isinstance(part, ToolResultPart):
                        self._resolve_call(conn, conversation_id, turn.id, part, now)

                if turn.role == "human" and turn.visible:
                    pending = self._pending_interactive(conn, conversation_id)
                    if pending:
                        raise UnresolvedToolCalls([call.tool_call_id for call in pending])

                seq += 1
                conn.execute(
                    """
                    INSERT INTO turns (conversation_id, id, seq, role, visible, parts_json, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        conversation_id,
                        turn.id,
                        seq,
                        turn.role,
                        int(turn.visible),
                        _json_dumps(turn.to_dict()["parts"]),
                        turn.created_at,
                    ),
                )
                appended.append(turn)

            if appended:
                conn.execute("UPDATE conversations SET updated_at = ? WHERE id = ?", (now, conversation_id))
        return appended

    def record_tool_result(
        self,
        *,
        conversation_id: str,
        principal_id: str,
        tool_call_id: str,
        output: Any,
        is_error: bool = False,
        turn_id: str | None = None,
    ) -> dict[str, Any]:
        """Durably resolve one tool call through a hidden resolution turn.

        A second resolution of the same call does not fail: the first recorded output is
        returned with ``replayed=True``.
        """
        with self._db.connection() as conn:
            self._owned_conversation(conn, conversation_id, principal_id)
            row = conn.execute(
                """
                SELECT tool_name, state, output_json
                FROM tool_calls
                WHERE conversation_id = ? AND tool_call_id = ?
                """,
                (conversation_id, tool_call_id),
            ).fetchone()
        if row is None:
            raise NotFound(f"Unknown tool call: {tool_call_id}", tool_call_id=tool_call_id)

        turn = Turn.resolution(
            [ToolResultPart(tool_call_id=tool_call_id, tool_name=row["tool_name"], output=output, is_error=is_error)],
            turn_id=turn_id,
        )
        try:
            appended = self.append(conversation_id, principal_id, [turn])
        except DuplicateResolutionAttempt as exc:
            logger.info("duplicate_resolution_attempt", conversation_id=conversation_id, tool_call_id=tool_call_id)
            return {"output": exc.existing_output, "replayed": True, "turn": None}

        if not appended:
            return {"output": self._recorded_output(conversation_id, tool_call_id), "replayed": True, "turn": None}
        return {"output": output, "replayed": False, "turn": appended[0]}

    def _recorded_output(self, conversation_id: str, tool_call_id: str) -> Any:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT output_json FROM tool_calls WHERE conversation_id = ? AND tool_call_id = ?",
                (conversation_id, tool_call_id),
            ).fetchone()
        return _json_loads(row["output_json"]) if row else None

    @staticmethod
    def _owned_conversation(conn: sqlite3.Connection, conversation_id: str, principal_id: str) -> Conversation:
        row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        if row is None:
            raise NotFound(f"Conversation not found: {conversation_id}", conversation_id=conversation_id)
        if row["principal_id"] != principal_id:
            logger.warning("conversation_access_denied", conversation_id=conversation_id)
            raise Forbidden("Conversation belongs to another principal.", conversation_id=conversation_id)
        return _conversation_from_row(row)

    @staticmethod
    def _head_seq(conn: sqlite3.Connection, conversation_id: str) -> int:
        return conn.execute(
            "SELECT COALESCE(MAX(seq), 0) AS seq FROM turns WHERE conversation_id = ?",
            (conversation_id,),
        ).fetchone()["seq"]

    @staticmethod
    def _pending_interactive(conn: sqlite3.Connection, conversation_id: str) -> list[ToolCallPart]:
        rows = conn.execute(
            """
            SELECT tool_call_id, tool_name, input_json, mode
            FROM tool_calls
            WHERE conversation_id = ? AND state = 'requested' AND mode = 'interactive'
            ORDER BY created_at ASC, rowid ASC
            """,
            (conversation_id,),
        ).fetchall()
        return [
            ToolCallPart(
                tool_call_id=row["tool_call_id"],
                tool_name=row["tool_name"],
                input=_json_loads(row["input_json"]),
                mode=row["mode"],
            )
            for row in rows
        ]

    @staticmethod
    def _register_call(
        conn: sqlite3.Connection,
        conversation_id: str,
        turn_id: str,
        part: ToolCallPart,
        now: str,
    ) -> None:
        try:
            conn.execute(
                """
                INSERT INTO tool_calls (
                  conversation_id, tool_call_id, turn_id, tool_name, mode, input_json, state, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, 'requested', ?)
                """,
                (conversation_id, part.tool_call_id, turn_id, part.tool_name, part.mode, _json_dumps(part.input), now),
            )
        except sqlite3.IntegrityError as exc:
            raise PersistenceConflict(
                f"Tool call id already used in this conversation: {part.tool_call_id}",
                tool_call_id=part.tool_call_id,
            ) from exc

    @staticmethod
    def _resolve_call(
        conn: sqlite3.Connection,
        conversation_id: str,
        turn_id: str,
        part: ToolResultPart,
        now: str,
    ) -> None:
        cursor = conn.execute(
            """
            UPDATE tool_calls
            SET state = 'resolved',
                output_json = ?,
                is_error = ?,
                resolved_by_turn_id = ?,
                resolved_at = ?
            WHERE conversation_id = ? AND tool_call_id = ? AND state = 'requested'
            """,
            (_json_dumps(part.output), int(part.is_error), turn_id, now, conversation_id, part.tool_call_id),
        )
        if cursor.rowcount == 1:
            return
        row = conn.execute(
            "SELECT output_json FROM tool_calls WHERE conversation_id = ? AND tool_call_id = ?",
            (conversation_id, part.tool_call_id),
        ).fetchone()
        if row is None:
            raise NotFound(f"Unknown tool call: {part.tool_call_id}", tool_call_id=part.tool_call_id)
        raise DuplicateResolutionAttempt(part.tool_call_id, _json_loads(row["output_json"]))
