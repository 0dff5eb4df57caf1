from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteMemoryDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Connection holding the write lock from the first statement.

        Appends read the current sequence and tool-call states before writing, so the
        transaction is opened with BEGIN IMMEDIATE to keep concurrent appends serialized.
        """
        conn = self._connect()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                  id TEXT PRIMARY KEY,
                  principal_id TEXT NOT NULL,
                  label TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS turns (
                  conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                  id TEXT NOT NULL,
                  seq INTEGER NOT NULL,
                  role TEXT NOT NULL,
                  visible INTEGER NOT NULL DEFAULT 1,
                  parts_json TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  PRIMARY KEY (conversation_id, id),
                  UNIQUE (conversation_id, seq)
                );

                CREATE TABLE IF NOT EXISTS turn_claims (
                  conversation_id TEXT PRIMARY KEY REFERENCES conversations(id) ON DELETE CASCADE,
                  request_id TEXT NOT NULL,
                  claimed_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS tool_calls (
                  conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                  tool_call_id TEXT NOT NULL,
                  turn_id TEXT NOT NULL,
                  tool_name TEXT NOT NULL,
                  mode TEXT NOT NULL,
                  input_json TEXT NOT NULL,
                  state TEXT NOT NULL DEFAULT 'requested',
                  output_json TEXT,
                  is_error INTEGER NOT NULL DEFAULT 0,
                  resolved_by_turn_id TEXT,
                  created_at TEXT NOT NULL,
                  resolved_at TEXT,
                  PRIMARY KEY (conversation_id, tool_call_id)
                );

                CREATE TABLE IF NOT EXISTS patients (
                  user_id TEXT PRIMARY KEY,
                  name TEXT,
                  email TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS history_facts (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  content TEXT NOT NULL,
                  normalized TEXT NOT NULL,
                  source_conversation_id TEXT,
                  created_at TEXT NOT NULL,
                  UNIQUE (user_id, normalized)
                );

                CREATE TABLE IF NOT EXISTS email_outbox (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  conversation_id TEXT,
                  idempotency_key TEXT NOT NULL UNIQUE,
                  recipient TEXT NOT NULL,
                  subject TEXT NOT NULL,
                  body_text TEXT NOT NULL,
                  status TEXT NOT NULL,
                  send_at TEXT NOT NULL,
                  sent_at TEXT,
                  provider_ref TEXT,
                  error_message TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS tool_events (
                  id TEXT PRIMARY KEY,
                  user_id TEXT,
                  conversation_id TEXT,
                  tool_call_id TEXT,
                  tool_name TEXT NOT NULL,
                  status TEXT NOT NULL,
                  details_json TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_conversations_principal
                  ON conversations(principal_id, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_tool_calls_state
                  ON tool_calls(conversation_id, state);
                CREATE INDEX IF NOT EXISTS idx_history_facts_user
                  ON history_facts(user_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_email_outbox_due
                  ON email_outbox(status, send_at);
                CREATE INDEX IF NOT EXISTS idx_tool_events_conversation
                  ON tool_events(conversation_id, created_at);
                """
            )
