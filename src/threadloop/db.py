from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from threadloop.models import utcnow_iso

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
  thread_id TEXT PRIMARY KEY,
  payload TEXT NOT NULL,
  created_at DATETIME NOT NULL,
  updated_at DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS thread_state (
  thread_id TEXT PRIMARY KEY,
  payload TEXT NOT NULL,
  updated_at DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS checkpoints (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  thread_id TEXT NOT NULL,
  execution_id TEXT NOT NULL,
  turn_number INTEGER NOT NULL,
  confidence INTEGER NOT NULL,
  model TEXT NOT NULL,
  state TEXT NOT NULL,
  created_at DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS turns (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  execution_id TEXT NOT NULL,
  thread_id TEXT NOT NULL,
  turn_number INTEGER NOT NULL,
  model TEXT NOT NULL,
  status TEXT NOT NULL,
  confidence INTEGER NOT NULL,
  payload TEXT NOT NULL,
  created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_checkpoints_thread ON checkpoints (thread_id, turn_number);
CREATE INDEX IF NOT EXISTS idx_turns_execution ON turns (execution_id, turn_number);
"""


class _ManagedSQLiteConnection(sqlite3.Connection):
    """SQLite connection that closes at context-manager exit."""

    def __exit__(self, exc_type: object, exc_value: object, traceback: object) -> bool:
        try:
            return super().__exit__(exc_type, exc_value, traceback)
        finally:
            self.close()


@dataclass
class Database:
    path: Path

    def connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self.path, factory=_ManagedSQLiteConnection)
        connection.row_factory = sqlite3.Row
        return connection

    def initialize(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as connection:
            connection.executescript(SCHEMA)

    def fetch_session(self, thread_id: str) -> dict[str, Any] | None:
        with self.connect() as connection:
            row = connection.execute(
                "SELECT payload FROM sessions WHERE thread_id = ?", (thread_id,)
            ).fetchone()
        if row is None:
            return None
        payload = json.loads(row["payload"])
        return payload if isinstance(payload, dict) else None

    def upsert_session(self, thread_id: str, payload: dict[str, Any]) -> None:
        now = utcnow_iso()
        created_at = str(payload.get("created_at") or now)
        with self.connect() as connection:
            connection.execute(
                """
                INSERT INTO sessions (thread_id, payload, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(thread_id) DO UPDATE SET
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (thread_id, json.dumps(payload), created_at, now),
            )

    def fetch_thread_state(self, thread_id: str) -> dict[str, Any] | None:
        with self.connect() as connection:
            row = connection.execute(
                "SELECT payload FROM thread_state WHERE thread_id = ?", (thread_id,)
            ).fetchone()
        if row is None:
            return None
        payload = json.loads(row["payload"])
        return payload if isinstance(payload, dict) else None

    def upsert_thread_state(self, thread_id: str, fields: dict[str, Any]) -> None:
        with self.connect() as connection:
            row = connection.execute(
                "SELECT payload FROM thread_state WHERE thread_id = ?", (thread_id,)
            ).fetchone()
            merged: dict[str, Any] = json.loads(row["payload"]) if row else {}
            merged.update(fields)
            connection.execute(
                """
                INSERT INTO thread_state (thread_id, payload, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(thread_id) DO UPDATE SET
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (thread_id, json.dumps(merged), utcnow_iso()),
            )

    def insert_checkpoint(
        self,
        thread_id: str,
        execution_id: str,
        turn_number: int,
        confidence: int,
        model: str,
        state: dict[str, Any],
    ) -> None:
        with self.connect() as connection:
            connection.execute(
                """
                INSERT INTO checkpoints (
                    thread_id, execution_id, turn_number, confidence, model, state, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    thread_id,
                    execution_id,
                    turn_number,
                    confidence,
                    model,
                    json.dumps(state, default=str),
                    utcnow_iso(),
                ),
            )

    def list_checkpoints(self, thread_id: str) -> list[sqlite3.Row]:
        with self.connect() as connection:
            cursor = connection.execute(
                "SELECT * FROM checkpoints WHERE thread_id = ? ORDER BY id ASC",
                (thread_id,),
            )
            return cursor.fetchall()

    def insert_turn(self, execution_id: str, thread_id: str, turn: dict[str, Any]) -> None:
        with self.connect() as connection:
            connection.execute(
                """
                INSERT INTO turns (
                    execution_id, thread_id, turn_number, model, status, confidence, payload, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution_id,
                    thread_id,
                    int(turn["turn_number"]),
                    str(turn["model_used"]),
                    str(turn["status"]),
                    int(turn["confidence"]),
                    json.dumps(turn, default=str),
                    utcnow_iso(),
                ),
            )

    def list_turns(self, execution_id: str) -> list[sqlite3.Row]:
        with self.connect() as connection:
            cursor = connection.execute(
                "SELECT * FROM turns WHERE execution_id = ? ORDER BY turn_number ASC",
                (execution_id,),
            )
            return cursor.fetchall()
