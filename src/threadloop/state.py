"""
Session and execution state persistence.

``RedisStateStore`` is the low-latency cache and ``SqliteStateStore`` the
durable store. ``ReplicatedStateStore`` composes them: reads go to the cache
first and fall back to the durable store (warming the cache on a hit), cache
writes happen inline and durable writes are handed to the outbound queue so
the execution loop never waits on durability.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from threadloop.db import Database
from threadloop.models import SessionRecord, utcnow_iso
from threadloop.outbound import OutboundQueue
from threadloop.redis_client import RedisConnection

logger = logging.getLogger(__name__)

THREAD_KEY_PREFIX = "thread:"
SESSION_KEY_PREFIX = "session:"


@dataclass(frozen=True)
class Checkpoint:
    thread_id: str
    execution_id: str
    turn_number: int
    confidence: int
    model: str
    state: dict[str, Any]
    created_at: str = field(default_factory=utcnow_iso)


class StateStore(Protocol):
    def get_session(self, thread_id: str) -> SessionRecord | None:
        ...

    def get_or_create_session(
        self, thread_id: str, confidence: int = 80, model: str | None = None
    ) -> SessionRecord:
        ...

    def save_session(self, record: SessionRecord) -> None:
        ...

    def get_thread_state(self, thread_id: str) -> dict[str, Any] | None:
        ...

    def update_thread_state(self, thread_id: str, fields: dict[str, Any]) -> None:
        ...

    def record_checkpoint(self, checkpoint: Checkpoint) -> None:
        ...

    def record_turn(self, execution_id: str, thread_id: str, turn: dict[str, Any]) -> None:
        ...


def new_session(thread_id: str, confidence: int, model: str | None) -> SessionRecord:
    logger.info("Session not found for %s, creating new session", thread_id)
    return SessionRecord(thread_id=thread_id, confidence_score=confidence, model=model, is_new=True)


def _parse_thread_hash(raw: dict[str, str]) -> dict[str, Any]:
    def _int(value: str | None, default: int) -> int:
        try:
            return int(value) if value is not None else default
        except ValueError:
            return default

    return {
        "state": raw.get("state") or "idle",
        "confidence": _int(raw.get("confidence"), 80),
        "turn": _int(raw.get("turn"), 0),
        "model": raw.get("model") or None,
        "updated_at": raw.get("updated_at") or utcnow_iso(),
    }


class RedisStateStore:
    def __init__(self, connection: RedisConnection, ttl_s: int | None = None) -> None:
        self.connection = connection
        self.ttl_s = ttl_s or connection.settings.state_ttl_s

    def get_session(self, thread_id: str) -> SessionRecord | None:
        key = f"{SESSION_KEY_PREFIX}{thread_id}"
        raw = self.connection.best_effort(lambda client: client.get(key), "get_cached_session")
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding malformed cached session for %s", thread_id)
            return None
        if not isinstance(payload, dict):
            return None
        return SessionRecord.from_dict(payload)

    def save_session(self, record: SessionRecord) -> None:
        key = f"{SESSION_KEY_PREFIX}{record.thread_id}"
        payload = json.dumps(record.to_dict())
        self.connection.best_effort(
            lambda client: client.set(key, payload, ex=self.ttl_s), "cache_session"
        )

    def get_thread_state(self, thread_id: str) -> dict[str, Any] | None:
        key = f"{THREAD_KEY_PREFIX}{thread_id}"
        raw = self.connection.best_effort(lambda client: client.hgetall(key), "get_thread_state")
        if not raw:
            return None
        return _parse_thread_hash(raw)

    def update_thread_state(self, thread_id: str, fields: dict[str, Any]) -> None:
        key = f"{THREAD_KEY_PREFIX}{thread_id}"
        mapping = {name: str(value) for name, value in fields.items() if value is not None}
        mapping["updated_at"] = utcnow_iso()

        def _write(client: Any) -> Any:
            pipe = client.pipeline()
            pipe.hset(key, mapping=mapping)
            pipe.expire(key, self.ttl_s)
            return pipe.execute()

        self.connection.best_effort(_write, "update_thread_state")

    def record_checkpoint(self, checkpoint: Checkpoint) -> None:
        self.update_thread_state(
            checkpoint.thread_id,
            {
                "state": "running",
                "turn": checkpoint.turn_number,
                "confidence": checkpoint.confidence,
                "model": checkpoint.model,
            },
        )

    def record_turn(self, execution_id: str, thread_id: str, turn: dict[str, Any]) -> None:
        # The turn log is durable-only.
        return None


class SqliteStateStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def get_session(self, thread_id: str) -> SessionRecord | None:
        payload = self.db.fetch_session(thread_id)
        if payload is None:
            return None
        return SessionRecord.from_dict(payload)

    def get_or_create_session(
        self, thread_id: str, confidence: int = 80, model: str | None = None
    ) -> SessionRecord:
        record = self.get_session(thread_id)
        if record is not None:
            return record
        record = new_session(thread_id, confidence, model)
        self.save_session(record)
        return record

    def save_session(self, record: SessionRecord) -> None:
        record.updated_at = utcnow_iso()
        self.db.upsert_session(record.thread_id, record.to_dict())

    def get_thread_state(self, thread_id: str) -> dict[str, Any] | None:
        state = self.db.fetch_thread_state(thread_id)
        if state is not None:
            return state
        session = self.get_session(thread_id)
        if session is None:
            return None
        return {
            "state": session.state,
            "confidence": session.confidence_score,
            "turn": session.current_turn,
            "model": session.model,
            "updated_at": session.updated_at,
        }

    def update_thread_state(self, thread_id: str, fields: dict[str, Any]) -> None:
        self.db.upsert_thread_state(thread_id, {**fields, "updated_at": utcnow_iso()})

    def record_checkpoint(self, checkpoint: Checkpoint) -> None:
        self.db.insert_checkpoint(
            thread_id=checkpoint.thread_id,
            execution_id=checkpoint.execution_id,
            turn_number=checkpoint.turn_number,
            confidence=checkpoint.confidence,
            model=checkpoint.model,
            state=checkpoint.state,
        )

    def record_turn(self, execution_id: str, thread_id: str, turn: dict[str, Any]) -> None:
        self.db.insert_turn(execution_id, thread_id, turn)


class ReplicatedStateStore:
    def __init__(
        self,
        cache: RedisStateStore,
        durable: SqliteStateStore,
        outbound: OutboundQueue,
    ) -> None:
        self.cache = cache
        self.durable = durable
        self.outbound = outbound

    def get_session(self, thread_id: str) -> SessionRecord | None:
        cached = self.cache.get_session(thread_id)
        if cached is not None:
            return cached
        record = self.durable.get_session(thread_id)
        if record is not None:
            self.cache.save_session(record)
        return record

    def get_or_create_session(
        self, thread_id: str, confidence: int = 80, model: str | None = None
    ) -> SessionRecord:
        record = self.get_session(thread_id)
        if record is not None:
            record.is_new = False
            return record
        record = new_session(thread_id, confidence, model)
        self.cache.save_session(record)
        # Creation is synchronous so a concurrent reader on the durable side sees it.
        self.durable.save_session(record)
        return record

    def save_session(self, record: SessionRecord) -> None:
        record.updated_at = utcnow_iso()
        self.cache.save_session(record)
        snapshot = SessionRecord.from_dict(record.to_dict())
        self.outbound.send(
            f"save_session:{record.thread_id}", lambda: self.durable.save_session(snapshot)
        )

    def get_thread_state(self, thread_id: str) -> dict[str, Any] | None:
        state = self.cache.get_thread_state(thread_id)
        if state is not None:
            return state
        return self.durable.get_thread_state(thread_id)

    def update_thread_state(self, thread_id: str, fields: dict[str, Any]) -> None:
        self.cache.update_thread_state(thread_id, fields)
        snapshot = dict(fields)
        self.outbound.send(
            f"thread_state:{thread_id}",
            lambda: self.durable.update_thread_state(thread_id, snapshot),
        )

    def record_checkpoint(self, checkpoint: Checkpoint) -> None:
        self.cache.record_checkpoint(checkpoint)
        self.outbound.send(
            f"checkpoint:{checkpoint.thread_id}:{checkpoint.turn_number}",
            lambda: self.durable.record_checkpoint(checkpoint),
        )

    def record_turn(self, execution_id: str, thread_id: str, turn: dict[str, Any]) -> None:
        self.outbound.send(
            f"turn:{execution_id}:{turn.get('turn_number')}",
            lambda: self.durable.record_turn(execution_id, thread_id, turn),
        )
