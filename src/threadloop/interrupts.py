from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from threadloop.models import ExecutionState, InterruptCommand, InterruptType
from threadloop.redis_client import RedisConnection

logger = logging.getLogger(__name__)

INTERRUPT_KEY_PREFIX = "interrupts:"

EMOJI_TO_INTERRUPT: dict[str, InterruptType] = {
    "\U0001F6D1": InterruptType.STOP,
    "\U0001F4AC": InterruptType.CLARIFY,
    "\U0001F504": InterruptType.RETRY,
    "✅": InterruptType.CONTINUE,
    "❌": InterruptType.WRONG,
    "\U0001F680": InterruptType.ESCALATE,
}

COMMAND_KEYWORDS: dict[str, InterruptType] = {
    "STOP": InterruptType.STOP,
    "WAIT": InterruptType.STOP,
    "CLARIFY": InterruptType.CLARIFY,
    "RETRY": InterruptType.RETRY,
    "CONTINUE": InterruptType.CONTINUE,
    "WRONG": InterruptType.WRONG,
    "ESCALATE": InterruptType.ESCALATE,
}

# Lower value wins when several interrupts are pending.
PRIORITY: dict[InterruptType, int] = {
    InterruptType.STOP: 0,
    InterruptType.CLARIFY: 1,
    InterruptType.WRONG: 2,
    InterruptType.RETRY: 3,
    InterruptType.ESCALATE: 4,
    InterruptType.CONTINUE: 5,
}


class InterruptAction(str, Enum):
    STOP = "stop"
    CLARIFY = "clarify"
    RETRY = "retry"
    CONTINUE = "continue"


@dataclass(frozen=True)
class InterruptOutcome:
    action: InterruptAction
    message: str


def parse_reaction(emoji: str) -> InterruptCommand | None:
    interrupt_type = EMOJI_TO_INTERRUPT.get(emoji.strip())
    if interrupt_type is None:
        return None
    return InterruptCommand(type=interrupt_type)


def parse_interrupt_command(content: str) -> InterruptCommand | None:
    stripped = content.strip()
    upper = stripped.upper()
    for keyword, interrupt_type in COMMAND_KEYWORDS.items():
        if upper.startswith(keyword):
            message = stripped[len(keyword):].lstrip(" \t:-").strip()
            return InterruptCommand(type=interrupt_type, message=message or None)
    return None


def parse_interrupt(text: str) -> InterruptCommand | None:
    """Accepts either a reaction emoji or a keyword command."""
    return parse_reaction(text) or parse_interrupt_command(text)


def _pop_last_assistant(history: list[dict[str, Any]]) -> bool:
    # Tool results belong to the assistant message that requested them.
    end = len(history)
    while end > 0 and history[end - 1].get("role") == "tool":
        end -= 1
    if end == 0 or history[end - 1].get("role") != "assistant":
        return False
    del history[end - 1 :]
    return True


def record_interrupt(state: ExecutionState, interrupt: InterruptCommand) -> None:
    state.user_interrupts.append(interrupt)
    logger.debug("Recorded interrupt: %s", interrupt.type.value)


def handle_interrupt(
    interrupt: InterruptCommand,
    state: ExecutionState,
    history: list[dict[str, Any]],
) -> InterruptOutcome:
    record_interrupt(state, interrupt)
    logger.info("Handling interrupt: %s", interrupt.type.value)

    if interrupt.type == InterruptType.STOP:
        return InterruptOutcome(
            InterruptAction.STOP, "Execution stopped by user request. Progress has been saved."
        )
    if interrupt.type == InterruptType.CLARIFY:
        if interrupt.message:
            return InterruptOutcome(InterruptAction.CLARIFY, interrupt.message)
        return InterruptOutcome(
            InterruptAction.STOP,
            "Paused for user clarification. Please provide additional context.",
        )
    if interrupt.type == InterruptType.RETRY:
        if _pop_last_assistant(history):
            logger.info("Removed last assistant message, retrying with a different approach")
        state.same_error_count = max(0, state.same_error_count - 1)
        state.no_progress_turns = max(0, state.no_progress_turns - 1)
        return InterruptOutcome(
            InterruptAction.RETRY, "Retrying last turn with a different approach."
        )
    if interrupt.type == InterruptType.WRONG:
        state.user_correction_count += 1
        logger.warning(
            "User marked approach as wrong (correction count: %s)", state.user_correction_count
        )
        if interrupt.message:
            correction = f"The current approach is incorrect. {interrupt.message}"
        else:
            correction = "The current approach is incorrect. Please try a different strategy."
        return InterruptOutcome(InterruptAction.CLARIFY, correction)
    if interrupt.type == InterruptType.ESCALATE:
        logger.info("User requested immediate model escalation")
        return InterruptOutcome(
            InterruptAction.CONTINUE, "Escalating to more capable model as requested."
        )
    logger.info("User overriding low confidence, continuing execution")
    return InterruptOutcome(
        InterruptAction.CONTINUE, "Continuing execution as requested (confidence override)."
    )


def _pick(pending: list[InterruptCommand]) -> int | None:
    if not pending:
        return None
    best = min(range(len(pending)), key=lambda index: (PRIORITY[pending[index].type], index))
    return best


class InterruptInbox(Protocol):
    def submit(self, thread_id: str, interrupt: InterruptCommand) -> None:
        ...

    def poll(self, thread_id: str) -> InterruptCommand | None:
        ...

    def clear(self, thread_id: str) -> None:
        ...


class LocalInterruptInbox:
    def __init__(self) -> None:
        self._pending: dict[str, deque[InterruptCommand]] = {}
        self._guard = threading.Lock()

    def submit(self, thread_id: str, interrupt: InterruptCommand) -> None:
        with self._guard:
            self._pending.setdefault(thread_id, deque()).append(interrupt)

    def poll(self, thread_id: str) -> InterruptCommand | None:
        with self._guard:
            pending = self._pending.get(thread_id)
            if not pending:
                return None
            items = list(pending)
            index = _pick(items)
            assert index is not None
            chosen = items.pop(index)
            if items:
                self._pending[thread_id] = deque(items)
            else:
                del self._pending[thread_id]
            return chosen

    def pending(self, thread_id: str) -> list[InterruptCommand]:
        with self._guard:
            return list(self._pending.get(thread_id, ()))

    def clear(self, thread_id: str) -> None:
        with self._guard:
            self._pending.pop(thread_id, None)


class RedisInterruptInbox:
    """
    Interrupts stored in the Redis list ``interrupts:{thread}`` so another
    process can signal a running execution. Falls back to a local inbox when
    Redis is unavailable.
    """

    def __init__(
        self,
        connection: RedisConnection,
        fallback: LocalInterruptInbox | None = None,
        ttl_s: int | None = None,
    ) -> None:
        self.connection = connection
        self.fallback = fallback or LocalInterruptInbox()
        self.ttl_s = ttl_s or connection.settings.abort_ttl_s

    def submit(self, thread_id: str, interrupt: InterruptCommand) -> None:
        key = f"{INTERRUPT_KEY_PREFIX}{thread_id}"
        raw = json.dumps(interrupt.to_dict())

        def _push(client: Any) -> None:
            client.rpush(key, raw)
            client.expire(key, self.ttl_s)

        self.connection.with_fallback(
            _push, lambda: self.fallback.submit(thread_id, interrupt), "submit_interrupt"
        )

    def poll(self, thread_id: str) -> InterruptCommand | None:
        key = f"{INTERRUPT_KEY_PREFIX}{thread_id}"

        def _poll(client: Any) -> InterruptCommand | None:
            raw_items = client.lrange(key, 0, -1) or []
            parsed: list[tuple[str, InterruptCommand]] = []
            for raw in raw_items:
                try:
                    parsed.append((raw, InterruptCommand.from_dict(json.loads(raw))))
                except (ValueError, KeyError, TypeError):
                    logger.warning("Dropping malformed interrupt for %s: %s", thread_id, raw)
                    client.lrem(key, 1, raw)
            # Interrupts queued locally while Redis was down still count.
            candidates = [command for _, command in parsed] + self.fallback.pending(thread_id)
            index = _pick(candidates)
            if index is None:
                return None
            if index >= len(parsed):
                return self.fallback.poll(thread_id)
            client.lrem(key, 1, parsed[index][0])
            return candidates[index]

        return self.connection.with_fallback(
            _poll, lambda: self.fallback.poll(thread_id), "poll_interrupt"
        )

    def clear(self, thread_id: str) -> None:
        key = f"{INTERRUPT_KEY_PREFIX}{thread_id}"
        self.connection.best_effort(lambda client: client.delete(key), "clear_interrupts")
        self.fallback.clear(thread_id)
