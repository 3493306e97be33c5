"""
Progress notifications for running executions.

Events are fanned out to sinks through an explicit dispatch table held by
``Notifier``. Delivery always runs on the outbound queue, so a slow or failing
sink never stalls the turn loop.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Protocol

from rich.console import Console
from rich.markup import escape

from threadloop.confidence import confidence_level
from threadloop.models import utcnow_iso
from threadloop.outbound import OutboundQueue
from threadloop.run_logs import append_run_log

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    EXECUTION_STARTED = "execution_started"
    TURN_START = "turn_start"
    TURN_COMPLETE = "turn_complete"
    TOOL_EXECUTION = "tool_execution"
    CHECKPOINT = "checkpoint"
    ESCALATION = "escalation"
    CLARIFICATION_REQUEST = "clarification_request"
    REFLECTION = "reflection"
    MESSAGE = "message"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_ABORTED = "execution_aborted"


@dataclass(frozen=True)
class ProgressEvent:
    type: EventType
    thread_id: str
    execution_id: str
    turn_number: int = 0
    confidence: int | None = None
    model: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


class ProgressSink(Protocol):
    def deliver(self, event: ProgressEvent) -> None:
        ...


class Notifier:
    def __init__(
        self,
        outbound: OutboundQueue,
        routes: dict[EventType, list[ProgressSink]] | None = None,
    ) -> None:
        self.outbound = outbound
        self._routes: dict[EventType, list[ProgressSink]] = {
            event_type: list(sinks) for event_type, sinks in (routes or {}).items()
        }

    def subscribe(self, sink: ProgressSink, event_types: Iterable[EventType] | None = None) -> None:
        for event_type in event_types or list(EventType):
            self._routes.setdefault(event_type, []).append(sink)

    def sinks_for(self, event_type: EventType) -> list[ProgressSink]:
        return list(self._routes.get(event_type, []))

    def emit(self, event: ProgressEvent) -> None:
        for sink in self.sinks_for(event.type):
            self.outbound.send(
                f"{event.type.value}:{type(sink).__name__}",
                lambda sink=sink: sink.deliver(event),
            )


class RunLogSink:
    """Appends every event to the JSONL run log."""

    def __init__(self, logs_dir: Path) -> None:
        self.logs_dir = logs_dir

    def deliver(self, event: ProgressEvent) -> None:
        append_run_log(self.logs_dir, event.to_dict())


class ConsoleProgressSink:
    def __init__(self, console: Console | None = None, max_turns: int | None = None) -> None:
        self.console = console or Console()
        self.max_turns = max_turns

    def deliver(self, event: ProgressEvent) -> None:
        text = render_event(event, self.max_turns)
        if text:
            self.console.print(text)


def _confidence_style(confidence: int) -> str:
    if confidence > 70:
        return "green"
    if confidence > 50:
        return "yellow"
    return "red"


def _args_preview(args: Any, limit: int = 100) -> str:
    if not args:
        return "No args"
    raw = json.dumps(args, default=str)
    if len(raw) > limit:
        return raw[:limit] + "..."
    return raw


def render_event(event: ProgressEvent, max_turns: int | None = None) -> str | None:
    payload = event.payload
    confidence = event.confidence if event.confidence is not None else 0
    if event.type == EventType.TURN_START:
        total = payload.get("max_turns") or max_turns or "?"
        return (
            f"[bold blue]Turn {event.turn_number}/{total}[/bold blue] "
            f"confidence={confidence}% model={escape(event.model or 'unknown')}"
        )
    if event.type == EventType.TOOL_EXECUTION:
        marker = "ok" if payload.get("success", True) else "failed"
        return (
            f"[yellow]tool[/yellow] {escape(str(payload.get('tool')))} "
            f"[dim]{escape(_args_preview(payload.get('args')))}[/dim] ({marker})"
        )
    if event.type == EventType.TURN_COMPLETE:
        style = _confidence_style(confidence)
        return (
            f"[{style}]Turn {event.turn_number} complete[/{style}] "
            f"confidence={confidence}% files={payload.get('files_modified', 0)} "
            f"status={payload.get('status', 'unknown')}"
        )
    if event.type == EventType.CHECKPOINT:
        return escape(
            format_checkpoint_message(
                event.turn_number,
                int(payload.get("max_turns") or max_turns or 0),
                confidence,
                list(payload.get("files") or []),
            )
        )
    if event.type == EventType.ESCALATION:
        return (
            f"[magenta]Model escalation[/magenta] {escape(str(payload.get('from_model')))} -> "
            f"{escape(str(payload.get('to_model')))}: {escape(str(payload.get('reason')))}"
        )
    if event.type == EventType.CLARIFICATION_REQUEST:
        return escape(
            format_clarification_request(
                str(payload.get("reason") or "Need your help to proceed"),
                confidence,
                event.turn_number,
            )
        )
    if event.type == EventType.REFLECTION:
        return (
            f"[cyan]Reflection[/cyan] score={payload.get('score')} "
            f"insight={escape(str(payload.get('key_insight')))}"
        )
    if event.type == EventType.MESSAGE:
        return escape(str(payload.get("text") or ""))
    if event.type in {EventType.EXECUTION_COMPLETED, EventType.EXECUTION_ABORTED}:
        return f"[bold]{event.type.value}[/bold] state={payload.get('state')} turns={event.turn_number}"
    return None


def _file_list(files: list[str], limit: int = 5) -> str:
    if not files:
        return "No files modified yet"
    shown = ", ".join(files[:limit])
    if len(files) > limit:
        shown += f", +{len(files) - limit} more"
    return shown


def format_checkpoint_message(
    turn_number: int, max_turns: int, confidence: int, files: list[str]
) -> str:
    return "\n".join(
        [
            f"Checkpoint {turn_number}/{max_turns}",
            f"Progress: {len(files)} files modified",
            f"Files: {_file_list(files)}",
            f"Confidence: {confidence}% ({confidence_level(confidence)})",
        ]
    )


def format_clarification_request(reason: str, confidence: int, turn_number: int) -> str:
    return "\n".join(
        [
            f"Need your help (turn {turn_number})",
            "",
            "I'm having trouble and need clarification:",
            reason,
            "",
            f"Current confidence: {confidence}%",
            "",
            "Reply with a keyword or react:",
            "STOP / \U0001F6D1 stop execution",
            "CLARIFY <text> / \U0001F4AC provide clarification",
            "RETRY / \U0001F504 retry with a different approach",
            "CONTINUE / ✅ continue anyway",
        ]
    )


def format_completion_summary(turns: int, files: list[str], confidence: int) -> str:
    return "\n".join(
        [
            f"Task complete after {turns} turns.",
            f"Files: {_file_list(files, limit=10)}",
            f"Final confidence: {confidence}%",
        ]
    )


def format_partial_summary(turns: int, max_turns: int, files: list[str], confidence: int) -> str:
    return "\n".join(
        [
            f"Reached the turn limit ({turns}/{max_turns}); the task is only partially complete.",
            f"Files touched so far: {_file_list(files, limit=10)}",
            f"Final confidence: {confidence}%",
            "Reply to continue from here in a new execution.",
        ]
    )


def format_failure_summary(turns: int, files: list[str], reason: str) -> str:
    return "\n".join(
        [
            f"Execution failed after {turns} turns: {reason}",
            f"Files touched: {_file_list(files, limit=10)}",
            "Please clarify the task or try again.",
        ]
    )


def format_aborted_summary(turns: int, files: list[str]) -> str:
    return "\n".join(
        [
            f"Execution stopped at turn {turns}.",
            f"Files touched: {_file_list(files, limit=10)}",
        ]
    )


def format_busy_notice(thread_id: str, holder: str | None) -> str:
    suffix = f" (execution {holder})" if holder else ""
    return (
        f"Another execution is already running in thread {thread_id}{suffix}. "
        "Wait for it to finish or send STOP to abort it."
    )
