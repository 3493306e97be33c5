from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TurnStatus(str, Enum):
    CONTINUE = "continue"
    STUCK = "stuck"
    COMPLETE = "complete"
    NEEDS_CLARIFICATION = "needs_clarification"


class InterruptType(str, Enum):
    STOP = "STOP"
    CLARIFY = "CLARIFY"
    RETRY = "RETRY"
    CONTINUE = "CONTINUE"
    WRONG = "WRONG"
    ESCALATE = "ESCALATE"


class LoopState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    STUCK = "stuck"
    ABORTED = "aborted"
    MAX_TURNS_REACHED = "max_turns_reached"
    FAILED = "failed"
    BUSY = "busy"


class TaskComplexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str

    def to_message(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class ToolOutcome:
    call_id: str
    tool: str
    args: dict[str, Any]
    result: Any
    success: bool


@dataclass(frozen=True)
class TestResult:
    __test__ = False

    name: str
    passed: bool


@dataclass(frozen=True)
class EscalationEvent:
    turn_number: int
    from_model: str
    to_model: str
    reason: str
    timestamp: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "EscalationEvent":
        return cls(
            turn_number=int(payload.get("turn_number", 0)),
            from_model=str(payload.get("from_model", "")),
            to_model=str(payload.get("to_model", "")),
            reason=str(payload.get("reason", "")),
            timestamp=str(payload.get("timestamp") or utcnow_iso()),
        )


@dataclass(frozen=True)
class InterruptCommand:
    type: InterruptType
    message: str | None = None
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "message": self.message, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "InterruptCommand":
        return cls(
            type=InterruptType(str(payload["type"]).upper()),
            message=payload.get("message") or None,
            timestamp=str(payload.get("timestamp") or utcnow_iso()),
        )


@dataclass(frozen=True)
class ExecutionTurn:
    turn_number: int
    input: str
    tool_calls: tuple[ToolCall, ...]
    tool_results: tuple[ToolOutcome, ...]
    response: str
    confidence: int
    status: TurnStatus
    model_used: str
    input_tokens: int | None = None
    output_tokens: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "turn_number": self.turn_number,
            "input": self.input,
            "tool_calls": [call.to_message() for call in self.tool_calls],
            "tool_results": [
                {"tool": outcome.tool, "result": outcome.result, "success": outcome.success}
                for outcome in self.tool_results
            ],
            "response": self.response,
            "confidence": self.confidence,
            "status": self.status.value,
            "model_used": self.model_used,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }


@dataclass
class ExecutionState:
    turn_number: int = 0
    confidence_score: int = 80
    last_error: str | None = None
    error_count: int = 0
    same_error_count: int = 0
    no_progress_turns: int = 0
    file_changes: list[str] = field(default_factory=list)
    test_results: list[TestResult] = field(default_factory=list)
    user_interrupts: list[InterruptCommand] = field(default_factory=list)
    user_correction_count: int = 0
    escalations: list[EscalationEvent] = field(default_factory=list)

    def advance_turn(self) -> int:
        self.turn_number += 1
        return self.turn_number

    def record_error(self, signature: str) -> None:
        self.error_count += 1
        if self.last_error == signature:
            self.same_error_count += 1
        else:
            self.last_error = signature
            self.same_error_count = 1

    def add_file_change(self, path: str) -> bool:
        if path in self.file_changes:
            return False
        self.file_changes.append(path)
        return True

    def snapshot(self) -> dict[str, Any]:
        return {
            "turn_number": self.turn_number,
            "confidence_score": self.confidence_score,
            "last_error": self.last_error,
            "error_count": self.error_count,
            "same_error_count": self.same_error_count,
            "no_progress_turns": self.no_progress_turns,
            "file_changes": list(self.file_changes),
            "test_results": [asdict(result) for result in self.test_results],
            "user_interrupts": [interrupt.to_dict() for interrupt in self.user_interrupts],
            "user_correction_count": self.user_correction_count,
            "escalations": [asdict(event) for event in self.escalations],
        }


@dataclass(frozen=True)
class Reflection:
    timestamp: str
    score: int
    what_worked: str
    what_failed: str
    root_cause: str
    strategy_change: str
    key_insight: str

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Reflection":
        return cls(
            timestamp=str(payload.get("timestamp") or utcnow_iso()),
            score=int(payload.get("score", 0)),
            what_worked=str(payload.get("what_worked") or "N/A"),
            what_failed=str(payload.get("what_failed") or "N/A"),
            root_cause=str(payload.get("root_cause") or "N/A"),
            strategy_change=str(payload.get("strategy_change") or "N/A"),
            key_insight=str(payload.get("key_insight") or "N/A"),
        )


@dataclass(frozen=True)
class TrajectorySummary:
    total_turns: int
    tools_used: list[str]
    files_modified: list[str]
    errors_encountered: int
    completion_status: str  # 'complete', 'incomplete' or 'failed'


@dataclass(frozen=True)
class TrajectoryEvaluation:
    score: int
    reasoning: str
    has_progress: bool
    issues: list[str]
    suggestions: list[str]
    task_completion: int
    code_quality: int
    efficiency: int


@dataclass
class SessionRecord:
    thread_id: str
    confidence_score: int = 80
    current_turn: int = 0
    model: str | None = None
    state: str = "idle"
    reflections: list[Reflection] = field(default_factory=list)
    key_insights: list[str] = field(default_factory=list)
    last_trajectory_summary: str | None = None
    escalations: list[EscalationEvent] = field(default_factory=list)
    sub_topics: dict[str, dict[str, Any]] = field(default_factory=dict)
    is_new: bool = False
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "confidence_score": self.confidence_score,
            "current_turn": self.current_turn,
            "model": self.model,
            "state": self.state,
            "reflections": [asdict(reflection) for reflection in self.reflections],
            "key_insights": list(self.key_insights),
            "last_trajectory_summary": self.last_trajectory_summary,
            "escalations": [asdict(event) for event in self.escalations],
            "sub_topics": dict(self.sub_topics),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SessionRecord":
        reflections = payload.get("reflections")
        escalations = payload.get("escalations")
        sub_topics = payload.get("sub_topics")
        key_insights = payload.get("key_insights")
        return cls(
            thread_id=str(payload["thread_id"]),
            confidence_score=int(payload.get("confidence_score", 80)),
            current_turn=int(payload.get("current_turn", 0)),
            model=payload.get("model") or None,
            state=str(payload.get("state") or "idle"),
            reflections=[
                Reflection.from_dict(item) for item in reflections if isinstance(item, dict)
            ]
            if isinstance(reflections, list)
            else [],
            key_insights=[str(item) for item in key_insights] if isinstance(key_insights, list) else [],
            last_trajectory_summary=payload.get("last_trajectory_summary") or None,
            escalations=[
                EscalationEvent.from_dict(item) for item in escalations if isinstance(item, dict)
            ]
            if isinstance(escalations, list)
            else [],
            sub_topics=sub_topics if isinstance(sub_topics, dict) else {},
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
        )
