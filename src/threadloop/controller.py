from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx

from threadloop.config import EngineSettings
from threadloop.confidence import LOW_CONFIDENCE_THRESHOLD, calculate_confidence, is_stuck
from threadloop.detection import HeuristicProgressDetector, ProgressDetector
from threadloop.escalation import (
    USER_ESCALATION_REASON,
    ModelLadder,
    check_escalation_triggers,
    reset_escalation_pressure,
)
from threadloop.interrupts import InterruptAction, InterruptInbox, handle_interrupt
from threadloop.llm import ChatCompletion, LLMClient, LLMResponseError
from threadloop.locks import LockManager
from threadloop.models import (
    EscalationEvent,
    ExecutionState,
    ExecutionTurn,
    InterruptCommand,
    InterruptType,
    LoopState,
    Reflection,
    SessionRecord,
    TaskComplexity,
    ToolOutcome,
    TrajectoryEvaluation,
    TurnStatus,
)
from threadloop.progress import (
    EventType,
    Notifier,
    ProgressEvent,
    format_aborted_summary,
    format_busy_notice,
    format_completion_summary,
    format_failure_summary,
    format_partial_summary,
)
from threadloop.reflexion import (
    TrajectoryEvaluator,
    add_key_insight,
    add_reflection_to_history,
    format_key_insights_for_prompt,
    format_reflections_for_prompt,
    generate_reflection,
    summary_text,
)
from threadloop.state import Checkpoint, StateStore
from threadloop.tools import ToolRunner, tool_message

logger = logging.getLogger(__name__)

CONFIDENCE_MARKER = re.compile(r"confidence[:\s]+(\d+)", re.IGNORECASE)
STATUS_MARKER = re.compile(
    r"status\s*[:=]\s*(continue|stuck|complete|needs_clarification)", re.IGNORECASE
)
DEFAULT_SELF_CONFIDENCE = 70
DESIGN_ROLE = "architect"


def parse_self_confidence(text: str) -> int:
    match = CONFIDENCE_MARKER.search(text)
    if not match:
        return DEFAULT_SELF_CONFIDENCE
    return max(0, min(100, int(match.group(1))))


def parse_turn_status(text: str) -> TurnStatus:
    explicit = STATUS_MARKER.search(text)
    if explicit:
        return TurnStatus(explicit.group(1).lower())
    lower = text.lower()
    if re.search(r"\b(complete|completed|done)\b", lower):
        return TurnStatus.COMPLETE
    if re.search(r"\bstuck\b|\bneed help\b", lower):
        return TurnStatus.STUCK
    if "clarif" in lower:
        return TurnStatus.NEEDS_CLARIFICATION
    return TurnStatus.CONTINUE


def build_turn(
    completion: ChatCompletion,
    turn_number: int,
    model: str,
    input_text: str,
    outcomes: list[ToolOutcome],
) -> ExecutionTurn:
    return ExecutionTurn(
        turn_number=turn_number,
        input=input_text,
        tool_calls=tuple(completion.tool_calls),
        tool_results=tuple(outcomes),
        response=completion.content,
        confidence=parse_self_confidence(completion.content),
        status=parse_turn_status(completion.content),
        model_used=model,
        input_tokens=completion.prompt_tokens,
        output_tokens=completion.completion_tokens,
    )


def build_system_prompt(request: "ExecutionRequest", session: SessionRecord) -> str:
    sections = [
        request.system_prompt
        or "You are an autonomous engineering agent working on a task across many turns.",
        "",
        "Use the available tools to make concrete progress each turn.",
        "Mark every file you create or change as <<path>>.",
        "End every reply with two lines:",
        "Confidence: <0-100>",
        "Status: continue | stuck | complete | needs_clarification",
    ]
    if not session.is_new:
        sections.extend(
            [
                "",
                "## Previous reflections",
                format_reflections_for_prompt(session.reflections),
                "",
                "## Key insights",
                format_key_insights_for_prompt(session.key_insights),
            ]
        )
        if session.last_trajectory_summary:
            sections.extend(["", "## Last execution", session.last_trajectory_summary])
    return "\n".join(sections)


def _assistant_message(completion: ChatCompletion) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": completion.content}
    if completion.tool_calls:
        message["tool_calls"] = [call.to_message() for call in completion.tool_calls]
    return message


@dataclass(frozen=True)
class ExecutionRequest:
    thread_id: str
    task: str
    agent_role: str = "coding"
    complexity: TaskComplexity = TaskComplexity.MEDIUM
    estimated_turns: int | None = None
    model: str | None = None
    max_turns: int | None = None
    checkpoint_interval: int | None = None
    system_prompt: str | None = None
    execution_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class ExecutionResult:
    execution_id: str
    thread_id: str
    state: LoopState
    message: str
    final_model: str | None = None
    final_response: str = ""
    turns: list[ExecutionTurn] = field(default_factory=list)
    execution_state: ExecutionState | None = None
    evaluation: TrajectoryEvaluation | None = None
    reflection: Reflection | None = None
    checkpoints: int = 0
    last_interrupt: InterruptCommand | None = None
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def success(self) -> bool:
        return self.state == LoopState.COMPLETED

    @property
    def final_confidence(self) -> int | None:
        if self.execution_state is None:
            return None
        return self.execution_state.confidence_score


@dataclass
class _Run:
    request: ExecutionRequest
    session: SessionRecord
    state: ExecutionState
    model: str
    max_turns: int
    checkpoint_interval: int
    history: list[dict[str, Any]]
    tools: list[dict[str, Any]]
    loop_state: LoopState = LoopState.STARTING
    turns: list[ExecutionTurn] = field(default_factory=list)
    consecutive_low: int = 0
    consecutive_failures: int = 0
    checkpoints: int = 0
    failure_reason: str | None = None
    message: str | None = None
    last_interrupt: InterruptCommand | None = None
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def execution_id(self) -> str:
        return self.request.execution_id

    @property
    def thread_id(self) -> str:
        return self.request.thread_id


class LoopController:
    """
    Drives one execution for a thread from lock acquisition to reflection.

    Each turn: lock refresh and abort check, interrupts, model call, tool
    execution, state update, confidence, completion, escalation, checkpoint.
    The lock is released in every exit path.
    """

    def __init__(
        self,
        llm: LLMClient,
        tool_runner: ToolRunner,
        locks: LockManager,
        store: StateStore,
        notifier: Notifier,
        inbox: InterruptInbox,
        ladder: ModelLadder | None = None,
        settings: EngineSettings | None = None,
        detector: ProgressDetector | None = None,
        evaluator: TrajectoryEvaluator | None = None,
        reflection_llm: LLMClient | None = None,
        tool_catalog: list[dict[str, Any]] | None = None,
    ) -> None:
        self.llm = llm
        self.tool_runner = tool_runner
        self.locks = locks
        self.store = store
        self.notifier = notifier
        self.inbox = inbox
        self.ladder = ladder or ModelLadder()
        self.settings = settings or EngineSettings()
        self.detector = detector or HeuristicProgressDetector()
        self.evaluator = evaluator or TrajectoryEvaluator()
        self.reflection_llm = reflection_llm or llm
        self.tool_catalog = tool_catalog

    def run(self, request: ExecutionRequest) -> ExecutionResult:
        if not self.locks.acquire(request.thread_id, request.execution_id):
            holder = self.locks.is_held(request.thread_id)
            message = format_busy_notice(request.thread_id, holder)
            logger.warning("Thread %s busy (held by %s)", request.thread_id, holder)
            self._emit_raw(request, EventType.MESSAGE, payload={"text": message})
            return ExecutionResult(
                execution_id=request.execution_id,
                thread_id=request.thread_id,
                state=LoopState.BUSY,
                message=message,
            )
        try:
            return self._run_locked(request)
        finally:
            self.locks.release(request.thread_id, request.execution_id)
            logger.info("Released lock for thread %s", request.thread_id)

    # -- setup -----------------------------------------------------------

    def _initial_model(self, request: ExecutionRequest) -> str:
        if request.model:
            return request.model
        if request.agent_role == DESIGN_ROLE:
            return self.settings.design_model
        return self.settings.default_model

    def _load_tools(self) -> list[dict[str, Any]]:
        if self.tool_catalog is not None:
            return list(self.tool_catalog)
        try:
            tools = self.llm.fetch_tools()
        except (httpx.HTTPError, LLMResponseError) as exc:
            logger.warning("Tool catalog unavailable, continuing without tools: %s", exc)
            return []
        logger.info("Loaded %s tools", len(tools))
        return tools

    def _start(self, request: ExecutionRequest) -> _Run:
        model = self._initial_model(request)
        session = self.store.get_or_create_session(
            request.thread_id, self.settings.initial_confidence, model
        )
        state = ExecutionState(confidence_score=session.confidence_score)
        max_turns = request.max_turns or self.settings.max_turns_for(
            request.complexity, request.estimated_turns
        )
        interval = request.checkpoint_interval or self.settings.checkpoint_interval_for(
            request.complexity
        )
        history = [
            {"role": "system", "content": build_system_prompt(request, session)},
            {"role": "user", "content": request.task},
        ]
        return _Run(
            request=request,
            session=session,
            state=state,
            model=model,
            max_turns=max_turns,
            checkpoint_interval=max(1, interval),
            history=history,
            tools=self._load_tools(),
        )

    # -- loop ------------------------------------------------------------

    def _run_locked(self, request: ExecutionRequest) -> ExecutionResult:
        run = self._start(request)
        run.loop_state = LoopState.RUNNING
        logger.info(
            "Starting execution %s in thread %s (model=%s, max_turns=%s, checkpoint every %s)",
            run.execution_id,
            run.thread_id,
            run.model,
            run.max_turns,
            run.checkpoint_interval,
        )
        self.store.update_thread_state(
            run.thread_id,
            {
                "state": LoopState.RUNNING.value,
                "turn": 0,
                "confidence": run.state.confidence_score,
                "model": run.model,
            },
        )
        self._emit(run, EventType.EXECUTION_STARTED, task=request.task, max_turns=run.max_turns)

        while run.state.turn_number < run.max_turns:
            if not self._turn(run):
                break
        if run.loop_state == LoopState.RUNNING:
            run.loop_state = LoopState.MAX_TURNS_REACHED
            logger.info("Max turns (%s) reached for %s", run.max_turns, run.execution_id)

        return self._finish(run)

    def _turn(self, run: _Run) -> bool:
        """Runs one turn. Returns False once the execution reached a terminal state."""
        state = run.state
        turn_number = state.advance_turn()
        self.locks.update_turn(run.thread_id, turn_number)

        if not self.locks.refresh(run.thread_id, run.execution_id):
            logger.error("Lost execution lock for thread %s", run.thread_id)
            run.loop_state = LoopState.ABORTED
            run.failure_reason = "execution lock lost"
            return False
        if self.locks.is_abort_requested(run.thread_id):
            logger.info("Abort requested for thread %s", run.thread_id)
            self._checkpoint(run)
            run.loop_state = LoopState.ABORTED
            return False

        self._emit(run, EventType.TURN_START, max_turns=run.max_turns)

        interrupt = self.inbox.poll(run.thread_id)
        if interrupt is not None and not self._apply_interrupt(run, interrupt):
            return False

        try:
            return self._respond(run, turn_number)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Turn %s failed outside the model call", turn_number)
            return self._turn_failed(run, "turn", exc)

    def _respond(self, run: _Run, turn_number: int) -> bool:
        """Model call, tools, state update and the decisions that follow one reply."""
        state = run.state
        input_text = str(run.history[-1].get("content") or "")
        try:
            completion = self.llm.complete(
                run.model,
                run.history,
                tools=run.tools or None,
                tool_choice="auto" if run.tools else None,
            )
        except (httpx.HTTPError, LLMResponseError) as exc:
            return self._turn_failed(run, "model_call", exc)
        if completion.prompt_tokens:
            run.input_tokens += completion.prompt_tokens
        if completion.completion_tokens:
            run.output_tokens += completion.completion_tokens

        outcomes = self.tool_runner.run(
            completion.tool_calls,
            on_result=lambda outcome: self._emit(
                run,
                EventType.TOOL_EXECUTION,
                tool=outcome.tool,
                args=outcome.args,
                success=outcome.success,
            ),
        )
        run.history.append(_assistant_message(completion))
        for call, outcome in zip(completion.tool_calls, outcomes):
            run.history.append(tool_message(call, outcome.result))

        turn = build_turn(completion, turn_number, run.model, input_text, outcomes)
        self._update_state(run, turn)
        run.turns.append(turn)
        self.store.record_turn(
            run.execution_id,
            run.thread_id,
            {**turn.to_dict(), "confidence": state.confidence_score},
        )
        self.store.update_thread_state(
            run.thread_id,
            {
                "state": LoopState.RUNNING.value,
                "turn": turn_number,
                "confidence": state.confidence_score,
                "model": run.model,
            },
        )
        run.consecutive_failures = 0
        self._emit(
            run,
            EventType.TURN_COMPLETE,
            status=turn.status.value,
            files_modified=len(state.file_changes),
        )

        if turn.status == TurnStatus.COMPLETE:
            run.loop_state = LoopState.COMPLETED
            logger.info("Task complete at turn %s", turn_number)
            return False
        if turn.status == TurnStatus.NEEDS_CLARIFICATION:
            self._emit(run, EventType.CLARIFICATION_REQUEST, reason=turn.response)
            run.loop_state = LoopState.STUCK
            return False

        decision = check_escalation_triggers(
            state, turn, run.model, run.consecutive_low, self.ladder
        )
        if decision.should_escalate and decision.suggested_model:
            self._escalate(run, decision.suggested_model, decision.reason)
        elif decision.triggered:
            if is_stuck(state.confidence_score, run.consecutive_low):
                reason = (
                    f"Confidence critically low ({state.confidence_score}%) for "
                    f"{run.consecutive_low} turns at the strongest model."
                )
            else:
                reason = decision.reason
            self._emit(run, EventType.CLARIFICATION_REQUEST, reason=reason)

        self._maybe_checkpoint(run)
        return True

    def _apply_interrupt(self, run: _Run, interrupt: InterruptCommand) -> bool:
        run.last_interrupt = interrupt
        outcome = handle_interrupt(interrupt, run.state, run.history)
        if outcome.action == InterruptAction.STOP:
            self._checkpoint(run)
            run.message = outcome.message
            if interrupt.type == InterruptType.STOP:
                run.loop_state = LoopState.ABORTED
            else:
                run.loop_state = LoopState.STUCK
                self._emit(run, EventType.CLARIFICATION_REQUEST, reason=outcome.message)
            return False
        if outcome.action == InterruptAction.CLARIFY:
            run.history.append({"role": "user", "content": outcome.message})
        elif interrupt.type == InterruptType.ESCALATE:
            if self.ladder.is_at_max_escalation(run.model):
                self._emit(
                    run,
                    EventType.CLARIFICATION_REQUEST,
                    reason=f"Already at maximum model capability ({run.model})",
                )
            else:
                self._escalate(run, self.ladder.next_model(run.model), USER_ESCALATION_REASON)
        return True

    def _turn_failed(self, run: _Run, stage: str, exc: Exception) -> bool:
        """Counts a failed turn. The execution fails once the streak hits the ceiling."""
        run.consecutive_failures += 1
        signature = f"{stage}: {type(exc).__name__}: {exc}"
        run.state.record_error(signature)
        logger.error(
            "Turn %s failed in %s (%s consecutive): %s",
            run.state.turn_number,
            stage,
            run.consecutive_failures,
            exc,
        )
        if run.consecutive_failures >= self.settings.max_consecutive_failures:
            run.loop_state = LoopState.FAILED
            run.failure_reason = f"{run.consecutive_failures} consecutive {stage} failures: {exc}"
            return False
        run.history.append(
            {
                "role": "user",
                "content": (
                    f"The previous step failed with an error: {exc}. "
                    "Continue the task from where you left off."
                ),
            }
        )
        self._maybe_checkpoint(run)
        return True

    def _update_state(self, run: _Run, turn: ExecutionTurn) -> None:
        state = run.state
        signal = self.detector.detect(turn)
        if signal.error:
            state.record_error(signal.error)
        for path in signal.files:
            state.add_file_change(path)
        state.test_results.extend(signal.test_results)
        if signal.has_progress:
            state.no_progress_turns = 0
        else:
            state.no_progress_turns += 1

        state.confidence_score = calculate_confidence(state, turn)
        if state.confidence_score < LOW_CONFIDENCE_THRESHOLD:
            run.consecutive_low += 1
        else:
            run.consecutive_low = 0

    def _escalate(self, run: _Run, to_model: str, reason: str) -> None:
        event = EscalationEvent(
            turn_number=run.state.turn_number,
            from_model=run.model,
            to_model=to_model,
            reason=reason,
        )
        run.state.escalations.append(event)
        logger.warning("Escalating %s -> %s: %s", run.model, to_model, reason)
        self._emit(
            run,
            EventType.ESCALATION,
            from_model=run.model,
            to_model=to_model,
            reason=reason,
        )
        run.history.append(
            {
                "role": "system",
                "content": (
                    f"ESCALATION: Switching to more capable model {to_model} due to: {reason}"
                ),
            }
        )
        run.model = to_model
        reset_escalation_pressure(run.state)
        run.consecutive_low = 0

    def _maybe_checkpoint(self, run: _Run) -> None:
        if run.state.turn_number % run.checkpoint_interval == 0:
            self._checkpoint(run)

    def _checkpoint(self, run: _Run) -> None:
        state = run.state
        self.store.record_checkpoint(
            Checkpoint(
                thread_id=run.thread_id,
                execution_id=run.execution_id,
                turn_number=state.turn_number,
                confidence=state.confidence_score,
                model=run.model,
                state=state.snapshot(),
            )
        )
        run.checkpoints += 1
        logger.info("Checkpoint at turn %s", state.turn_number)
        self._emit(
            run,
            EventType.CHECKPOINT,
            max_turns=run.max_turns,
            files=list(state.file_changes),
        )

    # -- terminal --------------------------------------------------------

    def _final_message(self, run: _Run) -> str:
        state = run.state
        files = list(state.file_changes)
        if run.loop_state == LoopState.COMPLETED:
            summary = format_completion_summary(state.turn_number, files, state.confidence_score)
            final = run.turns[-1].response if run.turns else ""
            return f"{final}\n\n{summary}" if final else summary
        if run.loop_state == LoopState.MAX_TURNS_REACHED:
            return format_partial_summary(
                state.turn_number, run.max_turns, files, state.confidence_score
            )
        if run.loop_state == LoopState.FAILED:
            return format_failure_summary(
                state.turn_number, files, run.failure_reason or "unknown error"
            )
        if run.loop_state == LoopState.ABORTED:
            summary = format_aborted_summary(state.turn_number, files)
            return f"{run.message}\n{summary}" if run.message else summary
        if run.message:
            return run.message
        return run.turns[-1].response if run.turns else "Execution paused for clarification."

    def _finish(self, run: _Run) -> ExecutionResult:
        request = run.request
        if request.agent_role == DESIGN_ROLE:
            evaluation = self.evaluator.evaluate_design(run.turns, request.task, run.max_turns)
        else:
            evaluation = self.evaluator.evaluate(run.turns, request.task, run.max_turns)
        summary = self.evaluator.summarize(run.turns)
        session = run.session
        reflection = generate_reflection(
            self.reflection_llm if self.settings.reflection_model else None,
            self.settings.reflection_model,
            request.task,
            evaluation,
            summary,
            previous=session.reflections,
            key_insights=session.key_insights,
        )
        self._emit(
            run,
            EventType.REFLECTION,
            score=reflection.score,
            key_insight=reflection.key_insight,
        )

        session.reflections = add_reflection_to_history(session.reflections, reflection)
        session.key_insights = add_key_insight(session.key_insights, reflection.key_insight)
        session.last_trajectory_summary = summary_text(summary)
        session.confidence_score = evaluation.score
        session.current_turn = run.state.turn_number
        session.model = run.model
        session.state = run.loop_state.value
        session.escalations = [*session.escalations, *run.state.escalations]
        self.store.save_session(session)
        self.store.update_thread_state(
            run.thread_id,
            {
                "state": run.loop_state.value,
                "turn": run.state.turn_number,
                "confidence": run.state.confidence_score,
                "model": run.model,
            },
        )

        message = self._final_message(run)
        self._emit(run, EventType.MESSAGE, text=message)
        terminal_event = (
            EventType.EXECUTION_ABORTED
            if run.loop_state == LoopState.ABORTED
            else EventType.EXECUTION_COMPLETED
        )
        self._emit(run, terminal_event, state=run.loop_state.value)
        logger.info(
            "Execution %s finished: state=%s turns=%s score=%s",
            run.execution_id,
            run.loop_state.value,
            run.state.turn_number,
            evaluation.score,
        )
        return ExecutionResult(
            execution_id=run.execution_id,
            thread_id=run.thread_id,
            state=run.loop_state,
            message=message,
            final_model=run.model,
            final_response=run.turns[-1].response if run.turns else "",
            turns=list(run.turns),
            execution_state=run.state,
            evaluation=evaluation,
            reflection=reflection,
            checkpoints=run.checkpoints,
            last_interrupt=run.last_interrupt,
            input_tokens=run.input_tokens,
            output_tokens=run.output_tokens,
        )

    # -- notifications ---------------------------------------------------

    def _emit(self, run: _Run, event_type: EventType, **payload: Any) -> None:
        self.notifier.emit(
            ProgressEvent(
                type=event_type,
                thread_id=run.thread_id,
                execution_id=run.execution_id,
                turn_number=run.state.turn_number,
                confidence=run.state.confidence_score,
                model=run.model,
                payload=payload,
            )
        )

    def _emit_raw(self, request: ExecutionRequest, event_type: EventType, **kwargs: Any) -> None:
        self.notifier.emit(
            ProgressEvent(
                type=event_type,
                thread_id=request.thread_id,
                execution_id=request.execution_id,
                **kwargs,
            )
        )
