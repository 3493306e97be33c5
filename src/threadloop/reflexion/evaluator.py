"""
Post-run trajectory scoring.

The evaluator looks only at the closed turn sequence, independently of the
per-turn confidence score, and produces the numbers fed back into reflection
memory for the next execution in the same thread.
"""

from __future__ import annotations

import logging
import re
from typing import Sequence

from threadloop.confidence import round_half_up
from threadloop.models import (
    ExecutionTurn,
    TrajectoryEvaluation,
    TrajectorySummary,
    TurnStatus,
)

logger = logging.getLogger(__name__)

FILE_MARKER = re.compile(r"<<([^>]+)>>")

DESIGN_POSITIVE = ("trade-off", "alternative", "consideration", "constraint", "assumption")
DESIGN_NEGATIVE = {"confusing": 10, "unclear": 10, "contradiction": 15}
CONCLUSION_WORDS = ("conclusion", "summary", "plan", "recommendation")


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class TrajectoryEvaluator:
    def summarize(self, turns: Sequence[ExecutionTurn]) -> TrajectorySummary:
        tools_used: list[str] = []
        files_modified: list[str] = []
        errors = 0
        for turn in turns:
            for call in turn.tool_calls:
                if call.name not in tools_used:
                    tools_used.append(call.name)
            if turn.status == TurnStatus.STUCK:
                errors += 1
            for outcome in turn.tool_results:
                if isinstance(outcome.result, dict) and "error" in outcome.result:
                    errors += 1
            for name in FILE_MARKER.findall(turn.response or ""):
                if name not in files_modified:
                    files_modified.append(name)

        last = turns[-1] if turns else None
        if last is not None and last.status == TurnStatus.COMPLETE:
            status = "complete"
        elif last is not None and last.status == TurnStatus.STUCK:
            status = "failed"
        else:
            status = "incomplete"
        return TrajectorySummary(
            total_turns=len(turns),
            tools_used=tools_used,
            files_modified=files_modified,
            errors_encountered=errors,
            completion_status=status,
        )

    def evaluate(
        self, turns: Sequence[ExecutionTurn], task: str, max_turns: int
    ) -> TrajectoryEvaluation:
        logger.info("Evaluating trajectory with %s turns", len(turns))
        summary = self.summarize(turns)
        task_completion = self._task_completion(summary)
        code_quality = self._code_quality(summary)
        efficiency = self._efficiency(summary.total_turns, max_turns, summary.errors_encountered)
        score = int(
            _clamp(
                round_half_up(task_completion * 0.5 + code_quality * 0.3 + efficiency * 0.2),
                10,
                100,
            )
        )
        issues, suggestions = self._feedback(summary, score)
        has_progress = score > 40 and summary.completion_status != "failed"
        logger.info("Evaluation complete: score=%s progress=%s", score, has_progress)
        return TrajectoryEvaluation(
            score=score,
            reasoning=(
                f"Task completion: {task_completion}%, Code quality: {code_quality}%, "
                f"Efficiency: {efficiency}%. Status: {summary.completion_status}. "
                f"Used {len(summary.tools_used)} tools across {summary.total_turns} turns "
                f"with {summary.errors_encountered} errors."
            ),
            has_progress=has_progress,
            issues=issues,
            suggestions=suggestions,
            task_completion=task_completion,
            code_quality=code_quality,
            efficiency=efficiency,
        )

    def evaluate_design(
        self, turns: Sequence[ExecutionTurn], task: str, max_turns: int
    ) -> TrajectoryEvaluation:
        """Variant for design discussions, where no code is expected."""
        logger.info("Evaluating design trajectory with %s turns", len(turns))
        summary = self.summarize(turns)
        task_completion = self._design_completion(summary, turns)
        design_quality = self._design_quality(turns)
        efficiency = self._design_efficiency(summary.total_turns)
        score = int(
            _clamp(
                round_half_up(task_completion * 0.5 + design_quality * 0.35 + efficiency * 0.15),
                10,
                100,
            )
        )
        issues, suggestions = self._design_feedback(turns, score)
        has_progress = score > 40 and summary.completion_status != "failed"
        return TrajectoryEvaluation(
            score=score,
            reasoning=(
                f"Task completion: {task_completion}%, Design quality: {design_quality}%, "
                f"Efficiency: {efficiency}%. Discussion spanned {len(turns)} turns "
                "focusing on architectural design."
            ),
            has_progress=has_progress,
            issues=issues,
            suggestions=suggestions,
            task_completion=task_completion,
            code_quality=design_quality,
            efficiency=efficiency,
        )

    def _task_completion(self, summary: TrajectorySummary) -> int:
        if summary.completion_status == "complete":
            return 100
        if summary.completion_status == "failed":
            return 20
        has_output = bool(summary.files_modified or summary.tools_used)
        return 60 if has_output else 30

    def _code_quality(self, summary: TrajectorySummary) -> int:
        error_rate = (
            summary.errors_encountered / summary.total_turns if summary.total_turns else 0.0
        )
        if error_rate == 0:
            return 100
        if error_rate < 0.2:
            return 80
        if error_rate < 0.4:
            return 60
        return 40

    def _efficiency(self, total_turns: int, max_turns: int, errors: int) -> int:
        ratio = total_turns / max(max_turns, 1)
        return round_half_up(_clamp(100 - ratio * 50 - errors * 10, 20, 100))

    def _design_completion(
        self, summary: TrajectorySummary, turns: Sequence[ExecutionTurn]
    ) -> int:
        if summary.completion_status == "complete":
            return 100
        if summary.completion_status == "failed":
            return 20
        last = (turns[-1].response or "").lower() if turns else ""
        return 75 if any(word in last for word in CONCLUSION_WORDS) else 50

    def _design_quality(self, turns: Sequence[ExecutionTurn]) -> int:
        text = " ".join((turn.response or "").lower() for turn in turns)
        score = 70
        score += sum(5 for word in DESIGN_POSITIVE if word in text)
        score -= sum(penalty for word, penalty in DESIGN_NEGATIVE.items() if word in text)
        return int(_clamp(score, 20, 100))

    def _design_efficiency(self, total_turns: int) -> int:
        if total_turns <= 3:
            return 90
        if total_turns <= 8:
            return 100
        if total_turns <= 12:
            return 80
        if total_turns <= 15:
            return 60
        return 40

    def _feedback(self, summary: TrajectorySummary, score: int) -> tuple[list[str], list[str]]:
        issues: list[str] = []
        suggestions: list[str] = []
        if summary.completion_status == "failed":
            issues.append("Task execution failed")
            suggestions.append("Review error messages and adjust approach")
        if summary.errors_encountered > 0:
            issues.append(f"Encountered {summary.errors_encountered} errors during execution")
            suggestions.append("Debug errors before proceeding further")
        if summary.total_turns > 10:
            issues.append("High turn count indicates potential inefficiency")
            suggestions.append("Consider breaking down the task or using different tools")
        if not summary.files_modified and not summary.tools_used:
            issues.append("No tangible output produced")
            suggestions.append("Ensure the task requires concrete actions")
        if score < 50:
            suggestions.append("Consider escalating to a more capable model")
        return issues, suggestions

    def _design_feedback(
        self, turns: Sequence[ExecutionTurn], score: int
    ) -> tuple[list[str], list[str]]:
        issues: list[str] = []
        suggestions: list[str] = []
        text = " ".join((turn.response or "").lower() for turn in turns)
        if len(turns) > 12:
            issues.append("Architecture discussion is lengthy")
            suggestions.append("Consider being more concise in architectural explanations")
        if "trade-off" not in text and "alternative" not in text:
            suggestions.append("Consider discussing trade-offs and alternatives")
        if "constraint" not in text:
            suggestions.append("Consider explicitly stating constraints and assumptions")
        if score < 50:
            suggestions.append("Consider breaking down the architectural question into smaller parts")
        return issues, suggestions


def summary_text(summary: TrajectorySummary) -> str:
    text = (
        f"Turns: {summary.total_turns}, Tools: {', '.join(summary.tools_used)}, "
        f"Status: {summary.completion_status}"
    )
    if summary.files_modified:
        text += f", Files: {', '.join(summary.files_modified)}"
    return text
