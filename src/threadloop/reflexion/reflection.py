from __future__ import annotations

import json
import logging
import re
from typing import Any, Sequence

import httpx

from threadloop.llm import LLMClient, LLMResponseError
from threadloop.models import Reflection, TrajectoryEvaluation, TrajectorySummary, utcnow_iso
from threadloop.reflexion.memory import format_key_insights_for_prompt, format_reflections_for_prompt

logger = logging.getLogger(__name__)

FIELD_LIMIT = 500


def build_reflection_prompt(
    task: str,
    evaluation: TrajectoryEvaluation,
    summary: TrajectorySummary,
    previous: Sequence[Reflection],
    key_insights: Sequence[str],
) -> str:
    # Keep the task excerpt short; it is repeated on every execution.
    trimmed_task = task if len(task) <= 2000 else task[:2000] + "\n...[truncated]"
    return "\n".join(
        [
            "You are the execution engine's reflection module.",
            "Analyze the finished run and produce concise, actionable lessons.",
            "Return STRICT JSON only. No markdown.",
            "Schema:",
            '{"what_worked":str,"what_failed":str,"root_cause":str,"strategy_change":str,"key_insight":str}',
            "Guidelines:",
            f"- every field <= {FIELD_LIMIT} chars.",
            "- key_insight: one short, stable lesson that applies to future runs in this thread.",
            "- Use \"N/A\" for a field you cannot fill.",
            "\n[Task]",
            trimmed_task,
            "\n[Evaluation]",
            f"score={evaluation.score} task_completion={evaluation.task_completion} "
            f"quality={evaluation.code_quality} efficiency={evaluation.efficiency}",
            evaluation.reasoning,
            "Issues: " + (", ".join(evaluation.issues) or "None"),
            "Suggestions: " + (", ".join(evaluation.suggestions) or "None"),
            "\n[Trajectory]",
            json.dumps(
                {
                    "total_turns": summary.total_turns,
                    "tools_used": summary.tools_used,
                    "files_modified": summary.files_modified,
                    "errors_encountered": summary.errors_encountered,
                    "completion_status": summary.completion_status,
                },
                ensure_ascii=False,
            ),
            "\n[Previous reflections]",
            format_reflections_for_prompt(previous),
            "\n[Key insights]",
            format_key_insights_for_prompt(key_insights),
        ]
    )


def _field(payload: dict[str, Any], name: str) -> str:
    value = str(payload.get(name) or "").strip()
    if not value:
        return "N/A"
    return value[:FIELD_LIMIT]


def parse_reflection_response(text: str, score: int) -> Reflection | None:
    raw = text.strip()
    # Models sometimes wrap the object in prose or fences.
    if not raw.startswith("{"):
        match = re.search(r"\{[\s\S]*\}", raw)
        if match:
            raw = match.group(0)
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return Reflection(
        timestamp=utcnow_iso(),
        score=score,
        what_worked=_field(payload, "what_worked"),
        what_failed=_field(payload, "what_failed"),
        root_cause=_field(payload, "root_cause"),
        strategy_change=_field(payload, "strategy_change"),
        key_insight=_field(payload, "key_insight"),
    )


def reflection_from_evaluation(
    evaluation: TrajectoryEvaluation, summary: TrajectorySummary
) -> Reflection:
    if summary.completion_status == "complete":
        worked = f"Completed the task in {summary.total_turns} turns"
    elif summary.tools_used or summary.files_modified:
        worked = "Made partial progress using " + ", ".join(summary.tools_used or summary.files_modified)
    else:
        worked = "N/A"
    failed = "; ".join(evaluation.issues) if evaluation.issues else "N/A"
    if summary.completion_status == "failed":
        root_cause = "The model reported being stuck on the final turn"
    elif summary.errors_encountered:
        root_cause = f"{summary.errors_encountered} errors during execution"
    elif summary.completion_status == "incomplete":
        root_cause = "Ran out of turns before completion"
    else:
        root_cause = "N/A"
    strategy = evaluation.suggestions[0] if evaluation.suggestions else "N/A"
    if summary.completion_status == "complete" and not evaluation.issues:
        insight = "N/A"
    else:
        insight = strategy
    return Reflection(
        timestamp=utcnow_iso(),
        score=evaluation.score,
        what_worked=worked,
        what_failed=failed,
        root_cause=root_cause,
        strategy_change=strategy,
        key_insight=insight,
    )


def generate_reflection(
    llm: LLMClient | None,
    model: str | None,
    task: str,
    evaluation: TrajectoryEvaluation,
    summary: TrajectorySummary,
    previous: Sequence[Reflection] = (),
    key_insights: Sequence[str] = (),
) -> Reflection:
    if llm is None or not model:
        return reflection_from_evaluation(evaluation, summary)
    prompt = build_reflection_prompt(task, evaluation, summary, previous, key_insights)
    try:
        response = llm.complete(model, [{"role": "user", "content": prompt}])
    except (httpx.HTTPError, LLMResponseError) as exc:
        logger.warning("Reflection model %s failed, using evaluation: %s", model, exc)
        return reflection_from_evaluation(evaluation, summary)
    reflection = parse_reflection_response(response.content, evaluation.score)
    if reflection is None:
        logger.warning("Reflection model %s returned unparseable output", model)
        return reflection_from_evaluation(evaluation, summary)
    return reflection
