from __future__ import annotations

from typing import Sequence

from threadloop.models import Reflection, TrajectoryEvaluation

MAX_REFLECTIONS = 5
MAX_KEY_INSIGHTS = 20
INSIGHT_PREFIX_LEN = 20


def add_reflection_to_history(
    existing: Sequence[Reflection] | None, new: Reflection
) -> list[Reflection]:
    """Newest first, oldest evicted beyond the window."""
    return [new, *(existing or [])][:MAX_REFLECTIONS]


def add_key_insight(existing: Sequence[str] | None, new: str) -> list[str]:
    insights = list(existing or [])
    candidate = new.strip()
    if not candidate or candidate.upper() == "N/A":
        return insights
    prefix = candidate[:INSIGHT_PREFIX_LEN].lower()
    if any(item[:INSIGHT_PREFIX_LEN].lower() == prefix for item in insights):
        return insights
    return [candidate, *insights][:MAX_KEY_INSIGHTS]


def format_reflections_for_prompt(reflections: Sequence[Reflection] | None) -> str:
    if not reflections:
        return "No previous reflections (this is the first attempt)."
    blocks: list[str] = []
    for index, reflection in enumerate(reflections, start=1):
        blocks.append(
            "\n".join(
                [
                    f"### Reflection {index} ({reflection.timestamp})",
                    f"- **Score**: {reflection.score}%",
                    f"- **What Worked**: {reflection.what_worked}",
                    f"- **What Failed**: {reflection.what_failed}",
                    f"- **Root Cause**: {reflection.root_cause}",
                    f"- **Strategy Change**: {reflection.strategy_change}",
                ]
            )
        )
    return "\n\n".join(blocks)


def format_key_insights_for_prompt(insights: Sequence[str] | None) -> str:
    if not insights:
        return "No key insights yet."
    return "\n".join(f"{index}. {insight}" for index, insight in enumerate(insights, start=1))


def format_evaluation_for_prompt(evaluation: TrajectoryEvaluation | None) -> dict[str, str]:
    if evaluation is None:
        return {
            "prev_score": "N/A",
            "prev_task_completion": "N/A",
            "prev_code_quality": "N/A",
            "prev_efficiency": "N/A",
            "prev_issues": "None",
            "prev_suggestions": "None",
        }
    return {
        "prev_score": str(evaluation.score),
        "prev_task_completion": str(evaluation.task_completion),
        "prev_code_quality": str(evaluation.code_quality),
        "prev_efficiency": str(evaluation.efficiency),
        "prev_issues": ", ".join(evaluation.issues) or "None",
        "prev_suggestions": ", ".join(evaluation.suggestions) or "None",
    }
