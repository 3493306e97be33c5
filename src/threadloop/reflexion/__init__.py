from threadloop.reflexion.evaluator import TrajectoryEvaluator, summary_text
from threadloop.reflexion.memory import (
    add_key_insight,
    add_reflection_to_history,
    format_evaluation_for_prompt,
    format_key_insights_for_prompt,
    format_reflections_for_prompt,
)
from threadloop.reflexion.reflection import generate_reflection, reflection_from_evaluation

__all__ = [
    "TrajectoryEvaluator",
    "summary_text",
    "add_key_insight",
    "add_reflection_to_history",
    "format_evaluation_for_prompt",
    "format_key_insights_for_prompt",
    "format_reflections_for_prompt",
    "generate_reflection",
    "reflection_from_evaluation",
]
