from __future__ import annotations

import json
import logging
import math

from threadloop.models import ExecutionState, ExecutionTurn

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_THRESHOLD = 30


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def tool_succeeded(result: object) -> bool:
    text = json.dumps(result, default=str).lower()
    return "error" not in text and "failed" not in text


def calculate_confidence(state: ExecutionState, turn: ExecutionTurn) -> int:
    """Blend the model's self-report with observed evidence into a 0-100 score."""
    model_self = max(0, min(100, turn.confidence)) / 100

    total_tools = len(turn.tool_calls)
    successful = sum(1 for outcome in turn.tool_results if tool_succeeded(outcome.result))
    tool_success_rate = min(successful / total_tools, 1.0) if total_tools else 1.0

    repetition = state.same_error_count / max(state.turn_number, 1)
    error_penalty = min(repetition * 2, 1.0)

    total_tests = len(state.test_results)
    passed_tests = sum(1 for result in state.test_results if result.passed)
    test_success_rate = passed_tests / total_tests if total_tests else 0.5

    if state.no_progress_turns == 0:
        progress_rate = 1.0
    else:
        progress_rate = max(0.0, 1 - state.no_progress_turns / 5)

    correction_penalty = min(state.user_correction_count * 0.15, 0.3)

    confidence = (
        model_self * 0.4
        + tool_success_rate * 0.2
        + (1 - error_penalty) * 0.2
        + test_success_rate * 0.1
        + progress_rate * 0.1
        - correction_penalty
    )
    final = max(0, min(100, round_half_up(confidence * 100)))
    logger.info(
        "Confidence: model=%s%% tools=%s%% errors=%s%% tests=%s%% progress=%s%% corrections=-%s%% => %s%%",
        round_half_up(model_self * 100),
        round_half_up(tool_success_rate * 100),
        round_half_up((1 - error_penalty) * 100),
        round_half_up(test_success_rate * 100),
        round_half_up(progress_rate * 100),
        round_half_up(correction_penalty * 100),
        final,
    )
    return final


def confidence_level(confidence: int) -> str:
    if confidence > 70:
        return "high"
    if confidence >= 50:
        return "moderate"
    if confidence >= 30:
        return "low"
    return "critical"


def is_stuck(confidence: int, consecutive_low_turns: int) -> bool:
    return confidence < LOW_CONFIDENCE_THRESHOLD and consecutive_low_turns >= 2
