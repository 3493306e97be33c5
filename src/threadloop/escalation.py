from __future__ import annotations

import logging
from dataclasses import dataclass

from threadloop.config import DEFAULT_MODEL_TIERS
from threadloop.models import ExecutionState, ExecutionTurn, TurnStatus

logger = logging.getLogger(__name__)

USER_ESCALATION_REASON = "User requested escalation"


class ModelLadder:
    """
    Models ordered weakest to strongest, built by flattening named tiers.

    Each model escalates to the one after it; the last model escalates to
    itself.
    """

    def __init__(self, tiers: dict[str, list[str]] | None = None) -> None:
        self.tiers: dict[str, list[str]] = {
            name: list(models) for name, models in (tiers or DEFAULT_MODEL_TIERS).items()
        }
        order: list[str] = []
        for models in self.tiers.values():
            for model in models:
                if model not in order:
                    order.append(model)
        if not order:
            raise ValueError("model ladder needs at least one model")
        self.order: tuple[str, ...] = tuple(order)
        self._index = {model: position for position, model in enumerate(self.order)}

    def __len__(self) -> int:
        return len(self.order)

    def __contains__(self, model: object) -> bool:
        return model in self._index

    @property
    def bottom(self) -> str:
        return self.order[0]

    @property
    def top(self) -> str:
        return self.order[-1]

    def next_model(self, current: str) -> str:
        position = self._index.get(current)
        if position is None or position == len(self.order) - 1:
            return current
        return self.order[position + 1]

    def is_at_max_escalation(self, current: str) -> bool:
        return self.next_model(current) == current

    def capability_index(self, model: str) -> int:
        return self._index.get(model, 0)

    def tier_of(self, model: str) -> str | None:
        for name, models in self.tiers.items():
            if model in models:
                return name
        return None

    def can_escalate_to(self, from_model: str, to_model: str) -> bool:
        return self.capability_index(to_model) > self.capability_index(from_model)

    def branch_models(self, tier: str) -> list[str]:
        if tier not in self.tiers:
            raise KeyError(f"unknown tier: {tier}")
        return list(self.tiers[tier])


@dataclass(frozen=True)
class EscalationDecision:
    should_escalate: bool
    reason: str
    suggested_model: str | None = None
    triggered: bool = False


def _first_trigger(
    state: ExecutionState, turn: ExecutionTurn, consecutive_low: int
) -> str | None:
    if consecutive_low >= 2:
        return f"Confidence below 30% for {consecutive_low} consecutive turns"
    if state.same_error_count >= 3:
        return f"Same error repeated {state.same_error_count} times"
    if state.no_progress_turns >= 5:
        return f"No progress for {state.no_progress_turns} turns"
    if turn.status == TurnStatus.STUCK:
        return "Model reported being stuck"
    return None


def check_escalation_triggers(
    state: ExecutionState,
    turn: ExecutionTurn,
    current_model: str,
    consecutive_low: int,
    ladder: ModelLadder,
) -> EscalationDecision:
    reason = _first_trigger(state, turn, consecutive_low)
    if reason is None:
        return EscalationDecision(should_escalate=False, reason="No escalation triggers met")
    if ladder.is_at_max_escalation(current_model):
        logger.warning(
            "Escalation trigger fired at maximum capability (%s): %s", current_model, reason
        )
        return EscalationDecision(
            should_escalate=False,
            reason=f"Already at maximum model capability ({current_model}): {reason}",
            triggered=True,
        )
    suggested = ladder.next_model(current_model)
    logger.warning("Escalation triggered: %s", reason)
    return EscalationDecision(
        should_escalate=True,
        reason=reason,
        suggested_model=suggested,
        triggered=True,
    )


def reset_escalation_pressure(state: ExecutionState) -> None:
    state.same_error_count = 0
    state.no_progress_turns = 0
    logger.info("Escalation pressure reset")
