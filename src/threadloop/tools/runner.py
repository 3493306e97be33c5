from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable

from threadloop.models import ToolCall, ToolOutcome
from threadloop.tools.protocol import ToolExecutor, decode_arguments

logger = logging.getLogger(__name__)

ToolListener = Callable[[ToolOutcome], None]


class ToolRunner:
    """
    Executes the tool calls requested in one turn.

    A failing call never aborts the turn: its outcome carries
    ``{"error": ..., "success": False}`` and the model sees it on the next turn.
    """

    def __init__(self, executor: ToolExecutor) -> None:
        self.executor = executor

    def run(
        self, tool_calls: list[ToolCall], on_result: ToolListener | None = None
    ) -> list[ToolOutcome]:
        outcomes: list[ToolOutcome] = []
        for call in tool_calls:
            outcome = self.run_one(call)
            outcomes.append(outcome)
            if on_result is not None:
                on_result(outcome)
        return outcomes

    def run_one(self, call: ToolCall) -> ToolOutcome:
        try:
            args = decode_arguments(call)
        except (json.JSONDecodeError, ValueError) as exc:
            logger.warning("Invalid arguments for tool %s: %s", call.name, exc)
            return ToolOutcome(
                call_id=call.id,
                tool=call.name,
                args={},
                result={"error": f"invalid arguments: {exc}", "success": False},
                success=False,
            )
        started = time.monotonic()
        try:
            result: Any = self.executor.execute(call.name, args)
        except Exception as exc:  # noqa: BLE001
            logger.error("Tool %s failed: %s: %s", call.name, type(exc).__name__, exc)
            return ToolOutcome(
                call_id=call.id,
                tool=call.name,
                args=args,
                result={"error": str(exc), "success": False},
                success=False,
            )
        success = not (isinstance(result, dict) and (result.get("success") is False or result.get("error")))
        logger.info(
            "Tool %s finished in %.0fms (success=%s)",
            call.name,
            (time.monotonic() - started) * 1000,
            success,
        )
        return ToolOutcome(call_id=call.id, tool=call.name, args=args, result=result, success=success)
