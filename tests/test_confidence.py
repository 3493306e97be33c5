import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from threadloop.confidence import (
    calculate_confidence,
    confidence_level,
    is_stuck,
    round_half_up,
    tool_succeeded,
)
from threadloop.models import (
    ExecutionState,
    ExecutionTurn,
    TestResult,
    ToolCall,
    ToolOutcome,
    TurnStatus,
)


def _turn(confidence: int, results: list[object] | None = None) -> ExecutionTurn:
    results = results or []
    calls = tuple(ToolCall(id=f"c{i}", name="run_command", arguments="{}") for i in range(len(results)))
    outcomes = tuple(
        ToolOutcome(call_id=f"c{i}", tool="run_command", args={}, result=result, success=True)
        for i, result in enumerate(results)
    )
    return ExecutionTurn(
        turn_number=1,
        input="",
        tool_calls=calls,
        tool_results=outcomes,
        response="",
        confidence=confidence,
        status=TurnStatus.CONTINUE,
        model_used="m",
    )


class ConfidenceTests(unittest.TestCase):
    def test_fresh_state_without_tools(self) -> None:
        state = ExecutionState(turn_number=1)
        # 0.4*0.8 + 0.2 + 0.2 + 0.1*0.5 + 0.1 = 0.87
        self.assertEqual(calculate_confidence(state, _turn(80)), 87)

    def test_failed_tools_and_repeated_errors_lower_score(self) -> None:
        state = ExecutionState(turn_number=4, same_error_count=2)
        turn = _turn(50, [{"output": "ok"}, {"error": "boom"}])
        # 0.2 + 0.2*0.5 + 0.2*0 + 0.05 + 0.1 = 0.45
        self.assertEqual(calculate_confidence(state, turn), 45)

    def test_tests_and_progress_rates(self) -> None:
        state = ExecutionState(
            turn_number=2,
            no_progress_turns=2,
            test_results=[TestResult("a::t1", True), TestResult("a::t2", True), TestResult("a::t3", False)],
        )
        # 0.4 + 0.2 + 0.2 + 0.1*(2/3) + 0.1*0.6 = 0.9267
        self.assertEqual(calculate_confidence(state, _turn(100)), 93)

    def test_score_stays_in_range(self) -> None:
        worst = ExecutionState(turn_number=1, same_error_count=10, no_progress_turns=9, user_correction_count=5)
        self.assertEqual(calculate_confidence(worst, _turn(0, [{"error": "x"}])), 0)
        best = ExecutionState(turn_number=1, test_results=[TestResult("t::a", True)])
        self.assertEqual(calculate_confidence(best, _turn(150)), 100)

    def test_corrections_never_raise_the_score(self) -> None:
        previous = None
        for corrections in range(6):
            state = ExecutionState(turn_number=3, user_correction_count=corrections)
            score = calculate_confidence(state, _turn(60, [{"output": "ok"}]))
            if previous is not None:
                self.assertLessEqual(score, previous)
            previous = score

    def test_tool_success_is_case_insensitive(self) -> None:
        self.assertTrue(tool_succeeded({"output": "all good"}))
        self.assertFalse(tool_succeeded({"output": "Build FAILED"}))
        self.assertFalse(tool_succeeded("Error: not found"))

    def test_round_half_up(self) -> None:
        self.assertEqual(round_half_up(44.5), 45)
        self.assertEqual(round_half_up(44.49), 44)

    def test_levels_and_stuck(self) -> None:
        self.assertEqual(confidence_level(71), "high")
        self.assertEqual(confidence_level(50), "moderate")
        self.assertEqual(confidence_level(30), "low")
        self.assertEqual(confidence_level(29), "critical")
        self.assertTrue(is_stuck(29, 2))
        self.assertFalse(is_stuck(29, 1))
        self.assertFalse(is_stuck(30, 5))


class ExecutionStateTests(unittest.TestCase):
    def test_same_error_count_tracks_repeats(self) -> None:
        state = ExecutionState()
        state.record_error("ImportError: foo")
        self.assertEqual(state.same_error_count, 1)
        state.record_error("ImportError: foo")
        self.assertEqual(state.same_error_count, 2)
        state.record_error("KeyError: bar")
        self.assertEqual(state.same_error_count, 1)
        self.assertEqual(state.last_error, "KeyError: bar")
        self.assertEqual(state.error_count, 3)

    def test_file_changes_are_unique(self) -> None:
        state = ExecutionState()
        self.assertTrue(state.add_file_change("app.py"))
        self.assertFalse(state.add_file_change("app.py"))
        self.assertEqual(state.file_changes, ["app.py"])


if __name__ == "__main__":
    unittest.main()
