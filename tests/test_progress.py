import io
import sys
import tempfile
import unittest
from pathlib import Path

from rich.console import Console

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from fakes import RecordingSink
from threadloop.detection import HeuristicProgressDetector, parse_test_results
from threadloop.models import ExecutionTurn, ToolCall, ToolOutcome, TurnStatus
from threadloop.outbound import OutboundQueue
from threadloop.progress import (
    ConsoleProgressSink,
    EventType,
    Notifier,
    ProgressEvent,
    RunLogSink,
    format_busy_notice,
    format_checkpoint_message,
    format_partial_summary,
    render_event,
)
from threadloop.run_logs import read_execution_log


def _event(event_type: EventType, **payload) -> ProgressEvent:
    return ProgressEvent(
        type=event_type,
        thread_id="thread-1",
        execution_id="exec-1",
        turn_number=5,
        confidence=64,
        model="gemini-3-pro",
        payload=payload,
    )


class NotifierTests(unittest.TestCase):
    def setUp(self) -> None:
        self.outbound = OutboundQueue(maxsize=32)

    def tearDown(self) -> None:
        self.outbound.stop()

    def test_routes_by_event_type(self) -> None:
        everything = RecordingSink()
        checkpoints = RecordingSink()
        notifier = Notifier(self.outbound)
        notifier.subscribe(everything)
        notifier.subscribe(checkpoints, [EventType.CHECKPOINT])
        notifier.emit(_event(EventType.TURN_START))
        notifier.emit(_event(EventType.CHECKPOINT, files=["a.py"], max_turns=20))
        self.assertTrue(self.outbound.drain(timeout=5))
        self.assertEqual(len(everything.events), 2)
        self.assertEqual([event.type for event in checkpoints.events], [EventType.CHECKPOINT])

    def test_failing_sink_does_not_block_others(self) -> None:
        class _Broken:
            def deliver(self, event: ProgressEvent) -> None:
                raise OSError("webhook down")

        healthy = RecordingSink()
        notifier = Notifier(self.outbound, routes={EventType.MESSAGE: [_Broken(), healthy]})
        with self.assertLogs("threadloop.outbound", level="ERROR"):
            notifier.emit(_event(EventType.MESSAGE, text="hello"))
            self.assertTrue(self.outbound.drain(timeout=5))
        self.assertEqual(len(healthy.events), 1)

    def test_run_log_sink_writes_jsonl(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            logs_dir = Path(tmp) / "logs"
            RunLogSink(logs_dir).deliver(_event(EventType.ESCALATION, reason="stuck"))
            entries = read_execution_log(logs_dir, "exec-1")
        self.assertEqual(entries[0]["type"], "escalation")
        self.assertEqual(entries[0]["payload"]["reason"], "stuck")

    def test_console_sink_renders(self) -> None:
        buffer = io.StringIO()
        sink = ConsoleProgressSink(Console(file=buffer, width=120), max_turns=20)
        sink.deliver(_event(EventType.TURN_START))
        sink.deliver(_event(EventType.TOOL_EXECUTION, tool="read_file", args={"path": "a.py"}, success=True))
        output = buffer.getvalue()
        self.assertIn("Turn 5/20", output)
        self.assertIn("read_file", output)


class FormattingTests(unittest.TestCase):
    def test_checkpoint_message(self) -> None:
        text = format_checkpoint_message(5, 20, 64, ["a.py", "b.py"])
        self.assertIn("Checkpoint 5/20", text)
        self.assertIn("2 files modified", text)
        self.assertIn("Confidence: 64% (moderate)", text)

    def test_partial_and_busy(self) -> None:
        self.assertIn("(20/20)", format_partial_summary(20, 20, [], 40))
        self.assertIn("exec-9", format_busy_notice("thread-1", "exec-9"))

    def test_render_unknown_payload_is_safe(self) -> None:
        self.assertIsNotNone(render_event(_event(EventType.CLARIFICATION_REQUEST)))
        self.assertIsNotNone(render_event(_event(EventType.EXECUTION_COMPLETED, state="completed")))


def _turn(response: str, calls=(), outcomes=()) -> ExecutionTurn:
    return ExecutionTurn(
        turn_number=1,
        input="",
        tool_calls=tuple(calls),
        tool_results=tuple(outcomes),
        response=response,
        confidence=70,
        status=TurnStatus.CONTINUE,
        model_used="m",
    )


class DetectionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.detector = HeuristicProgressDetector()

    def test_file_markers_and_phrases(self) -> None:
        signal = self.detector.detect(_turn("I created the config file <<config/app.yaml>>"))
        self.assertTrue(signal.has_progress)
        self.assertEqual(signal.files, ["config/app.yaml"])
        self.assertIsNone(signal.error)

    def test_progress_tool_with_path_argument(self) -> None:
        call = ToolCall(id="c1", name="write_to_file", arguments='{"TargetFile": "src/main.py"}')
        outcome = ToolOutcome("c1", "write_to_file", {"TargetFile": "src/main.py"}, {"ok": True}, True)
        signal = self.detector.detect(_turn("", [call], [outcome]))
        self.assertTrue(signal.has_progress)
        self.assertEqual(signal.files, ["src/main.py"])

    def test_unknown_tool_is_not_progress(self) -> None:
        call = ToolCall(id="c1", name="web_search", arguments="{}")
        outcome = ToolOutcome("c1", "web_search", {}, {"results": []}, True)
        self.assertFalse(self.detector.detect(_turn("looking around", [call], [outcome])).has_progress)

    def test_error_signature_prefers_failing_tool(self) -> None:
        call = ToolCall(id="c1", name="run_command", arguments='{"command": "pytest"}')
        outcome = ToolOutcome("c1", "run_command", {}, {"error": "ModuleNotFoundError: foo"}, False)
        signal = self.detector.detect(_turn("Got an error", [call], [outcome]))
        self.assertEqual(signal.error, "run_command: ModuleNotFoundError: foo")
        self.assertEqual(self.detector.detect(_turn(" An error occurred ")).error, "An error occurred")

    def test_parse_test_results(self) -> None:
        results = parse_test_results(
            "tests/test_a.py::test_one PASSED\ntests/test_a.py::test_two FAILED\n"
        )
        self.assertEqual([(r.name, r.passed) for r in results], [
            ("tests/test_a.py::test_one", True),
            ("tests/test_a.py::test_two", False),
        ])


if __name__ == "__main__":
    unittest.main()
