import sys
import tempfile
import unittest
from pathlib import Path
from typing import Any

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from fakes import (
    DownRedis,
    FakeLLM,
    FakeRedis,
    FlakyRedis,
    FakeToolExecutor,
    RecordingSink,
    completion,
    redis_connection,
    tool_call,
)
from threadloop.config import EngineSettings
from threadloop.controller import (
    ExecutionRequest,
    LoopController,
    parse_self_confidence,
    parse_turn_status,
)
from threadloop.db import Database
from threadloop.detection import ProgressDetector
from threadloop.escalation import ModelLadder
from threadloop.interrupts import RedisInterruptInbox
from threadloop.locks import LockManager
from threadloop.models import InterruptCommand, InterruptType, LoopState, TurnStatus
from threadloop.outbound import OutboundQueue
from threadloop.progress import EventType, Notifier
from threadloop.state import RedisStateStore, ReplicatedStateStore, SqliteStateStore
from threadloop.tools import ToolRunner

THREAD = "thread-1"
IMPORT_ERROR = {"error": "ModuleNotFoundError: No module named 'foo'"}


class _Harness:
    def __init__(
        self,
        tmp: str,
        llm: FakeLLM,
        redis_client: Any | None = None,
        ladder: ModelLadder | None = None,
        tool_results: dict[str, Any] | None = None,
        settings: EngineSettings | None = None,
        detector: ProgressDetector | None = None,
        retry_after_s: float = 5.0,
    ) -> None:
        self.db = Database(Path(tmp) / "threadloop.db")
        self.db.initialize()
        self.connection = redis_connection(
            redis_client if redis_client is not None else FakeRedis(), retry_after_s=retry_after_s
        )
        self.outbound = OutboundQueue(maxsize=256, name="test-outbound")
        self.store = ReplicatedStateStore(
            RedisStateStore(self.connection), SqliteStateStore(self.db), self.outbound
        )
        self.locks = LockManager(self.connection)
        self.inbox = RedisInterruptInbox(self.connection)
        self.sink = RecordingSink()
        notifier = Notifier(self.outbound)
        notifier.subscribe(self.sink)
        self.llm = llm
        self.executor = FakeToolExecutor(tool_results)
        self.controller = LoopController(
            llm=llm,
            tool_runner=ToolRunner(self.executor),
            locks=self.locks,
            store=self.store,
            notifier=notifier,
            inbox=self.inbox,
            ladder=ladder or ModelLadder({"standard": ["base", "strong"]}),
            settings=settings or EngineSettings(),
            detector=detector,
        )

    def run(self, **fields: Any):
        fields.setdefault("thread_id", THREAD)
        fields.setdefault("task", "Fix the failing import in the worker")
        fields.setdefault("model", "base")
        fields.setdefault("max_turns", 20)
        fields.setdefault("checkpoint_interval", 5)
        result = self.controller.run(ExecutionRequest(**fields))
        self.outbound.drain(timeout=5)
        return result

    def close(self) -> None:
        self.outbound.stop()


def _working(confidence: int, index: int, tool: str = "run_command"):
    return completion(
        f"Working on the migration. Confidence: {confidence}",
        tool_calls=[tool_call(f"call-{index}", tool, command="pytest -q")],
    )


class TurnParsingTests(unittest.TestCase):
    def test_self_confidence(self) -> None:
        self.assertEqual(parse_self_confidence("Confidence: 85"), 85)
        self.assertEqual(parse_self_confidence("confidence 140"), 100)
        self.assertEqual(parse_self_confidence("no marker"), 70)

    def test_status(self) -> None:
        self.assertEqual(parse_turn_status("Status: needs_clarification"), TurnStatus.NEEDS_CLARIFICATION)
        self.assertEqual(parse_turn_status("The refactor is done."), TurnStatus.COMPLETE)
        self.assertEqual(parse_turn_status("The output is incomplete"), TurnStatus.CONTINUE)
        self.assertEqual(parse_turn_status("I'm stuck on the linker"), TurnStatus.STUCK)
        self.assertEqual(parse_turn_status("Can you clarify the schema?"), TurnStatus.NEEDS_CLARIFICATION)
        self.assertEqual(parse_turn_status("done? Status: continue"), TurnStatus.CONTINUE)


class LoopControllerScenarioTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_repeated_error_escalates_exactly_once(self) -> None:
        confidences = [80, 70, 60, 50, 40, 25, 20, 20, 20, 20]
        llm = FakeLLM([_working(value, index) for index, value in enumerate(confidences, start=1)])
        calls = {"count": 0}

        def _run_command(_args: dict) -> dict:
            calls["count"] += 1
            return IMPORT_ERROR if calls["count"] >= 5 else {"output": "3 passed"}

        harness = _Harness(self.temp_dir.name, llm, tool_results={"run_command": _run_command})
        try:
            result = harness.run(max_turns=10)
        finally:
            harness.close()

        self.assertEqual(result.state, LoopState.MAX_TURNS_REACHED)
        self.assertEqual(len(result.turns), 10)
        escalations = result.execution_state.escalations
        self.assertEqual(len(escalations), 1)
        self.assertEqual(escalations[0].turn_number, 7)
        self.assertIn("Same error repeated", escalations[0].reason)
        self.assertEqual((escalations[0].from_model, escalations[0].to_model), ("base", "strong"))
        self.assertEqual([call["model"] for call in llm.calls], ["base"] * 7 + ["strong"] * 3)
        escalation_messages = [
            message
            for message in llm.calls[7]["messages"]
            if message["role"] == "system" and message["content"].startswith("ESCALATION:")
        ]
        self.assertEqual(len(escalation_messages), 1)
        self.assertEqual(len(harness.sink.of_type(EventType.ESCALATION)), 1)
        # At the strongest model the repeat at turn 10 asks for help instead.
        self.assertEqual(len(harness.sink.of_type(EventType.CLARIFICATION_REQUEST)), 1)
        self.assertEqual(result.checkpoints, 2)
        self.assertEqual(len(harness.db.list_checkpoints(THREAD)), 2)
        self.assertEqual(len(harness.db.list_turns(result.execution_id)), 10)
        self.assertIsNone(harness.locks.is_held(THREAD))

    def test_stop_interrupt_at_turn_three(self) -> None:
        llm = FakeLLM([_working(75, index) for index in range(1, 21)])
        harness = _Harness(self.temp_dir.name, llm)

        def _on_call(count: int) -> None:
            if count == 2:
                harness.inbox.submit(THREAD, InterruptCommand(InterruptType.STOP))

        llm.on_call = _on_call
        try:
            result = harness.run(max_turns=20)
        finally:
            harness.close()

        self.assertEqual(result.state, LoopState.ABORTED)
        self.assertEqual(result.execution_state.turn_number, 3)
        self.assertEqual(len(llm.calls), 2)
        self.assertEqual(result.last_interrupt.type, InterruptType.STOP)
        self.assertEqual(result.checkpoints, 1)
        checkpoints = harness.db.list_checkpoints(THREAD)
        self.assertEqual(len(checkpoints), 1)
        self.assertEqual(checkpoints[0]["turn_number"], 3)
        self.assertIsNone(harness.locks.is_held(THREAD))
        self.assertEqual(len(harness.sink.of_type(EventType.EXECUTION_ABORTED)), 1)
        self.assertIn("Execution stopped by user request", result.message)

    def test_redis_down_run_matches_redis_up_run(self) -> None:
        def _script() -> FakeLLM:
            return FakeLLM(
                [
                    completion(
                        "Writing the module. Confidence: 80",
                        tool_calls=[tool_call("c1", "write_to_file", TargetFile="worker/tasks.py")],
                    ),
                    completion("Wrote <<worker/tasks.py>>. All tasks complete. Confidence: 95"),
                ]
            )

        with tempfile.TemporaryDirectory() as up_dir:
            up = _Harness(up_dir, _script())
            try:
                expected = up.run()
            finally:
                up.close()

        down_redis = DownRedis()
        down = _Harness(self.temp_dir.name, _script(), redis_client=down_redis)
        try:
            actual = down.run()
        finally:
            down.close()

        self.assertGreater(down_redis.calls, 0)
        self.assertEqual(actual.state, LoopState.COMPLETED)
        self.assertEqual(actual.state, expected.state)
        self.assertEqual(len(actual.turns), len(expected.turns))
        self.assertEqual(actual.final_confidence, expected.final_confidence)
        self.assertEqual(actual.evaluation.score, expected.evaluation.score)
        self.assertEqual(actual.execution_state.file_changes, ["worker/tasks.py"])
        session = down.store.get_session(THREAD)
        self.assertIsNotNone(session)
        self.assertEqual(session.state, "completed")

    def test_redis_down_lock_still_excludes_within_process(self) -> None:
        harness = _Harness(self.temp_dir.name, FakeLLM([]), redis_client=DownRedis())
        try:
            self.assertTrue(harness.locks.acquire(THREAD, "exec-running"))
            result = harness.run()
        finally:
            harness.close()
        self.assertEqual(result.state, LoopState.BUSY)
        self.assertIn("exec-running", result.message)
        self.assertEqual(harness.llm.calls, [])
        self.assertEqual(harness.locks.is_held(THREAD), "exec-running")

    def test_lock_taken_during_outage_is_restored_when_redis_returns(self) -> None:
        flaky = FlakyRedis(failures=1)
        llm = FakeLLM([_working(80, index, tool="read_file") for index in range(1, 6)])
        harness = _Harness(self.temp_dir.name, llm, redis_client=flaky, retry_after_s=0)
        holders: list[str | None] = []
        llm.on_call = lambda _count: holders.append(flaky.inner.values.get(f"lock:{THREAD}"))
        try:
            result = harness.run(max_turns=5)
        finally:
            harness.close()

        self.assertEqual(flaky.failed, 1)
        self.assertEqual(result.state, LoopState.MAX_TURNS_REACHED)
        self.assertEqual(len(result.turns), 5)
        self.assertEqual(holders, [result.execution_id] * 5)
        self.assertIsNone(harness.locks.is_held(THREAD))

    def test_redis_outage_mid_run_does_not_abort(self) -> None:
        flaky = FlakyRedis(failures=0)
        llm = FakeLLM([_working(80, index, tool="read_file") for index in range(1, 6)])
        harness = _Harness(self.temp_dir.name, llm, redis_client=flaky, retry_after_s=0)
        holders: dict[int, str | None] = {}

        def _outage(count: int) -> None:
            if count == 2:
                # Redis restarts without its data and drops the next two commands.
                flaky.inner.values.pop(f"lock:{THREAD}", None)
                flaky.failures = 2
            holders[count] = flaky.inner.values.get(f"lock:{THREAD}")

        llm.on_call = _outage
        try:
            result = harness.run(max_turns=5)
        finally:
            harness.close()

        self.assertEqual(flaky.failed, 2)
        self.assertEqual(result.state, LoopState.MAX_TURNS_REACHED)
        self.assertEqual(len(result.turns), 5)
        self.assertEqual(holders[1], result.execution_id)
        self.assertEqual(holders[5], result.execution_id)
        self.assertIsNone(harness.locks.is_held(THREAD))
        self.assertEqual(harness.store.get_session(THREAD).state, "max_turns_reached")


class LoopControllerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _harness(self, llm: FakeLLM, **kwargs: Any) -> _Harness:
        harness = _Harness(self.temp_dir.name, llm, **kwargs)
        self.addCleanup(harness.close)
        return harness

    def test_busy_thread_is_not_touched(self) -> None:
        harness = self._harness(FakeLLM([]))
        harness.locks.acquire(THREAD, "exec-other")
        result = harness.run()
        self.assertEqual(result.state, LoopState.BUSY)
        self.assertIn("already running", result.message)
        self.assertIsNone(harness.store.get_session(THREAD))
        self.assertEqual(harness.locks.is_held(THREAD), "exec-other")
        messages = harness.sink.of_type(EventType.MESSAGE)
        self.assertEqual(len(messages), 1)

    def test_completion_persists_reflection_for_next_run(self) -> None:
        llm = FakeLLM(
            [
                _working(80, 1, tool="write_to_file"),
                "Wrote <<app.py>> and the tests pass. Status: complete. Confidence: 90",
                "Status: complete. Confidence: 90",
            ]
        )
        harness = self._harness(llm)
        first = harness.run()
        self.assertEqual(first.state, LoopState.COMPLETED)
        self.assertTrue(first.success)
        self.assertIn("Task complete after 2 turns", first.message)
        self.assertEqual(first.input_tokens, 20)

        session = harness.store.get_session(THREAD)
        self.assertEqual(session.state, "completed")
        self.assertEqual(len(session.reflections), 1)
        self.assertEqual(session.confidence_score, first.evaluation.score)
        self.assertTrue(session.last_trajectory_summary.startswith("Turns: 2, Tools: write_to_file"))

        second = harness.run()
        self.assertEqual(second.state, LoopState.COMPLETED)
        system_prompt = llm.calls[-1]["messages"][0]["content"]
        self.assertIn("## Previous reflections", system_prompt)
        self.assertIn("Turns: 2, Tools: write_to_file", system_prompt)
        self.assertEqual(len(harness.store.get_session(THREAD).reflections), 2)

    def test_tool_results_enter_context_as_tool_messages(self) -> None:
        llm = FakeLLM([_working(80, 1), "Status: complete"])
        harness = self._harness(llm, tool_results={"run_command": {"output": "ok"}})
        harness.run()
        messages = llm.calls[1]["messages"]
        self.assertEqual(messages[-2]["role"], "assistant")
        self.assertEqual(messages[-2]["tool_calls"][0]["id"], "call-1")
        self.assertEqual(messages[-1], {"role": "tool", "tool_call_id": "call-1", "content": '{"output": "ok"}'})
        self.assertEqual(harness.executor.calls, [("run_command", {"command": "pytest -q"})])
        self.assertEqual(len(harness.sink.of_type(EventType.TOOL_EXECUTION)), 1)

    def test_three_model_failures_end_in_failed(self) -> None:
        llm = FakeLLM([httpx.ConnectError("refused")] * 3)
        harness = self._harness(llm)
        result = harness.run()
        self.assertEqual(result.state, LoopState.FAILED)
        self.assertIn("Execution failed after 3 turns", result.message)
        self.assertEqual(result.execution_state.error_count, 3)
        self.assertEqual(result.execution_state.same_error_count, 3)
        self.assertIsNone(harness.locks.is_held(THREAD))
        recovery = llm.calls[1]["messages"][-1]
        self.assertEqual(recovery["role"], "user")
        self.assertIn("refused", recovery["content"])

    def test_model_failure_streak_resets_on_success(self) -> None:
        llm = FakeLLM(
            [
                httpx.ConnectError("refused"),
                httpx.ConnectError("refused"),
                "Looking at the code. Confidence: 70",
                httpx.ReadTimeout("slow"),
                "Status: complete",
            ]
        )
        result = self._harness(llm).run()
        self.assertEqual(result.state, LoopState.COMPLETED)
        self.assertEqual(result.execution_state.turn_number, 5)

    def test_clarification_needed_pauses(self) -> None:
        llm = FakeLLM(["Which database should I target? Status: needs_clarification"])
        harness = self._harness(llm)
        result = harness.run()
        self.assertEqual(result.state, LoopState.STUCK)
        requests = harness.sink.of_type(EventType.CLARIFICATION_REQUEST)
        self.assertEqual(len(requests), 1)
        self.assertIn("Which database", requests[0].payload["reason"])

    def test_clarify_interrupt_adds_user_message(self) -> None:
        llm = FakeLLM(["Status: complete"])
        harness = self._harness(llm)
        harness.inbox.submit(THREAD, InterruptCommand(InterruptType.CLARIFY, "use the staging db"))
        harness.run()
        self.assertEqual(llm.calls[0]["messages"][-1], {"role": "user", "content": "use the staging db"})

    def test_clarify_without_message_stops_as_stuck(self) -> None:
        llm = FakeLLM([])
        harness = self._harness(llm)
        harness.inbox.submit(THREAD, InterruptCommand(InterruptType.CLARIFY))
        result = harness.run()
        self.assertEqual(result.state, LoopState.STUCK)
        self.assertEqual(result.checkpoints, 1)
        self.assertEqual(llm.calls, [])

    def test_escalate_interrupt_switches_model_before_call(self) -> None:
        llm = FakeLLM(["Status: complete"])
        harness = self._harness(llm)
        harness.inbox.submit(THREAD, InterruptCommand(InterruptType.ESCALATE))
        result = harness.run()
        self.assertEqual(llm.calls[0]["model"], "strong")
        self.assertEqual(result.final_model, "strong")
        self.assertEqual(result.execution_state.escalations[0].reason, "User requested escalation")

    def test_tool_crash_is_reported_to_model(self) -> None:
        llm = FakeLLM([_working(80, index) for index in range(1, 4)])
        harness = self._harness(llm, tool_results={"run_command": RuntimeError("sandbox crashed")})
        result = harness.run(max_turns=3)
        self.assertEqual(result.state, LoopState.MAX_TURNS_REACHED)
        self.assertEqual(len(result.turns), 3)
        tool_reply = llm.calls[1]["messages"][-1]
        self.assertEqual(tool_reply["role"], "tool")
        self.assertIn("sandbox crashed", tool_reply["content"])
        self.assertEqual(harness.store.get_session(THREAD).state, "max_turns_reached")
        self.assertIsNone(harness.locks.is_held(THREAD))

    def test_turn_processing_errors_end_in_failed(self) -> None:
        class _BrokenDetector:
            def detect(self, turn):
                raise RuntimeError("detector exploded")

        llm = FakeLLM([_working(80, index) for index in range(1, 4)])
        harness = self._harness(llm, detector=_BrokenDetector())
        result = harness.run()
        self.assertEqual(result.state, LoopState.FAILED)
        self.assertIn("Execution failed after 3 turns", result.message)
        self.assertIn("detector exploded", result.message)
        self.assertEqual(result.execution_state.error_count, 3)
        self.assertEqual(len(llm.calls), 3)
        recovery = llm.calls[1]["messages"][-1]
        self.assertEqual(recovery["role"], "user")
        self.assertIn("detector exploded", recovery["content"])
        self.assertEqual(harness.store.get_session(THREAD).state, "failed")
        self.assertIsNone(harness.locks.is_held(THREAD))
        self.assertEqual(harness.sink.of_type(EventType.TURN_COMPLETE), [])

    def test_abort_flag_stops_at_next_turn(self) -> None:
        llm = FakeLLM([_working(80, index) for index in range(1, 5)])
        harness = self._harness(llm)
        llm.on_call = lambda count: harness.locks.request_abort(THREAD) if count == 1 else None
        result = harness.run()
        self.assertEqual(result.state, LoopState.ABORTED)
        self.assertEqual(len(llm.calls), 1)
        self.assertEqual(result.checkpoints, 1)
        self.assertIsNone(harness.locks.is_held(THREAD))

    def test_lost_lock_aborts(self) -> None:
        redis = FakeRedis()
        llm = FakeLLM([_working(80, index) for index in range(1, 5)])
        harness = self._harness(llm, redis_client=redis)

        def _steal(count: int) -> None:
            if count == 1:
                redis.values[f"lock:{THREAD}"] = "exec-intruder"

        llm.on_call = _steal
        result = harness.run()
        self.assertEqual(result.state, LoopState.ABORTED)
        self.assertEqual(len(llm.calls), 1)
        # The intruder's lock is left alone.
        self.assertEqual(redis.values[f"lock:{THREAD}"], "exec-intruder")

    def test_max_turns_gives_partial_summary(self) -> None:
        llm = FakeLLM([_working(80, index, tool="read_file") for index in range(1, 4)])
        result = self._harness(llm).run(max_turns=3, checkpoint_interval=3)
        self.assertEqual(result.state, LoopState.MAX_TURNS_REACHED)
        self.assertIn("Reached the turn limit (3/3)", result.message)
        self.assertEqual(result.checkpoints, 1)

    def test_tool_catalog_failure_runs_without_tools(self) -> None:
        class _NoCatalog(FakeLLM):
            def fetch_tools(self):
                raise httpx.ConnectError("mcp down")

        llm = _NoCatalog(["Status: complete"])
        result = self._harness(llm).run()
        self.assertEqual(result.state, LoopState.COMPLETED)
        self.assertIsNone(llm.calls[0]["tools"])

    def test_tool_catalog_is_offered_to_model(self) -> None:
        tools = [{"type": "function", "function": {"name": "read_file", "parameters": {}}}]
        llm = FakeLLM(["Status: complete"], tools=tools)
        self._harness(llm).run()
        self.assertEqual(llm.calls[0]["tools"], tools)

    def test_architect_role_uses_design_model_and_evaluator(self) -> None:
        llm = FakeLLM(["The trade-off is cost versus latency. Summary: use a queue. Status: complete"])
        harness = self._harness(
            llm,
            ladder=ModelLadder({"design": ["kimi-k2.5", "claude-opus-4.5"]}),
        )
        result = harness.run(model=None, agent_role="architect")
        self.assertEqual(llm.calls[0]["model"], "kimi-k2.5")
        self.assertIn("Design quality", result.evaluation.reasoning)


if __name__ == "__main__":
    unittest.main()
