from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from threadloop.models import ExecutionTurn, TestResult

logger = logging.getLogger(__name__)

FILE_CHANGE_PATTERNS = (
    re.compile(r"wrote.*file", re.IGNORECASE),
    re.compile(r"created.*file", re.IGNORECASE),
    re.compile(r"modified.*file", re.IGNORECASE),
    re.compile(r"updated.*file", re.IGNORECASE),
    re.compile(r"<<.*>>"),
)
FILE_MARKER = re.compile(r"<<([^>]+)>>")
TEST_LINE = re.compile(r"(\S+::\S+)\s+(PASSED|FAILED|ERROR)\b")

PROGRESS_TOOLS = frozenset(
    {
        "write_to_file",
        "create_file",
        "replace_file_content",
        "edit_file",
        "run_command",
        "execute_command",
        "apply_diff",
        "read_file",
        "list_dir",
        "search_code",
    }
)
PATH_ARGUMENT_KEYS = ("TargetFile", "file_path", "target_file", "filename", "path", "AbsolutePath")


@dataclass(frozen=True)
class ProgressSignal:
    has_progress: bool
    files: list[str] = field(default_factory=list)
    test_results: list[TestResult] = field(default_factory=list)
    error: str | None = None


class ProgressDetector(Protocol):
    def detect(self, turn: ExecutionTurn) -> ProgressSignal:
        ...


def _path_from_arguments(arguments: str) -> str | None:
    try:
        args = json.loads(arguments) if arguments else {}
    except json.JSONDecodeError:
        logger.debug("Tool arguments are not JSON: %s", arguments[:80])
        return None
    if not isinstance(args, dict):
        return None
    for key in PATH_ARGUMENT_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _result_failed(result: Any) -> bool:
    if isinstance(result, dict):
        if result.get("success") is False:
            return True
        return "error" in result and result.get("error") not in (None, "", False)
    return False


def _result_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def parse_test_results(text: str) -> list[TestResult]:
    return [
        TestResult(name=match.group(1), passed=match.group(2) == "PASSED")
        for match in TEST_LINE.finditer(text)
    ]


class HeuristicProgressDetector:
    """
    Regex and tool-name based progress detection.

    The patterns are fuzzy: a false negative under-counts progress and can
    trigger an early no-progress escalation.
    """

    def __init__(self, progress_tools: frozenset[str] = PROGRESS_TOOLS) -> None:
        self.progress_tools = progress_tools

    def detect(self, turn: ExecutionTurn) -> ProgressSignal:
        files: list[str] = []
        has_progress = any(pattern.search(turn.response) for pattern in FILE_CHANGE_PATTERNS)

        for call in turn.tool_calls:
            if call.name not in self.progress_tools:
                continue
            has_progress = True
            path = _path_from_arguments(call.arguments)
            if path and path not in files:
                files.append(path)

        for marker in FILE_MARKER.findall(turn.response):
            name = marker.strip()
            if name and name not in files:
                files.append(name)

        test_results = parse_test_results(turn.response)
        for outcome in turn.tool_results:
            test_results.extend(parse_test_results(_result_text(outcome.result)))

        return ProgressSignal(
            has_progress=has_progress,
            files=files,
            test_results=test_results,
            error=self.error_signature(turn),
        )

    def error_signature(self, turn: ExecutionTurn) -> str | None:
        for outcome in turn.tool_results:
            if not outcome.success or _result_failed(outcome.result):
                detail = outcome.result.get("error") if isinstance(outcome.result, dict) else outcome.result
                return f"{outcome.tool}: {detail}"
        if "error" in turn.response.lower():
            return turn.response.strip()
        return None
