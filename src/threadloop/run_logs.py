"""Append-only JSONL log of execution events, one file shared by all threads."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterator

RUN_LOG_NAME = "runs.log"


def append_run_log(logs_dir: Path, entry: dict[str, Any]) -> None:
    logs_dir.mkdir(parents=True, exist_ok=True)
    with (logs_dir / RUN_LOG_NAME).open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(entry, default=str) + "\n")


def _entries(logs_dir: Path, reverse: bool = False) -> Iterator[dict[str, Any]]:
    path = logs_dir / RUN_LOG_NAME
    if not path.exists():
        return
    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    for line in reversed(lines) if reverse else lines:
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        # A crash mid-write can leave a truncated or non-object line behind.
        if isinstance(payload, dict):
            yield payload


def read_execution_log(logs_dir: Path, execution_id: str) -> list[dict[str, Any]]:
    return [entry for entry in _entries(logs_dir) if entry.get("execution_id") == execution_id]


def latest_event_for_thread(logs_dir: Path, thread_id: str) -> dict[str, Any] | None:
    return next(
        (entry for entry in _entries(logs_dir, reverse=True) if entry.get("thread_id") == thread_id),
        None,
    )
