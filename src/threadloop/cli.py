from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from threadloop.branch import BranchFlow
from threadloop.config import (
    AppConfig,
    ConfigError,
    LLMSettings,
    Paths,
    RedisSettings,
    default_config,
    load_config,
    load_paths,
    save_config,
)
from threadloop.controller import ExecutionRequest, LoopController
from threadloop.db import Database
from threadloop.escalation import ModelLadder
from threadloop.interrupts import RedisInterruptInbox, parse_interrupt
from threadloop.llm import LLMResponseError, LiteLLMClient
from threadloop.locks import LockManager
from threadloop.models import LoopState, TaskComplexity
from threadloop.outbound import OutboundQueue
from threadloop.progress import ConsoleProgressSink, Notifier, RunLogSink
from threadloop.redis_client import RedisConnection
from threadloop.run_logs import latest_event_for_thread
from threadloop.state import RedisStateStore, ReplicatedStateStore, SqliteStateStore
from threadloop.tools import HttpToolExecutor, ToolRunner

app = typer.Typer(help="threadloop execution engine CLI")

LOG_LEVEL_ENV = "THREADLOOP_LOG_LEVEL"


@dataclass
class Runtime:
    config: AppConfig
    paths: Paths
    db: Database
    redis: RedisConnection
    outbound: OutboundQueue
    locks: LockManager
    store: ReplicatedStateStore
    inbox: RedisInterruptInbox
    llm: LiteLLMClient

    def close(self) -> None:
        self.outbound.stop()
        self.redis.close()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _init_db(db_path: Path) -> Database:
    db = Database(db_path)
    db.initialize()
    return db


def _load_or_raise_config(paths: Paths) -> AppConfig:
    if not paths.config_path.exists():
        typer.echo("Config not found. Run `threadloop setup` first.")
        raise typer.Exit(code=1)
    try:
        return load_config(paths.config_path)
    except ConfigError as exc:
        typer.echo(f"Invalid config: {exc}")
        raise typer.Exit(code=1) from exc


def _build_runtime(paths: Paths | None = None) -> Runtime:
    paths = paths or load_paths()
    config = _load_or_raise_config(paths)
    db = _init_db(paths.db_path)
    redis = RedisConnection(config.redis)
    outbound = OutboundQueue(maxsize=config.engine.outbound_queue_size)
    store = ReplicatedStateStore(
        cache=RedisStateStore(redis),
        durable=SqliteStateStore(db),
        outbound=outbound,
    )
    llm = LiteLLMClient(
        base_url=config.llm.base_url,
        api_key=config.llm.api_key,
        timeout_s=config.llm.timeout_s,
        max_retries=config.llm.max_retries,
    )
    return Runtime(
        config=config,
        paths=paths,
        db=db,
        redis=redis,
        outbound=outbound,
        locks=LockManager(redis),
        store=store,
        inbox=RedisInterruptInbox(redis),
        llm=llm,
    )


@app.callback()
def main(
    log_level: str = typer.Option(
        os.getenv(LOG_LEVEL_ENV, "WARNING"), "--log-level", help="Logging level."
    ),
) -> None:
    _configure_logging(log_level)


@app.command()
def setup() -> None:
    """Write the configuration file."""
    paths = load_paths()
    typer.echo("Setting up threadloop configuration.")
    defaults = default_config()
    base_url = typer.prompt("LiteLLM base URL", default=defaults.llm.base_url)
    api_key = typer.prompt("LiteLLM API key (blank for none)", default="", hide_input=True)
    redis_enabled = typer.confirm("Use Redis for locks and state?", default=True)
    redis_url = defaults.redis.url
    if redis_enabled:
        redis_url = typer.prompt("Redis URL", default=redis_url)
    default_model = typer.prompt("Default model", default=defaults.engine.default_model)
    config = replace(
        defaults,
        llm=LLMSettings(base_url=base_url, api_key=api_key or None),
        redis=RedisSettings(enabled=redis_enabled, url=redis_url),
        engine=replace(defaults.engine, default_model=default_model),
    )
    save_config(paths.config_path, config)
    typer.echo(f"Config saved to {paths.config_path}")


@app.command()
def run(
    thread_id: str = typer.Argument(..., help="Conversation thread id."),
    task: str = typer.Argument(..., help="Task description."),
    complexity: TaskComplexity = typer.Option(TaskComplexity.MEDIUM, help="Task complexity."),
    role: str = typer.Option("coding", help="Agent role (coding or architect)."),
    model: Optional[str] = typer.Option(None, help="Starting model."),
    max_turns: Optional[int] = typer.Option(None, help="Override the turn limit."),
) -> None:
    """Run an execution for a thread and stream progress."""
    runtime = _build_runtime()
    console = Console()
    notifier = Notifier(runtime.outbound)
    notifier.subscribe(ConsoleProgressSink(console))
    notifier.subscribe(RunLogSink(runtime.paths.logs_dir))
    controller = LoopController(
        llm=runtime.llm,
        tool_runner=ToolRunner(
            HttpToolExecutor(
                base_url=runtime.config.llm.base_url,
                api_key=runtime.config.llm.api_key,
                timeout_s=runtime.config.llm.timeout_s,
            )
        ),
        locks=runtime.locks,
        store=runtime.store,
        notifier=notifier,
        inbox=runtime.inbox,
        ladder=ModelLadder(runtime.config.tiers),
        settings=runtime.config.engine,
    )
    request = ExecutionRequest(
        thread_id=thread_id,
        task=task,
        agent_role=role,
        complexity=complexity,
        model=model,
        max_turns=max_turns,
    )
    try:
        result = controller.run(request)
    finally:
        runtime.close()
    console.print(
        f"[bold]{result.state.value}[/bold] execution={result.execution_id} "
        f"turns={len(result.turns)} confidence={result.final_confidence}"
    )
    if result.state in {LoopState.FAILED, LoopState.BUSY}:
        raise typer.Exit(code=1)


@app.command()
def branch(
    question: str = typer.Argument(..., help="Question to brainstorm."),
    tier: Optional[str] = typer.Option(None, help="Model tier to fan out to."),
) -> None:
    """Ask several models of one tier in parallel and consolidate the answers."""
    paths = load_paths()
    config = _load_or_raise_config(paths)
    llm = LiteLLMClient(
        base_url=config.llm.base_url,
        api_key=config.llm.api_key,
        timeout_s=config.llm.timeout_s,
        max_retries=config.llm.max_retries,
    )
    console = Console()
    flow = BranchFlow(llm, ModelLadder(config.tiers))
    try:
        with console.status("[bold yellow]Brainstorming...[/bold yellow]"):
            outcome = flow.run(question, tier)
    except KeyError as exc:
        typer.echo(f"Unknown tier: {tier}")
        raise typer.Exit(code=1) from exc
    except LLMResponseError as exc:
        typer.echo(f"Branch flow failed: {exc}")
        raise typer.Exit(code=1) from exc
    for result in outcome.branches:
        marker = "ok" if result.ok else f"failed: {result.error}"
        console.print(f"[dim]{escape(result.model)} ({result.elapsed_s:.1f}s) {escape(marker)}[/dim]")
    console.print(escape(outcome.response))


@app.command()
def interrupt(
    thread_id: str = typer.Argument(..., help="Thread to interrupt."),
    command: str = typer.Argument(..., help="Keyword command or reaction emoji, e.g. 'CLARIFY use pytest'."),
) -> None:
    """Queue an interrupt for a running execution."""
    parsed = parse_interrupt(command)
    if parsed is None:
        typer.echo(f"Not an interrupt command: {command}")
        raise typer.Exit(code=1)
    runtime = _build_runtime()
    try:
        runtime.inbox.submit(thread_id, parsed)
        if not runtime.redis.is_available():
            typer.echo("Redis unavailable: interrupt only visible to this process.")
    finally:
        runtime.close()
    typer.echo(f"Queued {parsed.type.value} for thread {thread_id}.")


@app.command()
def abort(thread_id: str = typer.Argument(..., help="Thread to abort.")) -> None:
    """Request that the running execution in a thread stops at the next turn."""
    runtime = _build_runtime()
    try:
        runtime.locks.request_abort(thread_id)
        if not runtime.redis.is_available():
            typer.echo("Redis unavailable: abort only visible to this process.")
    finally:
        runtime.close()
    typer.echo(f"Abort requested for thread {thread_id}.")


@app.command()
def status(thread_id: str = typer.Argument(..., help="Thread to inspect.")) -> None:
    """Show lock holder, replicated state and the latest logged event."""
    runtime = _build_runtime()
    try:
        checkpoints = runtime.db.list_checkpoints(thread_id)
        report = {
            "thread_id": thread_id,
            "lock_holder": runtime.locks.is_held(thread_id),
            "abort_requested": runtime.locks.is_abort_requested(thread_id),
            "state": runtime.store.get_thread_state(thread_id),
            "last_checkpoint_turn": checkpoints[-1]["turn_number"] if checkpoints else None,
            "latest_event": latest_event_for_thread(runtime.paths.logs_dir, thread_id),
        }
    finally:
        runtime.close()
    typer.echo(json.dumps(report, indent=2, default=str))


@app.command()
def reflections(thread_id: str = typer.Argument(..., help="Thread to inspect.")) -> None:
    """Print the reflection memory kept for a thread."""
    runtime = _build_runtime()
    try:
        session = runtime.store.get_session(thread_id)
    finally:
        runtime.close()
    if session is None:
        typer.echo(f"No session for thread {thread_id}.")
        raise typer.Exit(code=1)
    payload = session.to_dict()
    typer.echo(
        json.dumps(
            {
                "thread_id": thread_id,
                "confidence_score": payload["confidence_score"],
                "last_trajectory_summary": payload["last_trajectory_summary"],
                "key_insights": payload["key_insights"],
                "reflections": payload["reflections"],
            },
            indent=2,
        )
    )
