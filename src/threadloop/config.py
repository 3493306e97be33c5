from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from threadloop.models import TaskComplexity


class ConfigError(ValueError):
    pass


DEFAULT_MODEL_TIERS: dict[str, list[str]] = {
    "tier1": ["mistral-nemo", "gpt-oss-120b:exacto", "general", "gemini-2.5-flash-lite"],
    "tier2": ["minimax-m2.1", "gpt-5.1-codex-mini", "gemini-3-flash", "glm-4.7"],
    "tier3": ["qwen3-coder-plus", "gpt-5.1-codex-max", "gemini-3-pro", "kimi-k2.5"],
    "tier4": ["qwen3-max", "gpt-5.2-codex", "claude-sonnet-4.5", "claude-opus-4.5"],
}

DEFAULT_MAX_TURNS: dict[str, int] = {
    TaskComplexity.SIMPLE.value: 10,
    TaskComplexity.MEDIUM.value: 20,
    TaskComplexity.COMPLEX.value: 35,
}

DEFAULT_CHECKPOINT_INTERVALS: dict[str, int] = {
    TaskComplexity.SIMPLE.value: 3,
    TaskComplexity.MEDIUM.value: 5,
    TaskComplexity.COMPLEX.value: 5,
}


@dataclass(frozen=True)
class Paths:
    base_dir: Path

    @property
    def data_dir(self) -> Path:
        return self.base_dir

    @property
    def db_path(self) -> Path:
        return self.data_dir / "threadloop.db"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.json"


@dataclass(frozen=True)
class LLMSettings:
    base_url: str = "http://litellm:4000"
    api_key: str | None = None
    timeout_s: float = 120.0
    max_retries: int = 2


@dataclass(frozen=True)
class RedisSettings:
    enabled: bool = True
    url: str = "redis://localhost:6379/0"
    lock_ttl_s: int = 300
    abort_ttl_s: int = 600
    state_ttl_s: int = 3600
    socket_timeout_s: float = 2.0


@dataclass(frozen=True)
class EngineSettings:
    default_model: str = "gemini-3-pro"
    design_model: str = "kimi-k2.5"
    initial_confidence: int = 80
    reflection_model: str | None = None
    max_turns: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_MAX_TURNS))
    checkpoint_intervals: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_CHECKPOINT_INTERVALS)
    )
    max_consecutive_failures: int = 3
    outbound_queue_size: int = 256

    def max_turns_for(self, complexity: TaskComplexity | str, estimated: int | None = None) -> int:
        key = complexity.value if isinstance(complexity, TaskComplexity) else str(complexity)
        base = self.max_turns.get(key, 20)
        if estimated and estimated > 0:
            return min(estimated, base)
        return base

    def checkpoint_interval_for(self, complexity: TaskComplexity | str) -> int:
        key = complexity.value if isinstance(complexity, TaskComplexity) else str(complexity)
        return self.checkpoint_intervals.get(key, 5)


@dataclass(frozen=True)
class AppConfig:
    llm: LLMSettings
    redis: RedisSettings
    engine: EngineSettings
    tiers: dict[str, list[str]]


def load_paths(base_dir: Path | None = None) -> Paths:
    override = os.getenv("THREADLOOP_HOME")
    resolved = base_dir or (Path(override) if override else Path.home() / ".threadloop")
    return Paths(base_dir=resolved)


def default_config() -> AppConfig:
    return AppConfig(
        llm=LLMSettings(),
        redis=RedisSettings(),
        engine=EngineSettings(),
        tiers={name: list(models) for name, models in DEFAULT_MODEL_TIERS.items()},
    )


def _int_map(raw: Any, defaults: dict[str, int], label: str) -> dict[str, int]:
    if raw is None:
        return dict(defaults)
    if not isinstance(raw, dict):
        raise ConfigError(f"{label} must be an object")
    merged = dict(defaults)
    for key, value in raw.items():
        try:
            parsed = int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{label}.{key} must be an integer") from exc
        if parsed < 1:
            raise ConfigError(f"{label}.{key} must be >= 1")
        merged[str(key)] = parsed
    return merged


def _parse_tiers(raw: Any) -> dict[str, list[str]]:
    if raw is None:
        return {name: list(models) for name, models in DEFAULT_MODEL_TIERS.items()}
    if not isinstance(raw, dict) or not raw:
        raise ConfigError("tiers must be a non-empty object of model lists")
    tiers: dict[str, list[str]] = {}
    for name, models in raw.items():
        if not isinstance(models, list) or not all(isinstance(m, str) and m.strip() for m in models):
            raise ConfigError(f"tiers.{name} must be a list of model names")
        tiers[str(name)] = [m.strip() for m in models]
    return tiers


def load_config(path: Path) -> AppConfig:
    try:
        payload = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"invalid config file {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("config root must be an object")
    llm = payload.get("llm", {})
    redis_cfg = payload.get("redis", {})
    engine = payload.get("engine", {})
    config = AppConfig(
        llm=LLMSettings(
            base_url=str(llm.get("base_url", LLMSettings.base_url)),
            api_key=llm.get("api_key"),
            timeout_s=float(llm.get("timeout_s", LLMSettings.timeout_s)),
            max_retries=int(llm.get("max_retries", LLMSettings.max_retries)),
        ),
        redis=RedisSettings(
            enabled=bool(redis_cfg.get("enabled", True)),
            url=str(redis_cfg.get("url", RedisSettings.url)),
            lock_ttl_s=int(redis_cfg.get("lock_ttl_s", RedisSettings.lock_ttl_s)),
            abort_ttl_s=int(redis_cfg.get("abort_ttl_s", RedisSettings.abort_ttl_s)),
            state_ttl_s=int(redis_cfg.get("state_ttl_s", RedisSettings.state_ttl_s)),
            socket_timeout_s=float(redis_cfg.get("socket_timeout_s", RedisSettings.socket_timeout_s)),
        ),
        engine=EngineSettings(
            default_model=str(engine.get("default_model", EngineSettings.default_model)),
            design_model=str(engine.get("design_model", EngineSettings.design_model)),
            initial_confidence=int(engine.get("initial_confidence", EngineSettings.initial_confidence)),
            reflection_model=engine.get("reflection_model") or None,
            max_turns=_int_map(engine.get("max_turns"), DEFAULT_MAX_TURNS, "engine.max_turns"),
            checkpoint_intervals=_int_map(
                engine.get("checkpoint_intervals"),
                DEFAULT_CHECKPOINT_INTERVALS,
                "engine.checkpoint_intervals",
            ),
            max_consecutive_failures=int(engine.get("max_consecutive_failures", 3)),
            outbound_queue_size=int(engine.get("outbound_queue_size", 256)),
        ),
        tiers=_parse_tiers(payload.get("tiers")),
    )
    return apply_env_overrides(config)


def apply_env_overrides(config: AppConfig) -> AppConfig:
    api_key = os.getenv("THREADLOOP_API_KEY")
    redis_url = os.getenv("THREADLOOP_REDIS_URL")
    if api_key:
        config = replace(config, llm=replace(config.llm, api_key=api_key))
    if redis_url:
        config = replace(config, redis=replace(config.redis, url=redis_url))
    return config


def save_config(path: Path, config: AppConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "llm": {
            "base_url": config.llm.base_url,
            "api_key": config.llm.api_key,
            "timeout_s": config.llm.timeout_s,
            "max_retries": config.llm.max_retries,
        },
        "redis": {
            "enabled": config.redis.enabled,
            "url": config.redis.url,
            "lock_ttl_s": config.redis.lock_ttl_s,
            "abort_ttl_s": config.redis.abort_ttl_s,
            "state_ttl_s": config.redis.state_ttl_s,
            "socket_timeout_s": config.redis.socket_timeout_s,
        },
        "engine": {
            "default_model": config.engine.default_model,
            "design_model": config.engine.design_model,
            "initial_confidence": config.engine.initial_confidence,
            "reflection_model": config.engine.reflection_model,
            "max_turns": config.engine.max_turns,
            "checkpoint_intervals": config.engine.checkpoint_intervals,
            "max_consecutive_failures": config.engine.max_consecutive_failures,
            "outbound_queue_size": config.engine.outbound_queue_size,
        },
        "tiers": config.tiers,
    }
    path.write_text(json.dumps(payload, indent=2))
