from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Protocol

import httpx

from threadloop.models import ToolCall

logger = logging.getLogger(__name__)


class LLMResponseError(ValueError):
    """The endpoint answered 2xx with a payload we cannot use."""


@lru_cache(maxsize=1)
def _shared_http_client() -> httpx.Client:
    return httpx.Client()


@dataclass(frozen=True)
class ChatCompletion:
    content: str
    model: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)

    @property
    def prompt_tokens(self) -> int | None:
        return self.usage.get("prompt_tokens")

    @property
    def completion_tokens(self) -> int | None:
        return self.usage.get("completion_tokens")


class LLMClient(Protocol):
    def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | None = None,
    ) -> ChatCompletion:
        ...

    def fetch_tools(self) -> list[dict[str, Any]]:
        ...


def parse_tool_calls(raw: Any) -> list[ToolCall]:
    if not raw:
        return []
    if not isinstance(raw, list):
        raise LLMResponseError("tool_calls must be a list")
    calls: list[ToolCall] = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise LLMResponseError("tool call entry must be an object")
        function = entry.get("function") or {}
        name = function.get("name")
        if not isinstance(name, str) or not name.strip():
            raise LLMResponseError("tool call is missing a function name")
        arguments = function.get("arguments")
        if arguments is None:
            arguments = "{}"
        elif not isinstance(arguments, str):
            # Some providers send already-decoded argument objects.
            arguments = json.dumps(arguments)
        call_id = entry.get("id") or f"call_{index + 1}"
        calls.append(ToolCall(id=str(call_id), name=name, arguments=arguments))
    return calls


def parse_chat_completion(data: Any, model: str) -> ChatCompletion:
    if not isinstance(data, dict):
        raise LLMResponseError("completion payload must be an object")
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        raise LLMResponseError("completion payload has no choices")
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        raise LLMResponseError("completion choice has no message")
    usage_raw = data.get("usage") if isinstance(data.get("usage"), dict) else {}
    usage = {
        key: int(value)
        for key, value in usage_raw.items()
        if key in {"prompt_tokens", "completion_tokens", "total_tokens"} and value is not None
    }
    return ChatCompletion(
        content=message.get("content") or "",
        model=str(data.get("model") or model),
        tool_calls=parse_tool_calls(message.get("tool_calls")),
        usage=usage,
    )


def mcp_tool_to_openai(tool: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool["name"],
            "description": tool.get("description") or "",
            "parameters": tool.get("inputSchema") or {},
        },
    }


@dataclass(frozen=True)
class LiteLLMClient:
    """Client for an OpenAI-compatible LiteLLM proxy."""

    base_url: str
    api_key: str | None = None
    timeout_s: float = 120.0
    max_retries: int = 2
    retry_delay_s: float = 1.0

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | None = None,
    ) -> ChatCompletion:
        url = f"{self.base_url.rstrip('/')}/v1/chat/completions"
        payload: dict[str, Any] = {"model": model, "messages": messages}
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = tool_choice or "auto"
        client = _shared_http_client()
        attempts = max(0, self.max_retries) + 1
        for attempt in range(attempts):
            started = time.monotonic()
            try:
                response = client.post(
                    url, headers=self._headers(), json=payload, timeout=self.timeout_s
                )
                response.raise_for_status()
            except httpx.TimeoutException:
                logger.warning(
                    "LiteLLM call to %s timed out (attempt %s/%s)", model, attempt + 1, attempts
                )
                if attempt >= attempts - 1:
                    raise
                if self.retry_delay_s > 0:
                    time.sleep(self.retry_delay_s * (attempt + 1))
                continue
            logger.info(
                "LiteLLM call to %s completed in %.0fms",
                model,
                (time.monotonic() - started) * 1000,
            )
            try:
                data = response.json()
            except ValueError as exc:
                raise LLMResponseError(f"invalid JSON from LiteLLM: {exc}") from exc
            return parse_chat_completion(data, model)
        raise RuntimeError("LiteLLM request failed without response")

    def fetch_tools(self) -> list[dict[str, Any]]:
        url = f"{self.base_url.rstrip('/')}/v1/mcp/tools"
        headers = {"accept": "application/json"}
        if self.api_key:
            headers["x-litellm-api-key"] = self.api_key
        response = _shared_http_client().get(url, headers=headers, timeout=self.timeout_s)
        response.raise_for_status()
        try:
            data = response.json()
        except ValueError as exc:
            raise LLMResponseError(f"invalid JSON from MCP endpoint: {exc}") from exc
        tools = data.get("tools") if isinstance(data, dict) else None
        if not isinstance(tools, list):
            raise LLMResponseError("MCP endpoint returned invalid format - missing tools array")
        converted = [mcp_tool_to_openai(tool) for tool in tools if isinstance(tool, dict) and tool.get("name")]
        logger.info("Fetched %s MCP tools", len(converted))
        return converted
