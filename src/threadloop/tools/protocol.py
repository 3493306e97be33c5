from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from threadloop.llm import _shared_http_client
from threadloop.models import ToolCall

logger = logging.getLogger(__name__)


class ToolExecutor(Protocol):
    def execute(self, name: str, arguments: dict[str, Any]) -> Any:
        ...


def decode_arguments(call: ToolCall) -> dict[str, Any]:
    if not call.arguments:
        return {}
    payload = json.loads(call.arguments)
    if not isinstance(payload, dict):
        raise ValueError(f"arguments for {call.name} must be a JSON object")
    return payload


def tool_message(call: ToolCall, result: Any) -> dict[str, Any]:
    """OpenAI ``tool`` role message carrying one call's result."""
    content = result if isinstance(result, str) else json.dumps(result, default=str)
    return {"role": "tool", "tool_call_id": call.id, "content": content}


@dataclass(frozen=True)
class HttpToolExecutor:
    """Runs MCP tools through the LiteLLM ``/mcp-rest/tools/call`` endpoint."""

    base_url: str
    api_key: str | None = None
    timeout_s: float = 120.0

    def execute(self, name: str, arguments: dict[str, Any]) -> Any:
        url = f"{self.base_url.rstrip('/')}/mcp-rest/tools/call"
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        response = _shared_http_client().post(
            url,
            headers=headers,
            json={"name": name, "arguments": arguments},
            timeout=self.timeout_s,
        )
        response.raise_for_status()
        try:
            return response.json()
        except ValueError:
            logger.debug("Tool %s returned a non-JSON body", name)
            return response.text

