"""Tool registry for the HTTP LLM agentic loop."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

import httpx

logger = logging.getLogger(__name__)

ToolFunc = Callable[[dict[str, Any]], Awaitable[str]]

DEFAULT_HTTP_TOOL_TIMEOUT_SECONDS = 30.0
DEFAULT_HTTP_TOOL_MAX_RESPONSE_BYTES = 1_048_576
_HTTP_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})
_BLOCKED_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", "0.0.0.0"})  # noqa: S104


@dataclass(slots=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: dict[str, Any]
    execute: ToolFunc


@dataclass(slots=True)
class ToolOutcome:
    output: str
    is_error: bool = False


@dataclass(slots=True)
class ToolRegistry:
    """Name-indexed set of tools the model may call."""

    tools: dict[str, ToolDefinition] = field(default_factory=dict)

    def register(self, tool: ToolDefinition) -> None:
        self.tools[tool.name] = tool

    def get(self, name: str) -> ToolDefinition | None:
        return self.tools.get(name)

    def resolve(self, allowed: list[str], denied: list[str]) -> list[ToolDefinition]:
        """Tools offered to the model: allowed minus denied; empty allowlist offers none."""

        if not allowed:
            return []
        allowed_set = set(allowed)
        denied_set = set(denied)
        return [
            tool
            for name, tool in self.tools.items()
            if name in allowed_set and name not in denied_set
        ]

    async def execute(self, name: str, tool_input: dict[str, Any]) -> ToolOutcome:
        tool = self.tools.get(name)
        if tool is None:
            return ToolOutcome(output=f"Unknown tool: {name}", is_error=True)
        try:
            return ToolOutcome(output=await tool.execute(tool_input))
        except Exception as error:  # noqa: BLE001
            logger.info("Tool %s failed: %s", name, error)
            return ToolOutcome(output=str(error) or "Tool execution failed", is_error=True)


async def _echo(tool_input: dict[str, Any]) -> str:
    text = tool_input.get("text")
    return text if isinstance(text, str) else json.dumps(tool_input)


ECHO_TOOL = ToolDefinition(
    name="echo",
    description="Echoes back the provided text unchanged. Useful for testing.",
    input_schema={
        "type": "object",
        "properties": {"text": {"type": "string", "description": "The text to echo back"}},
        "required": ["text"],
    },
    execute=_echo,
)


def create_http_request_tool(  # noqa: C901
    *,
    max_timeout_seconds: float = DEFAULT_HTTP_TOOL_TIMEOUT_SECONDS,
    max_response_bytes: int = DEFAULT_HTTP_TOOL_MAX_RESPONSE_BYTES,
    allowed_url_prefixes: tuple[str, ...] = (),
    transport: httpx.AsyncBaseTransport | None = None,
) -> ToolDefinition:
    """Build the `http_request` tool; loopback and `.internal` hosts are refused."""

    async def _execute(tool_input: dict[str, Any]) -> str:
        url = str(tool_input.get("url", ""))
        method = str(tool_input.get("method") or "GET").upper()
        headers = tool_input.get("headers") if isinstance(tool_input.get("headers"), dict) else {}
        body = tool_input.get("body") if isinstance(tool_input.get("body"), str) else None
        requested_timeout = tool_input.get("timeout_seconds")
        timeout = max_timeout_seconds
        if isinstance(requested_timeout, (int, float)) and requested_timeout > 0:
            timeout = min(float(requested_timeout), max_timeout_seconds)

        if method not in _HTTP_METHODS:
            return json.dumps({"error": f"Unsupported HTTP method: {method}"})
        parsed = urlsplit(url)
        if parsed.scheme not in {"http", "https"} or not parsed.hostname:
            return json.dumps({"error": f"Invalid URL: {url}"})
        hostname = parsed.hostname.strip("[]")
        if hostname in _BLOCKED_HOSTS or hostname.endswith(".internal"):
            return json.dumps(
                {"error": "Requests to localhost and internal addresses are not allowed"},
            )
        if allowed_url_prefixes and not any(url.startswith(p) for p in allowed_url_prefixes):
            return json.dumps({"error": "URL is not in the allowed list"})

        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.request(
                method,
                url,
                headers=headers,
                content=body if body and method != "GET" else None,
            )
        text = response.text
        payload: dict[str, Any] = {
            "status": response.status_code,
            "headers": dict(response.headers),
            "body": text[:max_response_bytes],
        }
        if len(text) > max_response_bytes:
            payload["truncated"] = True
        return json.dumps(payload)

    return ToolDefinition(
        name="http_request",
        description=(
            "Make an HTTP request to an external URL. "
            "Supports GET, POST, PUT, PATCH, DELETE methods."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "The URL to request"},
                "method": {"type": "string", "enum": sorted(_HTTP_METHODS)},
                "headers": {"type": "object", "description": "Request headers"},
                "body": {"type": "string", "description": "Request body, sent as-is"},
                "timeout_seconds": {"type": "number", "description": "Request timeout"},
            },
            "required": ["url"],
        },
        execute=_execute,
    )


def create_default_tool_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(ECHO_TOOL)
    registry.register(create_http_request_tool())
    return registry
