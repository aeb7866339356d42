from __future__ import annotations

import json
from typing import Any

import allure
import httpx
import pytest

from agent_dispatch.orchestrator.backend.tools import (
    ECHO_TOOL,
    ToolDefinition,
    ToolRegistry,
    create_default_tool_registry,
    create_http_request_tool,
)

pytestmark = [
    allure.epic("Execution Backends"),
    allure.feature("Agent Tools"),
]


async def _explode(tool_input: dict[str, Any]) -> str:
    raise RuntimeError("disk on fire")


EXPLODING_TOOL = ToolDefinition(
    name="explode",
    description="Always fails.",
    input_schema={"type": "object"},
    execute=_explode,
)


def test_resolve_offers_nothing_without_allowlist() -> None:
    registry = create_default_tool_registry()

    assert registry.resolve([], []) == []
    assert [tool.name for tool in registry.resolve(["echo", "http_request"], [])] == [
        "echo",
        "http_request",
    ]
    assert [tool.name for tool in registry.resolve(["echo", "http_request"], ["echo"])] == [
        "http_request",
    ]
    assert registry.resolve(["missing"], []) == []


@pytest.mark.asyncio
async def test_execute_reports_unknown_and_failing_tools_as_errors() -> None:
    registry = ToolRegistry()
    registry.register(ECHO_TOOL)
    registry.register(EXPLODING_TOOL)

    echoed = await registry.execute("echo", {"text": "hello"})
    unknown = await registry.execute("nope", {})
    failed = await registry.execute("explode", {})

    assert echoed.output == "hello"
    assert not echoed.is_error
    assert unknown.is_error
    assert unknown.output == "Unknown tool: nope"
    assert failed.is_error
    assert failed.output == "disk on fire"


@pytest.mark.asyncio
async def test_echo_serializes_non_text_input() -> None:
    assert await ECHO_TOOL.execute({"count": 2}) == '{"count": 2}'


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("tool_input", "message"),
    [
        ({"url": "http://localhost:8080/admin"}, "localhost"),
        ({"url": "http://[::1]/"}, "localhost"),
        ({"url": "http://metadata.google.internal/"}, "internal"),
        ({"url": "ftp://example.com/file"}, "Invalid URL"),
        ({"url": "https://example.com", "method": "TRACE"}, "Unsupported HTTP method"),
    ],
)
async def test_http_request_refuses_unsafe_requests(
    tool_input: dict[str, Any],
    message: str,
) -> None:
    def _unreachable(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected request to {request.url}")

    tool = create_http_request_tool(transport=httpx.MockTransport(_unreachable))

    payload = json.loads(await tool.execute(tool_input))

    assert message in payload["error"]


@pytest.mark.asyncio
async def test_http_request_enforces_url_allowlist() -> None:
    tool = create_http_request_tool(
        allowed_url_prefixes=("https://api.example.com/",),
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="ok")),
    )

    refused = json.loads(await tool.execute({"url": "https://evil.example.net/"}))
    allowed = json.loads(await tool.execute({"url": "https://api.example.com/v1/items"}))

    assert refused == {"error": "URL is not in the allowed list"}
    assert allowed["status"] == 200
    assert allowed["body"] == "ok"


@pytest.mark.asyncio
async def test_http_request_sends_body_and_truncates_response() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, text="x" * 50, headers={"x-trace": "abc"})

    tool = create_http_request_tool(
        max_response_bytes=10,
        transport=httpx.MockTransport(_handler),
    )

    payload = json.loads(
        await tool.execute(
            {
                "url": "https://example.com/items",
                "method": "post",
                "headers": {"content-type": "application/json"},
                "body": '{"name": "widget"}',
            },
        ),
    )

    assert seen[0].method == "POST"
    assert seen[0].content == b'{"name": "widget"}'
    assert payload["status"] == 201
    assert payload["body"] == "x" * 10
    assert payload["truncated"] is True
    assert payload["headers"]["x-trace"] == "abc"
