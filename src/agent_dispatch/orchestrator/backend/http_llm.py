"""HTTP LLM backend running a bounded agentic tool loop over streamed responses.

Two wire dialects are spoken over `httpx` server-sent events: the Anthropic
Messages API and OpenAI-compatible chat completions. Each turn streams text
deltas out as events; when the model stops to call tools, every requested
tool runs through the tool registry and the results are sent back as the
next turn, until the model answers without tools or `max_turns` is reached.
"""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from agent_dispatch.orchestrator.backend.base import (
    ALL_GOAL_TYPES,
    BackendCapabilities,
    BackendHealthReport,
    ExecutionResult,
    ExecutionStatus,
    ExecutionTask,
    HealthStatus,
    TextEvent,
    TokenUsage,
    ToolResultEvent,
    ToolUseEvent,
    UsageEvent,
    failed_result,
)
from agent_dispatch.orchestrator.backend.handle import ChannelExecutionHandle, Emit
from agent_dispatch.orchestrator.backend.tools import (
    ToolDefinition,
    ToolRegistry,
    create_default_tool_registry,
)
from agent_dispatch.orchestrator.errors import BackendNotStartedError, BackendStartError
from agent_dispatch.orchestrator.failure_classifier import classify_http_status
from agent_dispatch.orchestrator.models import ErrorClassification
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

ANTHROPIC_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_API_VERSION = "2023-06-01"
OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODELS = {"anthropic": "claude-sonnet-4-20250514", "openai": "gpt-4o"}
PROVIDER_KEY_ENV = {"anthropic": "ANTHROPIC_API_KEY", "openai": "OPENAI_API_KEY"}
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
MAX_OUTPUT_TOKENS = 8192
SUMMARY_CHARS = 200
CONNECT_TIMEOUT_SECONDS = 10.0
HEALTH_TIMEOUT_SECONDS = 5.0


@dataclass(slots=True)
class _ToolCall:
    id: str
    name: str
    arguments: str = ""

    def parsed_input(self) -> dict[str, Any]:
        if not self.arguments:
            return {}
        try:
            parsed = json.loads(self.arguments)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}


@dataclass(slots=True)
class _TurnOutcome:
    text: str = ""
    tool_calls: list[_ToolCall] = field(default_factory=list)
    stop_reason: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_calls) and self.stop_reason in {"tool_use", "tool_calls"}


class HttpLlmBackend:
    """Agentic loop against a hosted LLM API.

    Config keys accepted by `start()`: ``provider`` (``anthropic`` or
    ``openai``), ``api_key``, ``model`` and ``base_url``. Missing values fall
    back to ``LLM_PROVIDER``, ``LLM_API_KEY`` / the provider-specific key,
    ``LLM_MODEL`` and ``LLM_BASE_URL``.
    """

    def __init__(
        self,
        backend_id: str = "http-llm",
        *,
        tool_registry: ToolRegistry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._backend_id = backend_id
        self.tool_registry = tool_registry or create_default_tool_registry()
        self._transport = transport
        self.provider = "anthropic"
        self.model = DEFAULT_MODELS["anthropic"]
        self.base_url: str | None = None
        self._api_key = ""
        self._client: httpx.AsyncClient | None = None
        self._handles: set[ChannelExecutionHandle] = set()

    @property
    def backend_id(self) -> str:
        return self._backend_id

    async def start(self, config: dict[str, Any]) -> None:
        provider = str(config.get("provider") or os.environ.get("LLM_PROVIDER") or "anthropic")
        if provider not in DEFAULT_MODELS:
            raise BackendStartError(f"Unsupported LLM provider: {provider!r}")
        api_key = (
            config.get("api_key")
            or os.environ.get("LLM_API_KEY")
            or os.environ.get(PROVIDER_KEY_ENV[provider])
        )
        if not api_key:
            raise BackendStartError(
                f"LLM_API_KEY (or {PROVIDER_KEY_ENV[provider]}) is required for the "
                f"{self._backend_id} backend",
            )

        self.provider = provider
        self._api_key = str(api_key)
        self.model = str(
            config.get("model") or os.environ.get("LLM_MODEL") or DEFAULT_MODELS[provider],
        )
        self.base_url = config.get("base_url") or os.environ.get("LLM_BASE_URL")
        if self._client is not None:
            await self._client.aclose()
        self._client = httpx.AsyncClient(
            base_url=self.base_url or self._default_base_url(),
            headers=self._auth_headers(),
            timeout=httpx.Timeout(None, connect=CONNECT_TIMEOUT_SECONDS),
            transport=self._transport,
        )
        logger.info(
            "HTTP LLM backend %s started (provider=%s, model=%s)",
            self._backend_id,
            self.provider,
            self.model,
        )

    async def stop(self) -> None:
        for handle in list(self._handles):
            await handle.cancel("backend stopped")
        self._handles.clear()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> BackendHealthReport:
        if self._client is None:
            return BackendHealthReport(
                backend_id=self._backend_id,
                status=HealthStatus.UNHEALTHY,
                reason="Backend not started",
                checked_at=utc_now(),
            )

        started = time.monotonic()
        details = {"provider": self.provider, "model": self.model}
        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": 1,
            "messages": [{"role": "user", "content": "ping"}],
        }
        try:
            response = await self._client.post(
                self._endpoint(),
                json=body,
                timeout=HEALTH_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
        except httpx.HTTPError as error:
            return BackendHealthReport(
                backend_id=self._backend_id,
                status=HealthStatus.DEGRADED,
                reason=str(error) or type(error).__name__,
                checked_at=utc_now(),
                latency_ms=_elapsed_ms(started),
                details=details,
            )
        return BackendHealthReport(
            backend_id=self._backend_id,
            status=HealthStatus.HEALTHY,
            checked_at=utc_now(),
            latency_ms=_elapsed_ms(started),
            details=details,
        )

    async def execute_task(
        self,
        task: ExecutionTask,
        tool_registry: ToolRegistry | None = None,
    ) -> ChannelExecutionHandle:
        """Return a handle for one task; `tool_registry` overrides the shared tool set."""

        client = self._client
        if client is None:
            raise BackendNotStartedError(f"Backend {self._backend_id} is not started")

        registry = tool_registry or self.tool_registry
        model = task.constraints.model or self.model
        handle = ChannelExecutionHandle(
            task_id=task.id,
            producer=lambda emit: self._run(
                client=client,
                task=task,
                model=model,
                registry=registry,
                emit=emit,
            ),
        )
        self._handles.add(handle)
        handle.add_settle_callback(self._handles.discard)
        return handle

    def get_capabilities(self) -> BackendCapabilities:
        return BackendCapabilities(
            supports_streaming=True,
            supports_file_edit=False,
            supports_shell_execution=False,
            reports_token_usage=True,
            supports_cancellation=True,
            supported_goal_types=ALL_GOAL_TYPES,
            max_context_tokens=200_000,
        )

    async def _run(  # noqa: PLR0913
        self,
        *,
        client: httpx.AsyncClient,
        task: ExecutionTask,
        model: str,
        registry: ToolRegistry,
        emit: Emit,
    ) -> ExecutionResult:
        started = time.monotonic()
        tools = registry.resolve(task.constraints.allowed_tools, task.constraints.denied_tools)
        messages = self._initial_messages(task)
        usage = TokenUsage()
        full_text = ""
        outcome = _TurnOutcome()
        max_turns = max(task.constraints.max_turns, 1)

        try:
            for turn in range(max_turns):
                outcome = _TurnOutcome()
                await self._stream_turn(
                    client=client,
                    body=self._request_body(task, model, messages, tools),
                    outcome=outcome,
                    emit=emit,
                )
                full_text += outcome.text
                usage.add(outcome.usage)
                if not outcome.wants_tools or turn + 1 >= max_turns:
                    break

                messages.append(self._assistant_message(outcome))
                results: list[tuple[_ToolCall, str, bool]] = []
                for call in outcome.tool_calls:
                    tool_input = call.parsed_input()
                    await emit(ToolUseEvent(tool_name=call.name, tool_input=tool_input))
                    tool_outcome = await registry.execute(call.name, tool_input)
                    await emit(
                        ToolResultEvent(
                            tool_name=call.name,
                            output=tool_outcome.output,
                            is_error=tool_outcome.is_error,
                        ),
                    )
                    results.append((call, tool_outcome.output, tool_outcome.is_error))
                messages.extend(self._tool_result_messages(results))
        except httpx.HTTPStatusError as error:
            classified = classify_http_status(error.response.status_code)
            return self._api_failure(
                task=task,
                message=f"{self.provider} API returned HTTP {error.response.status_code}",
                classification=classified.classification,
                code=classified.reason_code,
                full_text=full_text + outcome.text,
                usage=usage,
                started=started,
            )
        except httpx.HTTPError as error:
            return self._api_failure(
                task=task,
                message=f"{self.provider} API error: {error or type(error).__name__}",
                classification=ErrorClassification.TRANSIENT,
                code="transport_error",
                full_text=full_text + outcome.text,
                usage=usage,
                started=started,
            )

        await emit(UsageEvent(token_usage=usage))
        return ExecutionResult(
            task_id=task.id,
            status=ExecutionStatus.COMPLETED,
            summary=full_text[:SUMMARY_CHARS],
            stdout=full_text,
            token_usage=usage,
            duration_ms=_elapsed_ms(started),
        )

    async def _stream_turn(
        self,
        *,
        client: httpx.AsyncClient,
        body: dict[str, Any],
        outcome: _TurnOutcome,
        emit: Emit,
    ) -> None:
        """Stream one turn into `outcome`, which keeps partial text if the stream breaks."""

        async with client.stream("POST", self._endpoint(), json=body) as response:
            if response.is_error:
                await response.aread()
                response.raise_for_status()
            if self.provider == "anthropic":
                await _consume_anthropic_stream(_sse_payloads(response), outcome, emit)
            else:
                await _consume_openai_stream(_sse_payloads(response), outcome, emit)

    def _initial_messages(self, task: ExecutionTask) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        system_prompt = task.context.system_prompt or DEFAULT_SYSTEM_PROMPT
        if self.provider == "openai":
            messages.append({"role": "system", "content": system_prompt})
        for turn in task.instruction.conversation_history:
            messages.append({"role": turn.role, "content": turn.content})
        messages.append({"role": "user", "content": task.instruction.prompt})
        return messages

    def _request_body(
        self,
        task: ExecutionTask,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition],
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "max_tokens": min(task.constraints.max_tokens, MAX_OUTPUT_TOKENS),
            "messages": messages,
            "stream": True,
        }
        if self.provider == "anthropic":
            body["system"] = task.context.system_prompt or DEFAULT_SYSTEM_PROMPT
            if tools:
                body["tools"] = [
                    {
                        "name": tool.name,
                        "description": tool.description,
                        "input_schema": tool.input_schema,
                    }
                    for tool in tools
                ]
        else:
            body["stream_options"] = {"include_usage": True}
            if tools:
                body["tools"] = [
                    {
                        "type": "function",
                        "function": {
                            "name": tool.name,
                            "description": tool.description,
                            "parameters": tool.input_schema,
                        },
                    }
                    for tool in tools
                ]
        return body

    def _assistant_message(self, outcome: _TurnOutcome) -> dict[str, Any]:
        if self.provider == "anthropic":
            content: list[dict[str, Any]] = []
            if outcome.text:
                content.append({"type": "text", "text": outcome.text})
            content.extend(
                {
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": call.parsed_input(),
                }
                for call in outcome.tool_calls
            )
            return {"role": "assistant", "content": content}
        return {
            "role": "assistant",
            "content": outcome.text or None,
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in outcome.tool_calls
            ],
        }

    def _tool_result_messages(
        self,
        results: list[tuple[_ToolCall, str, bool]],
    ) -> list[dict[str, Any]]:
        if self.provider == "anthropic":
            return [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": call.id,
                            "content": output,
                            "is_error": is_error,
                        }
                        for call, output, is_error in results
                    ],
                },
            ]
        return [
            {"role": "tool", "tool_call_id": call.id, "content": output}
            for call, output, _ in results
        ]

    def _api_failure(  # noqa: PLR0913
        self,
        *,
        task: ExecutionTask,
        message: str,
        classification: ErrorClassification,
        code: str,
        full_text: str,
        usage: TokenUsage,
        started: float,
    ) -> ExecutionResult:
        logger.warning("Task %s on %s failed: %s", task.id, self._backend_id, message)
        result = failed_result(
            task_id=task.id,
            message=message,
            classification=classification,
            code=code,
            partial_execution=bool(full_text),
            duration_ms=_elapsed_ms(started),
        )
        result.stdout = full_text
        result.stderr = message
        result.token_usage = usage
        return result

    def _endpoint(self) -> str:
        return "/v1/messages" if self.provider == "anthropic" else "/chat/completions"

    def _default_base_url(self) -> str:
        return ANTHROPIC_BASE_URL if self.provider == "anthropic" else OPENAI_BASE_URL

    def _auth_headers(self) -> dict[str, str]:
        if self.provider == "anthropic":
            return {"x-api-key": self._api_key, "anthropic-version": ANTHROPIC_API_VERSION}
        return {"Authorization": f"Bearer {self._api_key}"}


async def _sse_payloads(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    """Yield decoded JSON payloads of `data:` lines; stops at ``[DONE]``."""

    async for line in response.aiter_lines():
        if not line.startswith("data:"):
            continue
        data = line[len("data:") :].strip()
        if not data:
            continue
        if data == "[DONE]":
            return
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed SSE payload: %s", data[:200])
            continue
        if isinstance(payload, dict):
            yield payload


async def _consume_anthropic_stream(
    payloads: AsyncIterator[dict[str, Any]],
    outcome: _TurnOutcome,
    emit: Emit,
) -> None:
    blocks: dict[int, _ToolCall] = {}
    async for payload in payloads:
        kind = payload.get("type")
        if kind == "message_start":
            _add_anthropic_usage(outcome.usage, payload.get("message", {}).get("usage") or {})
        elif kind == "content_block_start":
            block = payload.get("content_block") or {}
            if block.get("type") == "tool_use":
                call = _ToolCall(id=str(block.get("id", "")), name=str(block.get("name", "")))
                initial = block.get("input")
                if initial:
                    call.arguments = json.dumps(initial)
                blocks[int(payload.get("index", len(blocks)))] = call
        elif kind == "content_block_delta":
            delta = payload.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                outcome.text += delta["text"]
                await emit(TextEvent(content=delta["text"]))
            elif delta.get("type") == "input_json_delta":
                call = blocks.get(int(payload.get("index", -1)))
                if call is not None:
                    call.arguments += str(delta.get("partial_json", ""))
        elif kind == "message_delta":
            outcome.stop_reason = (payload.get("delta") or {}).get("stop_reason")
            final_usage = payload.get("usage") or {}
            if "output_tokens" in final_usage:
                # message_delta carries the cumulative output count for the turn
                outcome.usage.output_tokens = int(final_usage["output_tokens"] or 0)
        elif kind == "error":
            error = payload.get("error") or {}
            raise httpx.RemoteProtocolError(str(error.get("message") or "stream error"))
    outcome.tool_calls = [blocks[index] for index in sorted(blocks)]


async def _consume_openai_stream(
    payloads: AsyncIterator[dict[str, Any]],
    outcome: _TurnOutcome,
    emit: Emit,
) -> None:
    calls: dict[int, _ToolCall] = {}
    async for payload in payloads:
        usage = payload.get("usage")
        if usage:
            outcome.usage.input_tokens += int(usage.get("prompt_tokens") or 0)
            outcome.usage.output_tokens += int(usage.get("completion_tokens") or 0)
        choices = payload.get("choices") or []
        if not choices:
            continue
        choice = choices[0]
        delta = choice.get("delta") or {}
        text = delta.get("content")
        if text:
            outcome.text += text
            await emit(TextEvent(content=text))
        for item in delta.get("tool_calls") or []:
            index = int(item.get("index", 0))
            function = item.get("function") or {}
            call = calls.setdefault(index, _ToolCall(id="", name=""))
            if item.get("id"):
                call.id = str(item["id"])
            if function.get("name"):
                call.name = str(function["name"])
            if function.get("arguments"):
                call.arguments += str(function["arguments"])
        if choice.get("finish_reason"):
            outcome.stop_reason = choice["finish_reason"]
    outcome.tool_calls = [calls[index] for index in sorted(calls)]
    if outcome.tool_calls and outcome.stop_reason is None:
        outcome.stop_reason = "tool_calls"


def _add_anthropic_usage(usage: TokenUsage, raw: dict[str, Any]) -> None:
    usage.input_tokens += int(raw.get("input_tokens") or 0)
    usage.output_tokens += int(raw.get("output_tokens") or 0)
    usage.cache_read_tokens += int(raw.get("cache_read_input_tokens") or 0)
    usage.cache_creation_tokens += int(raw.get("cache_creation_input_tokens") or 0)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
