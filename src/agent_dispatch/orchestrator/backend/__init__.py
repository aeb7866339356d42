"""Execution backend implementations."""

from agent_dispatch.orchestrator.backend.base import (
    ExecutionBackend,
    ExecutionHandle,
    ExecutionResult,
    ExecutionTask,
)
from agent_dispatch.orchestrator.backend.cli_backend import CliAgentBackend
from agent_dispatch.orchestrator.backend.echo_backend import EchoBackend, ScriptedBackend
from agent_dispatch.orchestrator.backend.handle import ChannelExecutionHandle
from agent_dispatch.orchestrator.backend.http_llm import HttpLlmBackend

__all__ = [
    "ChannelExecutionHandle",
    "CliAgentBackend",
    "EchoBackend",
    "ExecutionBackend",
    "ExecutionHandle",
    "ExecutionResult",
    "ExecutionTask",
    "HttpLlmBackend",
    "ScriptedBackend",
]
