"""Execution-backend orchestration for agent-operations workers."""

__version__ = "0.1.0"
