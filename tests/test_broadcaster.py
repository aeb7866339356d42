from __future__ import annotations

import logging

import allure
import pytest

from agent_dispatch.orchestrator.broadcaster import (
    AGENT_COMPLETE,
    AGENT_OUTPUT,
    LoggingBroadcaster,
    RecordingBroadcaster,
)

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Broadcasting"),
]


def test_logging_broadcaster_names_forwarded_event_type(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="agent_dispatch.orchestrator.broadcaster")

    LoggingBroadcaster().broadcast(
        "agent-1",
        AGENT_OUTPUT,
        {"job_id": "job-1", "task_id": "task-1", "event": {"type": "tool_use", "name": "echo"}},
    )
    LoggingBroadcaster().broadcast(
        "agent-1",
        AGENT_COMPLETE,
        {"job_id": "job-1", "status": "COMPLETED", "summary": "done"},
    )

    messages = [record.getMessage() for record in caplog.records]
    assert messages == [
        "[agent-1] agent:output tool_use",
        "[agent-1] job job-1 settled as COMPLETED",
    ]


def test_recording_broadcaster_filters_by_type() -> None:
    broadcaster = RecordingBroadcaster()
    broadcaster.broadcast("agent-1", AGENT_OUTPUT, {"event": {"type": "text"}})
    broadcaster.broadcast("agent-1", AGENT_COMPLETE, {"status": "FAILED"})

    assert [message.payload for message in broadcaster.of_type(AGENT_COMPLETE)] == [
        {"status": "FAILED"},
    ]
