"""Fan-out of live execution events to subscribers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

AGENT_OUTPUT = "agent:output"
AGENT_COMPLETE = "agent:complete"


class StreamBroadcaster(Protocol):
    def broadcast(self, channel: str, event_type: str, payload: dict[str, Any]) -> None:
        """Deliver one message; must not raise into the caller."""


class LoggingBroadcaster:
    """Broadcaster that writes every message to the log."""

    def broadcast(self, channel: str, event_type: str, payload: dict[str, Any]) -> None:
        if event_type == AGENT_COMPLETE:
            logger.info(
                "[%s] job %s settled as %s",
                channel,
                payload.get("job_id"),
                payload.get("status"),
            )
            return
        event = payload.get("event") or {}
        logger.debug("[%s] %s %s", channel, event_type, event.get("type"))


@dataclass(slots=True)
class BroadcastMessage:
    channel: str
    event_type: str
    payload: dict[str, Any]


@dataclass(slots=True)
class RecordingBroadcaster:
    """Keeps every message in memory, in delivery order."""

    messages: list[BroadcastMessage] = field(default_factory=list)

    def broadcast(self, channel: str, event_type: str, payload: dict[str, Any]) -> None:
        self.messages.append(BroadcastMessage(channel, event_type, payload))

    def of_type(self, event_type: str) -> list[BroadcastMessage]:
        return [message for message in self.messages if message.event_type == event_type]
