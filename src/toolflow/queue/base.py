"""Transport-neutral publish/subscribe contract."""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

JOB_CREATED_TOPIC = "job.created"


@dataclass(slots=True)
class QueueMessage:
    """Ephemeral envelope; lives only as long as the transport keeps it."""

    id: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))
    retry_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        envelope: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }
        if self.retry_count is not None:
            envelope["retryCount"] = self.retry_count
        return envelope

    @classmethod
    def from_dict(cls, envelope: Mapping[str, Any]) -> QueueMessage:
        payload = envelope.get("payload")
        retry_count = envelope.get("retryCount")
        return cls(
            id=str(envelope["id"]),
            type=str(envelope["type"]),
            payload=dict(payload) if isinstance(payload, Mapping) else {},
            timestamp=int(envelope.get("timestamp") or 0),
            retry_count=int(retry_count) if retry_count is not None else None,
        )


MessageHandler = Callable[[QueueMessage], None]


class QueueProducer(Protocol):
    """Publishes messages; returns once the transport accepted the enqueue."""

    def send(self, message: QueueMessage) -> None:
        """Publish ``message`` on the topic named by its ``type``."""

    def close(self) -> None:
        """Release transport resources."""


class QueueConsumer(Protocol):
    """Delivers messages at least once, with no ordering across messages.

    One handler per topic; subscribing again replaces the previous handler.
    A handler that raises leaves the message eligible for redelivery.
    """

    def subscribe(self, topic: str, handler: MessageHandler) -> None:
        """Register ``handler`` for ``topic``."""

    def start(self) -> None:
        """Begin consuming in the background."""

    def stop(self) -> None:
        """Stop consuming and wait for the in-flight delivery to finish."""

    def close(self) -> None:
        """Stop consuming and release transport resources."""
