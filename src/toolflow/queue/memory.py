"""In-process queue transport for single-process deployments and tests."""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from collections.abc import Iterable

from toolflow.queue.base import MessageHandler, QueueMessage

logger = logging.getLogger(__name__)


class InMemoryBroker:
    """Thread-safe per-topic FIFO shared by producers and consumers."""

    def __init__(self) -> None:
        self._messages: defaultdict[str, deque[QueueMessage]] = defaultdict(deque)
        self._condition = threading.Condition()

    def publish(self, topic: str, message: QueueMessage) -> None:
        with self._condition:
            self._messages[topic].append(message)
            self._condition.notify_all()

    def take(
        self,
        topics: Iterable[str],
        *,
        timeout_seconds: float,
    ) -> tuple[str, QueueMessage] | None:
        """Pop the oldest message from any of ``topics``, waiting up to the timeout."""

        wanted = tuple(topics)
        deadline = time.monotonic() + timeout_seconds
        with self._condition:
            while True:
                for topic in wanted:
                    pending = self._messages.get(topic)
                    if pending:
                        return topic, pending.popleft()
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._condition.wait(remaining)

    def pending(self, topic: str) -> int:
        with self._condition:
            return len(self._messages.get(topic, ()))


_DEFAULT_BROKER = InMemoryBroker()


def default_broker() -> InMemoryBroker:
    """Broker shared by memory producers/consumers created without an explicit one."""

    return _DEFAULT_BROKER


class InMemoryProducer:
    def __init__(self, broker: InMemoryBroker) -> None:
        self._broker = broker

    def send(self, message: QueueMessage) -> None:
        self._broker.publish(message.type, message)

    def close(self) -> None:
        return None


class InMemoryConsumer:
    """Background-thread consumer over an :class:`InMemoryBroker`."""

    def __init__(
        self,
        broker: InMemoryBroker,
        *,
        poll_timeout_seconds: float = 0.2,
        max_deliveries: int = 5,
    ) -> None:
        self._broker = broker
        self._poll_timeout_seconds = poll_timeout_seconds
        self._max_deliveries = max_deliveries
        self._handlers: dict[str, MessageHandler] = {}
        self._handlers_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def subscribe(self, topic: str, handler: MessageHandler) -> None:
        with self._handlers_lock:
            self._handlers[topic] = handler

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._consume_loop,
            daemon=True,
            name="toolflow-memory-consumer",
        )
        self._thread.start()
        logger.info("Memory consumer started")

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join()
        self._thread = None
        logger.info("Memory consumer stopped")

    def close(self) -> None:
        self.stop()

    def deliver_once(self, *, timeout_seconds: float | None = None) -> bool:
        """Deliver at most one message synchronously; ``True`` when one was handled."""

        with self._handlers_lock:
            topics = tuple(self._handlers)
        if not topics:
            return False
        wait_seconds = self._poll_timeout_seconds if timeout_seconds is None else timeout_seconds
        taken = self._broker.take(topics, timeout_seconds=wait_seconds)
        if taken is None:
            return False
        topic, message = taken
        with self._handlers_lock:
            handler = self._handlers.get(topic)
        if handler is None:
            self._broker.publish(topic, message)
            return False
        try:
            handler(message)
        except Exception:
            self._redeliver_or_drop(topic=topic, message=message)
        return True

    def _consume_loop(self) -> None:
        while not self._stop.is_set():
            if not self.deliver_once():
                self._stop.wait(timeout=0.01)

    def _redeliver_or_drop(self, *, topic: str, message: QueueMessage) -> None:
        deliveries = (message.retry_count or 0) + 1
        if deliveries >= self._max_deliveries:
            logger.exception(
                "Dropping message %s on %s after %d deliveries",
                message.id,
                topic,
                deliveries,
            )
            return
        logger.warning(
            "Handler failed for message %s on %s, redelivering (%d/%d)",
            message.id,
            topic,
            deliveries,
            self._max_deliveries,
            exc_info=True,
        )
        message.retry_count = deliveries
        self._broker.publish(topic, message)
