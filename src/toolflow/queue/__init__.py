"""Pluggable queue transports selected by configuration."""

from __future__ import annotations

from toolflow.config import Settings
from toolflow.queue.base import (
    JOB_CREATED_TOPIC,
    MessageHandler,
    QueueConsumer,
    QueueMessage,
    QueueProducer,
)
from toolflow.queue.memory import (
    InMemoryBroker,
    InMemoryConsumer,
    InMemoryProducer,
    default_broker,
)
from toolflow.queue.sqlite import SqliteQueueConsumer, SqliteQueueProducer, SqliteQueueStore

__all__ = [
    "JOB_CREATED_TOPIC",
    "InMemoryBroker",
    "MessageHandler",
    "QueueConsumer",
    "QueueMessage",
    "QueueProducer",
    "create_consumer",
    "create_producer",
]


def create_producer(settings: Settings, *, broker: InMemoryBroker | None = None) -> QueueProducer:
    """Build the producer for the configured backend."""

    if settings.queue.backend == "memory":
        return InMemoryProducer(broker or default_broker())
    if settings.queue.backend == "sqlite":
        store = SqliteQueueStore(
            settings.queue_db_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        store.init_schema()
        return SqliteQueueProducer(store)
    raise ValueError(f"Unsupported queue backend: {settings.queue.backend!r}")


def create_consumer(
    settings: Settings,
    *,
    consumer_id: str | None = None,
    broker: InMemoryBroker | None = None,
) -> QueueConsumer:
    """Build the consumer for the configured backend."""

    if settings.queue.backend == "memory":
        return InMemoryConsumer(
            broker or default_broker(),
            poll_timeout_seconds=settings.queue.poll_interval_seconds,
            max_deliveries=settings.queue.max_deliveries,
        )
    if settings.queue.backend == "sqlite":
        store = SqliteQueueStore(
            settings.queue_db_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        store.init_schema()
        return SqliteQueueConsumer(
            store,
            consumer_id=consumer_id,
            poll_interval_seconds=settings.queue.poll_interval_seconds,
            visibility_timeout_seconds=settings.queue.visibility_timeout_seconds,
            max_deliveries=settings.queue.max_deliveries,
            redelivery_delay_seconds=settings.queue.redelivery_delay_seconds,
        )
    raise ValueError(f"Unsupported queue backend: {settings.queue.backend!r}")
