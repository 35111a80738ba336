"""Durable queue transport stored in the SQLite database.

Consumers lease a message by pushing its ``visible_after`` forward with a
conditional update. A lease that is never acknowledged expires and the message
becomes visible again, which is what makes delivery at-least-once.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from toolflow.queue.base import MessageHandler, QueueMessage
from toolflow.storage.alembic_runner import upgrade_head
from toolflow.storage.common import build_sqlite_engine, dump_json, to_db_datetime, utc_now
from toolflow.storage.sqlmodel_models import QueueMessageRow

logger = logging.getLogger(__name__)


class SqliteQueueStore:
    """Table-level operations on ``queue_messages``."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def close(self) -> None:
        self.engine.dispose()

    def append(self, message: QueueMessage) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            session.add(
                QueueMessageRow(
                    message_id=message.id,
                    topic=message.type,
                    message_type=message.type,
                    payload_json=dump_json(message.payload),
                    timestamp_ms=message.timestamp,
                    retry_count=message.retry_count or 0,
                    lease_owner=None,
                    visible_after=now,
                    created_at=now,
                ),
            )
            session.commit()

    def lease(
        self,
        *,
        topics: tuple[str, ...],
        owner: str,
        visibility_timeout: timedelta,
    ) -> tuple[int, QueueMessage] | None:
        """Lease the oldest visible message from ``topics``."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueMessageRow)
                    .where(
                        col(QueueMessageRow.topic).in_(topics),
                        col(QueueMessageRow.visible_after) <= to_db_datetime(now),
                    )
                    .order_by(col(QueueMessageRow.seq).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueueMessageRow)
                    .where(
                        col(QueueMessageRow.seq) == candidate.seq,
                        col(QueueMessageRow.visible_after) == candidate.visible_after,
                    )
                    .values(
                        lease_owner=owner,
                        visible_after=to_db_datetime(now + visibility_timeout),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                payload = json.loads(candidate.payload_json)
                message = QueueMessage(
                    id=candidate.message_id,
                    type=candidate.message_type,
                    payload=payload if isinstance(payload, dict) else {},
                    timestamp=candidate.timestamp_ms,
                    retry_count=candidate.retry_count,
                )
                seq = candidate.seq or 0
                session.commit()
            return seq, message

    def ack(self, *, seq: int, owner: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(QueueMessageRow).where(
                    col(QueueMessageRow.seq) == seq,
                    col(QueueMessageRow.lease_owner) == owner,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def release(self, *, seq: int, owner: str, delay: timedelta) -> bool:
        """Return a leased message to the queue after ``delay``."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueMessageRow)
                .where(
                    col(QueueMessageRow.seq) == seq,
                    col(QueueMessageRow.lease_owner) == owner,
                )
                .values(
                    lease_owner=None,
                    retry_count=col(QueueMessageRow.retry_count) + 1,
                    visible_after=to_db_datetime(utc_now() + delay),
                ),
            )
            session.commit()
            return result.rowcount == 1

    def pending(self, topic: str) -> int:
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueMessageRow.seq).where(QueueMessageRow.topic == topic),
            ).all()
        return len(rows)


class SqliteQueueProducer:
    def __init__(self, store: SqliteQueueStore) -> None:
        self._store = store

    def send(self, message: QueueMessage) -> None:
        self._store.append(message)

    def close(self) -> None:
        self._store.close()


class SqliteQueueConsumer:
    """Polling consumer with lease-based redelivery."""

    def __init__(  # noqa: PLR0913
        self,
        store: SqliteQueueStore,
        *,
        consumer_id: str | None = None,
        poll_interval_seconds: float = 1.0,
        visibility_timeout_seconds: float = 300.0,
        max_deliveries: int = 5,
        redelivery_delay_seconds: float = 5.0,
    ) -> None:
        self._store = store
        self.consumer_id = consumer_id or f"consumer-{uuid4().hex[:8]}"
        self._poll_interval_seconds = poll_interval_seconds
        self._visibility_timeout = timedelta(seconds=visibility_timeout_seconds)
        self._max_deliveries = max_deliveries
        self._redelivery_delay = timedelta(seconds=redelivery_delay_seconds)
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
            name=f"toolflow-sqlite-consumer-{self.consumer_id}",
        )
        self._thread.start()
        logger.info("SQLite consumer %s started", self.consumer_id)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join()
        self._thread = None
        logger.info("SQLite consumer %s stopped", self.consumer_id)

    def close(self) -> None:
        self.stop()
        self._store.close()

    def deliver_once(self) -> bool:
        """Lease and handle at most one message; ``True`` when one was handled."""

        with self._handlers_lock:
            topics = tuple(self._handlers)
        if not topics:
            return False
        leased = self._store.lease(
            topics=topics,
            owner=self.consumer_id,
            visibility_timeout=self._visibility_timeout,
        )
        if leased is None:
            return False
        seq, message = leased
        with self._handlers_lock:
            handler = self._handlers[message.type]
        try:
            handler(message)
        except Exception:
            self._redeliver_or_drop(seq=seq, message=message)
            return True
        self._store.ack(seq=seq, owner=self.consumer_id)
        return True

    def _consume_loop(self) -> None:
        while not self._stop.is_set():
            try:
                delivered = self.deliver_once()
            except Exception:
                logger.exception("SQLite consumer %s poll failed", self.consumer_id)
                self._stop.wait(timeout=max(self._poll_interval_seconds, 1.0))
                continue
            if not delivered:
                self._stop.wait(timeout=self._poll_interval_seconds)

    def _redeliver_or_drop(self, *, seq: int, message: QueueMessage) -> None:
        deliveries = (message.retry_count or 0) + 1
        if deliveries >= self._max_deliveries:
            logger.exception(
                "Dropping message %s on %s after %d deliveries",
                message.id,
                message.type,
                deliveries,
            )
            self._store.ack(seq=seq, owner=self.consumer_id)
            return
        logger.warning(
            "Handler failed for message %s on %s, redelivering (%d/%d)",
            message.id,
            message.type,
            deliveries,
            self._max_deliveries,
            exc_info=True,
        )
        self._store.release(seq=seq, owner=self.consumer_id, delay=self._redelivery_delay)
