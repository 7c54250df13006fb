"""SQLite-backed durable message queue with leases and retries."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from ticket_agent.errors import QueueError
from ticket_agent.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from ticket_agent.storage.sqlmodel_models import QueueMessage, QueueTopic

logger = logging.getLogger(__name__)

_RETRY_MAX_SECONDS = 900


class MessageState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class QueueDelivery:
    """One claimed message handed to a subscriber."""

    message_id: str
    topic: str
    key: str | None
    payload: dict[str, Any]
    attempts: int


@dataclass(slots=True)
class QueueMessageView:
    message_id: str
    topic: str
    key: str | None
    state: MessageState
    attempts: int
    retry_limit: int
    run_after: datetime
    locked_by: str | None
    last_error: str | None
    completed_at: datetime | None
    payload: dict[str, Any] = field(default_factory=dict)


Handler = Callable[[QueueDelivery], None]


@dataclass(slots=True)
class _Subscription:
    topic: str
    handler: Handler
    concurrency: int


class DurableQueue:
    """At-least-once delivery over a ``queue_messages`` table.

    Each subscription slot runs in its own thread and holds at most one message.
    Claims are compare-and-set updates guarded by a lease; a keep-alive thread
    extends leases of in-flight messages so only crashed holders lose them.
    """

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        worker_id: str,
        busy_timeout_ms: int = 5_000,
        lease_seconds: int = 60,
        retry_limit: int = 2,
        retry_backoff_seconds: int = 30,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self.db_path = db_path
        self.worker_id = worker_id
        self.lease_seconds = lease_seconds
        self.retry_limit = retry_limit
        self.retry_backoff_seconds = retry_backoff_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._subscriptions: list[_Subscription] = []
        self._threads: list[threading.Thread] = []
        self._keepalive_thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._inflight: set[str] = set()
        self._inflight_lock = threading.Lock()
        self._started = False

    def declare_topic(self, name: str) -> None:
        """Create the topic if it does not exist."""

        with Session(self.engine) as session:
            if session.get(QueueTopic, name) is not None:
                return
            session.add(QueueTopic(name=name, created_at=utc_now()))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()

    def send(
        self,
        topic: str,
        payload: dict[str, Any],
        *,
        key: str | None = None,
        run_after: datetime | None = None,
    ) -> str:
        """Persist one message and return its id."""

        now = utc_now()
        message_id = str(uuid4())
        with Session(self.engine) as session:
            if session.get(QueueTopic, topic) is None:
                raise QueueError(f"Unknown queue topic: {topic}")
            session.add(
                QueueMessage(
                    message_id=message_id,
                    topic=topic,
                    key=key,
                    payload_json=json.dumps(payload, ensure_ascii=False),
                    state=MessageState.QUEUED.value,
                    attempts=0,
                    retry_limit=self.retry_limit,
                    run_after=to_db_datetime(run_after or now),
                    created_at=now,
                    updated_at=now,
                ),
            )
            session.commit()
        logger.debug("Queued message %s on %s (key=%s)", message_id, topic, key)
        return message_id

    def subscribe(self, topic: str, handler: Handler, *, concurrency: int = 1) -> None:
        if concurrency <= 0:
            raise QueueError("Subscription concurrency must be a positive integer.")
        if self._started:
            raise QueueError("Cannot subscribe after the queue has started.")
        self._subscriptions.append(
            _Subscription(topic=topic, handler=handler, concurrency=concurrency),
        )

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._stop_event.clear()
        for subscription in self._subscriptions:
            for slot in range(subscription.concurrency):
                thread = threading.Thread(
                    target=self._consume,
                    args=(subscription,),
                    daemon=True,
                    name=f"queue-{subscription.topic}-{slot}",
                )
                thread.start()
                self._threads.append(thread)
        self._keepalive_thread = threading.Thread(
            target=self._keep_alive,
            daemon=True,
            name="queue-keepalive",
        )
        self._keepalive_thread.start()
        logger.info(
            "Queue started: worker=%s subscriptions=%s",
            self.worker_id,
            ", ".join(f"{s.topic}x{s.concurrency}" for s in self._subscriptions),
        )

    def stop(self, timeout: float | None = None) -> bool:
        """Stop claiming new messages and wait for in-flight handlers.

        Returns ``True`` when every consumer thread finished within ``timeout``.
        Safe to call repeatedly.
        """

        self._stop_event.set()
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        finished = not any(thread.is_alive() for thread in self._threads)
        if finished and self._keepalive_thread is not None:
            self._keepalive_thread.join(timeout=self.poll_interval_seconds + 1)
        return finished

    def close(self) -> None:
        self.stop(timeout=0)
        self.engine.dispose()

    def has_pending(self, topic: str, key: str) -> bool:
        """Whether a queued or active message exists for ``key`` on ``topic``."""

        with Session(self.engine) as session:
            row = session.exec(
                select(QueueMessage.message_id)
                .where(
                    QueueMessage.topic == topic,
                    QueueMessage.key == key,
                    col(QueueMessage.state).in_(
                        [MessageState.QUEUED.value, MessageState.ACTIVE.value],
                    ),
                )
                .limit(1),
            ).first()
        return row is not None

    def purge_completed(self, older_than: timedelta) -> int:
        cutoff = to_db_datetime(utc_now() - older_than)
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(QueueMessage).where(
                    col(QueueMessage.state) == MessageState.COMPLETED.value,
                    col(QueueMessage.completed_at) < cutoff,
                ),
            )
            session.commit()
            return result.rowcount or 0

    def get_message(self, message_id: str) -> QueueMessageView | None:
        with Session(self.engine) as session:
            row = session.get(QueueMessage, message_id)
            return _to_message_view(row) if row is not None else None

    def list_messages(
        self,
        *,
        topic: str | None = None,
        state: MessageState | None = None,
        limit: int = 100,
    ) -> list[QueueMessageView]:
        with Session(self.engine) as session:
            statement = (
                select(QueueMessage).order_by(col(QueueMessage.created_at).asc()).limit(limit)
            )
            if topic is not None:
                statement = statement.where(QueueMessage.topic == topic)
            if state is not None:
                statement = statement.where(QueueMessage.state == state.value)
            rows = session.exec(statement).all()
        return [_to_message_view(row) for row in rows]

    def claim(self, topic: str) -> QueueDelivery | None:
        """Claim the next ready message on ``topic`` for this worker."""

        while True:
            now = to_db_datetime(utc_now())
            ready = or_(
                (col(QueueMessage.state) == MessageState.QUEUED.value)
                & (col(QueueMessage.run_after) <= now),
                (col(QueueMessage.state) == MessageState.ACTIVE.value)
                & (col(QueueMessage.locked_until) < now),
            )
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueMessage)
                    .where(QueueMessage.topic == topic, ready)
                    .order_by(
                        col(QueueMessage.run_after).asc(),
                        col(QueueMessage.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                if (
                    candidate.state == MessageState.ACTIVE.value
                    and candidate.attempts > candidate.retry_limit
                ):
                    self._expire(session=session, candidate=candidate, now=now)
                    continue

                # The ORM update below refreshes `candidate` in place.
                previous_state = candidate.state
                previous_owner = candidate.locked_by
                attempts = candidate.attempts + 1
                result = session.exec(
                    sa_update(QueueMessage)
                    .where(
                        col(QueueMessage.message_id) == candidate.message_id,
                        col(QueueMessage.state) == previous_state,
                        col(QueueMessage.attempts) == attempts - 1,
                    )
                    .values(
                        state=MessageState.ACTIVE.value,
                        attempts=attempts,
                        locked_by=self.worker_id,
                        locked_until=now + timedelta(seconds=self.lease_seconds),
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                if previous_state == MessageState.ACTIVE.value:
                    logger.warning(
                        "Reclaimed message %s on %s after lease expiry (held by %s)",
                        candidate.message_id,
                        topic,
                        previous_owner,
                    )
                return QueueDelivery(
                    message_id=candidate.message_id,
                    topic=candidate.topic,
                    key=candidate.key,
                    payload=json.loads(candidate.payload_json),
                    attempts=attempts,
                )

    def ack(self, delivery: QueueDelivery) -> None:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            session.exec(
                sa_update(QueueMessage)
                .where(
                    col(QueueMessage.message_id) == delivery.message_id,
                    col(QueueMessage.locked_by) == self.worker_id,
                )
                .values(
                    state=MessageState.COMPLETED.value,
                    locked_by=None,
                    locked_until=None,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            session.commit()

    def nack(self, delivery: QueueDelivery, error: str) -> MessageState:
        """Requeue with backoff, or fail once the retry limit is spent."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(QueueMessage, delivery.message_id)
            if row is None:
                return MessageState.FAILED
            if delivery.attempts > row.retry_limit:
                state = MessageState.FAILED
                values: dict[str, Any] = {"completed_at": to_db_datetime(now)}
            else:
                state = MessageState.QUEUED
                values = {
                    "run_after": to_db_datetime(
                        now + timedelta(seconds=self._retry_delay(delivery.attempts)),
                    ),
                }
            session.exec(
                sa_update(QueueMessage)
                .where(
                    col(QueueMessage.message_id) == delivery.message_id,
                    col(QueueMessage.locked_by) == self.worker_id,
                )
                .values(
                    state=state.value,
                    locked_by=None,
                    locked_until=None,
                    last_error=error[:4_000],
                    updated_at=to_db_datetime(now),
                    **values,
                ),
            )
            session.commit()
        return state

    def _consume(self, subscription: _Subscription) -> None:
        while not self._stop_event.is_set():
            try:
                delivery = self.claim(subscription.topic)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to claim message on %s", subscription.topic)
                self._stop_event.wait(self.poll_interval_seconds)
                continue
            if delivery is None:
                self._stop_event.wait(self.poll_interval_seconds)
                continue
            self._deliver(subscription, delivery)

    def _deliver(self, subscription: _Subscription, delivery: QueueDelivery) -> None:
        with self._inflight_lock:
            self._inflight.add(delivery.message_id)
        try:
            subscription.handler(delivery)
        except Exception as error:  # noqa: BLE001
            state = self.nack(delivery, f"{type(error).__name__}: {error}")
            logger.exception(
                "Handler for %s failed on message %s (attempt %s); message %s",
                delivery.topic,
                delivery.message_id,
                delivery.attempts,
                state.value,
            )
        else:
            self.ack(delivery)
        finally:
            with self._inflight_lock:
                self._inflight.discard(delivery.message_id)

    def _keep_alive(self) -> None:
        interval = max(0.1, self.lease_seconds / 3)
        while True:
            with self._inflight_lock:
                message_ids = list(self._inflight)
            if message_ids:
                try:
                    self._extend_leases(message_ids)
                except Exception:  # noqa: BLE001
                    logger.exception("Failed to extend queue leases")
            if not self._stop_event.is_set():
                self._stop_event.wait(interval)
                continue
            if not any(thread.is_alive() for thread in self._threads):
                return
            time.sleep(min(interval, 0.5))

    def _extend_leases(self, message_ids: list[str]) -> None:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            session.exec(
                sa_update(QueueMessage)
                .where(
                    col(QueueMessage.message_id).in_(message_ids),
                    col(QueueMessage.locked_by) == self.worker_id,
                    col(QueueMessage.state) == MessageState.ACTIVE.value,
                )
                .values(
                    locked_until=now + timedelta(seconds=self.lease_seconds),
                    updated_at=now,
                ),
            )
            session.commit()

    def _expire(self, *, session: Session, candidate: QueueMessage, now: datetime) -> None:
        result = session.exec(
            sa_update(QueueMessage)
            .where(
                col(QueueMessage.message_id) == candidate.message_id,
                col(QueueMessage.state) == MessageState.ACTIVE.value,
                col(QueueMessage.attempts) == candidate.attempts,
            )
            .values(
                state=MessageState.FAILED.value,
                locked_by=None,
                locked_until=None,
                last_error="Lease expired after final attempt",
                completed_at=now,
                updated_at=now,
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            return
        session.commit()
        logger.error(
            "Message %s on %s failed: lease expired after %s attempts",
            candidate.message_id,
            candidate.topic,
            candidate.attempts,
        )

    def _retry_delay(self, attempts: int) -> float:
        return min(
            _RETRY_MAX_SECONDS,
            self.retry_backoff_seconds * (2 ** max(attempts - 1, 0)),
        )


def _to_message_view(row: QueueMessage) -> QueueMessageView:
    return QueueMessageView(
        message_id=row.message_id,
        topic=row.topic,
        key=row.key,
        state=MessageState(row.state),
        attempts=row.attempts,
        retry_limit=row.retry_limit,
        run_after=to_utc_aware_datetime(row.run_after),
        locked_by=row.locked_by,
        last_error=row.last_error,
        completed_at=optional_utc(row.completed_at),
        payload=json.loads(row.payload_json),
    )
