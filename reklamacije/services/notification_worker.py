from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from reklamacije.adapters.notifications import (
    DeliveryError,
    NotificationGateway,
    NotificationResult,
    build_gateway,
)
from reklamacije.domain.models import (
    DeliverySummary,
    EventEnvelope,
    EventRecord,
    Task,
    TaskPriority,
    now_utc,
)
from reklamacije.infra.db import get_engine
from reklamacije.infra.events import event_bus

logger = logging.getLogger(__name__)

NOTIFICATION_EVENT = "task.notification"
NOTIFICATION_MAX_ATTEMPTS = 5
DEFAULT_DRAIN_LIMIT = 100


def notification_title(task: Task) -> str:
    return f"Nova reklamacija #{task.id[:8]}"


def notification_body(task: Task) -> str:
    if task.priority == TaskPriority.URGENT:
        return f"{task.location or task.title} - HITNO"
    return task.description


def queue_task_notification(
    task: Task,
    recipient_ids: Sequence[str],
    *,
    actor_id: str | None = None,
    available_at: datetime | None = None,
) -> EventEnvelope | None:
    """Record a push notification for later delivery.

    Returns ``None`` when there is nobody to notify or the outbox write
    fails; the caller's mutation has already been committed either way.
    """
    recipients = [item for item in recipient_ids if item]
    if not recipients:
        return None
    payload = {
        "recipient_ids": recipients,
        "title": notification_title(task),
        "body": notification_body(task),
        "task_id": task.id,
        "priority": str(task.priority),
    }
    try:
        return event_bus.publish_dict(
            NOTIFICATION_EVENT,
            payload,
            actor_id=actor_id,
            correlation_id=task.id,
            available_at=available_at,
        )
    except SQLAlchemyError:
        logger.warning("could not queue notification for task %s", task.id, exc_info=True)
        return None


class NotificationWorker:
    def __init__(
        self,
        gateway: NotificationGateway | None = None,
        *,
        clock: Callable[[], datetime] = now_utc,
        max_attempts: int = NOTIFICATION_MAX_ATTEMPTS,
    ) -> None:
        self._gateway = gateway or build_gateway()
        self._clock = clock
        self._max_attempts = max_attempts

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _deliver(self, record: EventRecord) -> NotificationResult:
        payload = record.payload
        recipients = [str(item) for item in payload.get("recipient_ids", [])]
        return self._gateway.notify(
            recipients,
            str(payload.get("title", "")),
            str(payload.get("body", "")),
            str(payload.get("task_id", record.correlation_id or "")),
            str(payload.get("priority", TaskPriority.NORMAL)),
        )

    def drain(self, limit: int = DEFAULT_DRAIN_LIMIT) -> DeliverySummary:
        """Deliver notification events that have become available."""
        now = self._clock()
        summary = DeliverySummary()
        with self._session() as session:
            records = session.exec(
                select(EventRecord)
                .where(EventRecord.event_type == NOTIFICATION_EVENT)
                .where(col(EventRecord.delivered_at).is_(None))
                .where(EventRecord.available_at <= now)
                .where(EventRecord.delivery_attempts < self._max_attempts)
                .order_by(col(EventRecord.available_at))
                .limit(limit)
            ).all()
            for record in records:
                summary.events_processed += 1
                record.delivery_attempts += 1
                try:
                    result = self._deliver(record)
                except DeliveryError as exc:
                    logger.warning("notification %s not delivered: %s", record.event_id, exc)
                    record.last_error = str(exc)
                    summary.failed += len(record.payload.get("recipient_ids", []))
                except Exception as exc:
                    logger.exception("notification %s crashed the gateway", record.event_id)
                    record.last_error = f"{type(exc).__name__}: {exc}"
                    summary.failed += len(record.payload.get("recipient_ids", []))
                else:
                    record.delivered_at = now
                    record.last_error = None
                    summary.sent += result.sent
                    summary.failed += result.failed
                session.add(record)
            session.commit()
        if summary.events_processed:
            logger.info(
                "delivered %d notification event(s): sent=%d failed=%d",
                summary.events_processed,
                summary.sent,
                summary.failed,
            )
        return summary


def drain_notifications() -> DeliverySummary:
    return NotificationWorker().drain()
