from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
import pytest
from sqlmodel import Session, SQLModel, create_engine, select

from reklamacije.adapters.notifications import (
    DeliveryError,
    LoggingGateway,
    NotificationResult,
    OneSignalGateway,
)
from reklamacije.domain.models import EventRecord, Task, TaskPriority, as_utc
from reklamacije.infra import db, events
from reklamacije.services.notification_worker import (
    NotificationWorker,
    notification_body,
    queue_task_notification,
)

NOW = datetime(2026, 3, 10, 10, 0, tzinfo=UTC)


class RecordingGateway:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def notify(
        self,
        recipient_ids: Sequence[str],
        title: str,
        body: str,
        task_id: str,
        priority: str,
    ) -> NotificationResult:
        self.calls.append(
            {"recipient_ids": list(recipient_ids), "title": title, "body": body, "task_id": task_id, "priority": priority}
        )
        return NotificationResult(sent=len(recipient_ids))


class BrokenGateway:
    def notify(self, *args: Any, **kwargs: Any) -> NotificationResult:
        raise DeliveryError("provider unreachable")


class FlakyGateway(RecordingGateway):
    def notify(self, recipient_ids: Sequence[str], *args: Any) -> NotificationResult:
        if "radnik-7" in recipient_ids:
            raise RuntimeError("unexpected provider payload")
        return super().notify(recipient_ids, *args)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def test_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Any:
    db_path = tmp_path / "notifications_test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    monkeypatch.setattr(db, "engine", engine)
    monkeypatch.setattr(events, "engine", engine)
    return engine


def _task(**overrides: Any) -> Task:
    values: dict[str, Any] = {
        "id": "3f2b9c10-aaaa-bbbb-cccc-000000000001",
        "title": "Leaking tap",
        "description": "Bathroom tap drips constantly",
        "location": "Hotel Mediteran, Blok A, 112",
        "created_by": "operater-1",
        "created_by_name": "Ana Operater",
    }
    values.update(overrides)
    return Task(**values)


def test_onesignal_counts_each_recipient_and_never_raises() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        body = json.loads(request.content)
        recipient = body["include_aliases"]["external_id"][0]
        if recipient == "radnik-404":
            return httpx.Response(400, json={"errors": ["invalid alias"]})
        if recipient == "radnik-unsubscribed":
            return httpx.Response(200, json={"id": "", "errors": {"invalid_aliases": {"external_id": [recipient]}}})
        return httpx.Response(200, json={"id": "notification-1"})

    gateway = OneSignalGateway(
        app_id="app-1",
        api_key="secret",
        api_url="https://push.test/notifications",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )

    result = gateway.notify(
        ["radnik-7", "", "radnik-404", "radnik-unsubscribed"],
        "Nova reklamacija #3f2b9c10",
        "Hotel Mediteran - HITNO",
        "task-1",
        "urgent",
    )

    assert result == NotificationResult(sent=1, failed=3)
    assert len(requests) == 3
    first = json.loads(requests[0].content)
    assert requests[0].headers["Authorization"] == "Basic secret"
    assert first["app_id"] == "app-1"
    assert first["priority"] == 10
    assert first["data"] == {"taskId": "task-1", "priority": "urgent", "type": "new_task"}


def test_onesignal_transport_failure_counts_as_failed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gateway = OneSignalGateway(
        app_id="app-1",
        api_key="secret",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )

    result = gateway.notify(["radnik-7", "radnik-8"], "title", "body", "task-1", "normal")

    assert result == NotificationResult(sent=0, failed=2)


def test_onesignal_unreadable_reply_counts_as_failed() -> None:
    gateway = OneSignalGateway(
        app_id="app-1",
        api_key="secret",
        client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="OK"))),
    )

    result = gateway.notify(["radnik-7"], "title", "body", "task-1", "normal")

    assert result == NotificationResult(sent=0, failed=1)


def test_logging_gateway_reports_nothing_sent() -> None:
    result = LoggingGateway().notify(["radnik-7"], "title", "body", "task-1", "normal")
    assert result == NotificationResult(sent=0, failed=1)


def test_urgent_body_uses_location() -> None:
    assert notification_body(_task(priority=TaskPriority.URGENT)) == "Hotel Mediteran, Blok A, 112 - HITNO"
    assert notification_body(_task()) == "Bathroom tap drips constantly"


def test_queue_without_recipients_writes_nothing(test_engine: Any) -> None:
    assert queue_task_notification(_task(), ["", ""]) is None
    with Session(test_engine) as session:
        assert session.exec(select(EventRecord)).all() == []


def test_worker_delivers_only_available_events_once(test_engine: Any) -> None:
    queue_task_notification(_task(), ["radnik-7"], available_at=NOW - timedelta(minutes=1))
    queue_task_notification(
        _task(id="3f2b9c10-aaaa-bbbb-cccc-000000000002"),
        ["radnik-8"],
        available_at=NOW + timedelta(days=1),
    )
    gateway = RecordingGateway()
    clock = FixedClock(NOW)
    worker = NotificationWorker(gateway, clock=clock)

    first = worker.drain()
    again = worker.drain()

    assert (first.events_processed, first.sent, first.failed) == (1, 1, 0)
    assert again.events_processed == 0
    assert [call["recipient_ids"] for call in gateway.calls] == [["radnik-7"]]
    assert gateway.calls[0]["title"] == "Nova reklamacija #3f2b9c10"

    clock.now = NOW + timedelta(days=1)
    later = worker.drain()

    assert later.events_processed == 1
    assert [call["recipient_ids"] for call in gateway.calls] == [["radnik-7"], ["radnik-8"]]
    with Session(test_engine) as session:
        records = session.exec(select(EventRecord)).all()
    assert all(record.delivered_at is not None for record in records)
    assert all(record.delivery_attempts == 1 for record in records)


def test_worker_records_delivery_failure_and_gives_up(test_engine: Any) -> None:
    queue_task_notification(_task(), ["radnik-7", "radnik-8"], available_at=NOW)
    worker = NotificationWorker(BrokenGateway(), clock=FixedClock(NOW), max_attempts=2)

    first = worker.drain()
    second = worker.drain()
    third = worker.drain()

    assert (first.events_processed, first.sent, first.failed) == (1, 0, 2)
    assert second.events_processed == 1
    assert third.events_processed == 0
    with Session(test_engine) as session:
        record = session.exec(select(EventRecord)).one()
    assert record.delivered_at is None
    assert record.delivery_attempts == 2
    assert record.last_error == "provider unreachable"
    assert as_utc(record.available_at) == NOW


def test_worker_keeps_draining_after_unexpected_gateway_error(test_engine: Any) -> None:
    queue_task_notification(_task(), ["radnik-7"], available_at=NOW - timedelta(minutes=2))
    queue_task_notification(
        _task(id="3f2b9c10-aaaa-bbbb-cccc-000000000002"),
        ["radnik-8"],
        available_at=NOW - timedelta(minutes=1),
    )
    gateway = FlakyGateway()

    summary = NotificationWorker(gateway, clock=FixedClock(NOW)).drain()

    assert (summary.events_processed, summary.sent, summary.failed) == (2, 1, 1)
    assert [call["recipient_ids"] for call in gateway.calls] == [["radnik-8"]]
    with Session(test_engine) as session:
        records = {record.payload["recipient_ids"][0]: record for record in session.exec(select(EventRecord)).all()}
    assert records["radnik-7"].delivered_at is None
    assert records["radnik-7"].delivery_attempts == 1
    assert records["radnik-7"].last_error == "RuntimeError: unexpected provider payload"
    assert records["radnik-8"].delivered_at is not None
