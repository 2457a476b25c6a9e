from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

import pytest
from sqlmodel import Session, SQLModel, create_engine, select

from reklamacije.domain.models import EventRecord, Task, as_utc
from reklamacije.domain.state_machine import TaskStatus
from reklamacije.infra import db, events
from reklamacije.infra.logging_config import setup_test_logging
from reklamacije.infra.redis_state import RedisTemplateLocker
from reklamacije.repositories.task_repository import PersistenceError, SqlTaskRepository
from reklamacije.services.notification_worker import NOTIFICATION_EVENT
from reklamacije.services.recurring_task_service import RecurringTaskError, RecurringTaskProcessor

# Tuesday; Europe/Podgorica is UTC+1 until the end of March
NOW = datetime(2026, 3, 10, 10, 0, tzinfo=UTC)
TZ = "Europe/Podgorica"


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RefusingLocker:
    def __init__(self) -> None:
        self.requested: list[str] = []

    @contextmanager
    def hold(self, template_id: str) -> Iterator[bool]:
        self.requested.append(template_id)
        yield False


class BlindRepository(SqlTaskRepository):
    """Never sees existing children, so only the unique constraint guards inserts."""

    def get_child_by_parent_and_date(self, parent_id: str, scheduled_for: datetime) -> Task | None:
        return None


class FailingRepository(SqlTaskRepository):
    def __init__(self, failing_id: str) -> None:
        self.failing_id = failing_id

    def get_child_by_parent_and_date(self, parent_id: str, scheduled_for: datetime) -> Task | None:
        if parent_id == self.failing_id:
            raise PersistenceError("database went away")
        return super().get_child_by_parent_and_date(parent_id, scheduled_for)


@pytest.fixture()
def test_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Any:
    db_path = tmp_path / "recurring_test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    monkeypatch.setattr(db, "engine", engine)
    monkeypatch.setattr(events, "engine", engine)
    return engine


@pytest.fixture()
def repository(test_engine: Any) -> SqlTaskRepository:
    return SqlTaskRepository()


def _template(repository: SqlTaskRepository, **overrides: Any) -> Task:
    values: dict[str, Any] = {
        "title": "Check pool filters",
        "description": "Weekly filter inspection",
        "location": "Hotel Mediteran, Blok A",
        "created_by": "sef-1",
        "created_by_name": "Marko Sef",
        "is_recurring": True,
        "recurrence_pattern": "7_days",
        "recurrence_start_date": datetime(2026, 3, 10, 0, 0, tzinfo=UTC),
        "next_occurrence": datetime(2026, 3, 10, 0, 0, tzinfo=UTC),
        "created_at": datetime(2026, 3, 1, 0, 0, tzinfo=UTC),
    }
    values.update(overrides)
    return repository.create_task(Task(**values))


def _processor(repository: SqlTaskRepository, clock: FixedClock | None = None, **kwargs: Any) -> RecurringTaskProcessor:
    return RecurringTaskProcessor(repository, clock=clock or FixedClock(NOW), timezone=TZ, **kwargs)


def test_seven_day_template_materializes_today_and_moves_a_week(repository: SqlTaskRepository) -> None:
    template = _template(repository)

    summary = _processor(repository).process()

    assert summary.templates_scanned == 1
    assert summary.children_created == 1
    assert summary.errors == []
    children = repository.get_child_tasks_by_parent_id(template.id)
    assert len(children) == 1
    child = children[0]
    # 08:00 local is 07:00 UTC in March
    assert child.scheduled_for == datetime(2026, 3, 10, 7, 0, tzinfo=UTC)
    assert child.status == TaskStatus.WITH_SEF
    assert child.is_recurring is False
    assert child.recurrence_pattern == "once"
    assert child.title == template.title
    assert child.location == template.location

    refreshed = repository.get_task_by_id(template.id)
    assert refreshed is not None
    assert refreshed.next_occurrence == datetime(2026, 3, 17, 0, 0, tzinfo=UTC)


def test_child_history_references_template(repository: SqlTaskRepository) -> None:
    template = _template(repository)
    _processor(repository).process()

    child = repository.get_child_tasks_by_parent_id(template.id)[0]
    history = repository.get_task_history(child.id)
    assert len(history) == 1
    assert history[0].action == "task_created"
    assert history[0].user_role == "system"
    assert template.id in (history[0].notes or "")


def test_second_run_creates_nothing(repository: SqlTaskRepository) -> None:
    template = _template(repository)
    processor = _processor(repository)

    first = processor.process()
    after_first = repository.get_task_by_id(template.id)
    second = processor.process()
    after_second = repository.get_task_by_id(template.id)

    assert first.children_created == 1
    assert second.children_created == 0
    assert second.errors == []
    assert len(repository.get_child_tasks_by_parent_id(template.id)) == 1
    assert after_first is not None and after_second is not None
    assert after_first.next_occurrence == after_second.next_occurrence


def test_catch_up_creates_one_child_and_lands_in_future(repository: SqlTaskRepository) -> None:
    template = _template(
        repository,
        recurrence_pattern="1_weeks",
        recurrence_start_date=NOW - timedelta(weeks=3),
        next_occurrence=NOW - timedelta(weeks=3),
    )

    summary = _processor(repository).process()

    assert summary.children_created == 1
    children = repository.get_child_tasks_by_parent_id(template.id)
    assert len(children) == 1
    assert children[0].scheduled_for == datetime(2026, 3, 10, 7, 0, tzinfo=UTC)
    refreshed = repository.get_task_by_id(template.id)
    assert refreshed is not None and refreshed.next_occurrence is not None
    assert refreshed.next_occurrence > NOW
    assert refreshed.next_occurrence == NOW + timedelta(weeks=1)


def test_existing_child_is_not_duplicated_but_template_advances(repository: SqlTaskRepository) -> None:
    template = _template(repository)
    repository.create_task(
        Task(
            title=template.title,
            description=template.description,
            location=template.location,
            created_by="sef-1",
            created_by_name="Marko Sef",
            parent_task_id=template.id,
            scheduled_for=datetime(2026, 3, 10, 7, 0, tzinfo=UTC),
            status=TaskStatus.COMPLETED,
        )
    )

    summary = _processor(repository).process()

    assert summary.children_created == 0
    assert len(repository.get_child_tasks_by_parent_id(template.id)) == 1
    refreshed = repository.get_task_by_id(template.id)
    assert refreshed is not None
    assert refreshed.next_occurrence == datetime(2026, 3, 17, 0, 0, tzinfo=UTC)


def test_unique_constraint_turns_racing_insert_into_skip(repository: SqlTaskRepository) -> None:
    template = _template(repository)
    _processor(repository).process()
    # rewind as if a second sweep had loaded the template before the first one advanced it
    repository.update_task(template.id, {"next_occurrence": datetime(2026, 3, 10, 0, 0, tzinfo=UTC)})

    blind = BlindRepository()
    summary = _processor(blind).process()

    assert summary.errors == []
    assert summary.children_created == 0
    assert len(repository.get_child_tasks_by_parent_id(template.id)) == 1
    refreshed = repository.get_task_by_id(template.id)
    assert refreshed is not None
    assert refreshed.next_occurrence == datetime(2026, 3, 17, 0, 0, tzinfo=UTC)


def test_unparseable_pattern_is_treated_as_non_recurring(
    repository: SqlTaskRepository,
    caplog: pytest.LogCaptureFixture,
) -> None:
    setup_test_logging()
    template = _template(repository, recurrence_pattern="every_tuesday")

    with caplog.at_level(logging.WARNING):
        summary = _processor(repository).process()

    assert summary.errors == []
    assert summary.children_created == 0
    assert repository.get_child_tasks_by_parent_id(template.id) == []
    refreshed = repository.get_task_by_id(template.id)
    assert refreshed is not None
    assert refreshed.next_occurrence is None
    assert "every_tuesday" in caplog.text


def test_template_waits_for_its_start_date(repository: SqlTaskRepository) -> None:
    template = _template(
        repository,
        recurrence_start_date=NOW + timedelta(days=2),
        next_occurrence=NOW - timedelta(hours=1),
    )

    summary = _processor(repository).process()

    assert summary.children_created == 0
    refreshed = repository.get_task_by_id(template.id)
    assert refreshed is not None
    assert refreshed.next_occurrence == NOW - timedelta(hours=1)


def test_future_template_is_not_due(repository: SqlTaskRepository) -> None:
    template = _template(repository, next_occurrence=NOW + timedelta(minutes=5))

    summary = _processor(repository).process()

    assert summary.templates_scanned == 1
    assert summary.children_created == 0
    assert repository.get_child_tasks_by_parent_id(template.id) == []


def test_week_day_selection_snaps_to_next_selected_day(repository: SqlTaskRepository) -> None:
    template = _template(
        repository,
        recurrence_pattern="1_days",
        recurrence_week_days=[1],
        execution_hour=9,
        execution_minute=15,
        assigned_to=["radnik-7"],
        assigned_to_name="Petar Radnik",
    )

    _processor(repository).process()

    child = repository.get_child_tasks_by_parent_id(template.id)[0]
    # Monday 2026-03-16 09:15 local
    assert child.scheduled_for == datetime(2026, 3, 16, 8, 15, tzinfo=UTC)
    assert child.status == TaskStatus.ASSIGNED_TO_RADNIK
    assert child.assigned_to == ["radnik-7"]
    refreshed = repository.get_task_by_id(template.id)
    assert refreshed is not None
    assert refreshed.next_occurrence == datetime(2026, 3, 17, 0, 0, tzinfo=UTC)


def test_future_child_notification_waits_until_scheduled_morning(
    repository: SqlTaskRepository,
    test_engine: Any,
) -> None:
    template = _template(
        repository,
        recurrence_pattern="1_days",
        recurrence_week_days=[1],
        assigned_to=["radnik-7"],
    )

    _processor(repository).process()

    with Session(test_engine) as session:
        records = session.exec(select(EventRecord).where(EventRecord.event_type == NOTIFICATION_EVENT)).all()
    assert len(records) == 1
    assert records[0].payload["recipient_ids"] == ["radnik-7"]
    assert records[0].correlation_id == repository.get_child_tasks_by_parent_id(template.id)[0].id
    assert as_utc(records[0].available_at) == datetime(2026, 3, 16, 7, 0, tzinfo=UTC)


def test_child_due_today_is_notified_immediately(repository: SqlTaskRepository, test_engine: Any) -> None:
    _template(repository, assigned_to=["radnik-7", "radnik-8"])

    _processor(repository).process()

    with Session(test_engine) as session:
        record = session.exec(select(EventRecord)).one()
    assert record.payload["recipient_ids"] == ["radnik-7", "radnik-8"]
    assert as_utc(record.available_at) == NOW


def test_monthly_template_keeps_its_anchor_day(repository: SqlTaskRepository) -> None:
    start = datetime(2026, 1, 31, 9, 0, tzinfo=UTC)
    template = _template(
        repository,
        recurrence_pattern="1_months",
        recurrence_start_date=start,
        next_occurrence=start,
    )

    clock = FixedClock(datetime(2026, 2, 1, 10, 0, tzinfo=UTC))
    processor = _processor(repository, clock)
    processor.process()
    after_january = repository.get_task_by_id(template.id)
    clock.now = datetime(2026, 3, 1, 10, 0, tzinfo=UTC)
    processor.process()
    after_february = repository.get_task_by_id(template.id)

    assert after_january is not None and after_february is not None
    assert after_january.next_occurrence == datetime(2026, 2, 28, 9, 0, tzinfo=UTC)
    # 10:00 local wall time; summer time starts on Mar 29
    assert after_february.next_occurrence == datetime(2026, 3, 31, 8, 0, tzinfo=UTC)
    scheduled = [child.scheduled_for for child in repository.get_child_tasks_by_parent_id(template.id)]
    assert scheduled == [
        datetime(2026, 1, 31, 7, 0, tzinfo=UTC),
        datetime(2026, 2, 28, 7, 0, tzinfo=UTC),
    ]


def test_monthly_template_started_at_local_midnight_clamps_in_local_time(repository: SqlTaskRepository) -> None:
    # Jan 31 00:00 local is still Jan 30 in UTC
    start = datetime(2026, 1, 31, 0, 0, tzinfo=ZoneInfo(TZ)).astimezone(UTC)
    template = _template(
        repository,
        recurrence_pattern="1_months",
        recurrence_start_date=start,
        next_occurrence=start,
    )
    clock = FixedClock(NOW)
    processor = _processor(repository, clock)

    for _ in range(5):
        current = repository.get_task_by_id(template.id)
        assert current is not None and current.next_occurrence is not None
        clock.now = current.next_occurrence + timedelta(hours=12)
        assert processor.process().children_created == 1

    scheduled = sorted(
        as_utc(child.scheduled_for) for child in repository.get_child_tasks_by_parent_id(template.id)
    )
    local_days = [slot.astimezone(ZoneInfo(TZ)).date().isoformat() for slot in scheduled if slot is not None]
    assert local_days == ["2026-01-31", "2026-02-28", "2026-03-31", "2026-04-30", "2026-05-31"]


def test_one_failing_template_does_not_stop_the_sweep(repository: SqlTaskRepository) -> None:
    broken = _template(repository, title="Broken")
    healthy = _template(repository, title="Healthy")

    summary = _processor(FailingRepository(broken.id)).process()

    assert summary.templates_scanned == 2
    assert summary.children_created == 1
    assert [item.template_id for item in summary.errors] == [broken.id]
    assert "database went away" in summary.errors[0].error
    assert len(repository.get_child_tasks_by_parent_id(healthy.id)) == 1
    assert repository.get_child_tasks_by_parent_id(broken.id) == []


def test_templates_held_elsewhere_are_skipped(repository: SqlTaskRepository) -> None:
    template = _template(repository)
    locker = RefusingLocker()

    summary = _processor(repository, locker=locker).process()

    assert locker.requested == [template.id]
    assert summary.children_created == 0
    assert repository.get_child_tasks_by_parent_id(template.id) == []


def test_ensure_child_tasks_exist_rejects_plain_tasks(repository: SqlTaskRepository) -> None:
    plain = repository.create_task(
        Task(
            title="Leaking tap",
            description="Room 12 bathroom",
            location="Hotel Mediteran, Blok A, 12",
            created_by="operater-1",
            created_by_name="Ana Operater",
        )
    )

    with pytest.raises(RecurringTaskError):
        _processor(repository).ensure_child_tasks_exist(plain)


def test_children_are_not_picked_up_as_templates(repository: SqlTaskRepository) -> None:
    template = _template(repository)
    processor = _processor(repository)
    processor.process()

    due = repository.get_due_templates()
    assert [item.id for item in due] == [template.id]


class FakeRedisLock:
    def __init__(self, held: set[str], name: str) -> None:
        self._held = held
        self._name = name

    def acquire(self) -> bool:
        if self._name in self._held:
            return False
        self._held.add(self._name)
        return True

    def release(self) -> None:
        self._held.discard(self._name)


class FakeRedis:
    def __init__(self) -> None:
        self.held: set[str] = set()
        self.lock_calls: list[tuple[str, int, bool]] = []

    def lock(self, name: str, timeout: int, blocking: bool) -> FakeRedisLock:
        self.lock_calls.append((name, timeout, blocking))
        return FakeRedisLock(self.held, name)


def test_redis_locker_is_exclusive_per_template() -> None:
    client = FakeRedis()
    locker = RedisTemplateLocker(client=client, ttl_seconds=30)  # type: ignore[arg-type]

    with locker.hold("template-1") as first:
        with locker.hold("template-1") as second, locker.hold("template-2") as other:
            assert (first, second, other) == (True, False, True)
    assert client.held == set()
    assert client.lock_calls[0] == ("reklamacije:recurring-template:template-1", 30, False)


def test_processor_runs_under_redis_lock(repository: SqlTaskRepository) -> None:
    template = _template(repository)
    client = FakeRedis()

    summary = _processor(repository, locker=RedisTemplateLocker(client=client)).process()  # type: ignore[arg-type]

    assert summary.children_created == 1
    assert [call[0] for call in client.lock_calls] == [f"reklamacije:recurring-template:{template.id}"]
    assert client.held == set()
