from __future__ import annotations

import logging
import os
from collections.abc import Callable
from contextlib import AbstractContextManager, nullcontext
from datetime import UTC, datetime, time
from typing import Protocol
from zoneinfo import ZoneInfo

from reklamacije.domain.models import (
    SYSTEM_ACTOR,
    ProcessErrorRead,
    ProcessSummary,
    Task,
    TaskHistory,
    as_utc,
    now_utc,
)
from reklamacije.domain.recurrence import ONCE, next_occurrence, parse_pattern, snap_to_selection
from reklamacije.domain.state_machine import TaskStatus
from reklamacije.infra.redis_state import RedisTemplateLocker
from reklamacije.repositories.task_repository import (
    DuplicateChildError,
    SqlTaskRepository,
    TaskRepository,
)
from reklamacije.services.notification_worker import queue_task_notification

logger = logging.getLogger(__name__)

SCHEDULER_TIMEZONE = os.getenv("SCHEDULER_TIMEZONE", "Europe/Podgorica")
RECURRING_LOCK_BACKEND = os.getenv("RECURRING_LOCK_BACKEND", "none")
NOTIFY_AT = time(8, 0)


class RecurringTaskError(Exception):
    pass


class TemplateLocker(Protocol):
    def hold(self, template_id: str) -> AbstractContextManager[bool]: ...


class RecurringTaskProcessor:
    """Materializes child tasks for recurring templates whose occurrence is due.

    The clock is injected so callers (cron endpoint, tests, one-off scripts)
    decide what "now" is; nothing here schedules itself.
    """

    def __init__(
        self,
        repository: TaskRepository | None = None,
        *,
        clock: Callable[[], datetime] = now_utc,
        locker: TemplateLocker | None = None,
        timezone: str = SCHEDULER_TIMEZONE,
    ) -> None:
        self._repository = repository or SqlTaskRepository()
        self._clock = clock
        self._locker = locker
        self._tz = ZoneInfo(timezone)

    def _now(self) -> datetime:
        return as_utc(self._clock()) or now_utc()

    def _hold(self, template_id: str) -> AbstractContextManager[bool]:
        if self._locker is None:
            return nullcontext(True)
        return self._locker.hold(template_id)

    def is_due(self, template: Task, now: datetime) -> bool:
        current = as_utc(template.next_occurrence)
        if current is None or current > now:
            return False
        start = as_utc(template.recurrence_start_date)
        return start is None or now >= start

    def anchor_day(self, template: Task) -> int | None:
        anchor = as_utc(template.recurrence_start_date) or as_utc(template.created_at)
        return anchor.astimezone(self._tz).day if anchor is not None else None

    def step(self, occurrence: datetime, pattern: str, anchor_day: int | None) -> datetime:
        # calendar steps follow local wall-clock days, not UTC ones
        local = occurrence.astimezone(self._tz)
        return next_occurrence(local, pattern, anchor_day=anchor_day).astimezone(UTC)

    def scheduled_slot(self, template: Task, occurrence: datetime) -> datetime:
        local_day = occurrence.astimezone(self._tz).date()
        day = snap_to_selection(
            local_day,
            week_days=template.recurrence_week_days,
            month_days=template.recurrence_month_days,
            year_dates=template.recurrence_year_dates,
        )
        local = datetime.combine(
            day,
            time(template.execution_hour, template.execution_minute),
            tzinfo=self._tz,
        )
        return local.astimezone(UTC)

    def _notification_time(self, slot: datetime, now: datetime) -> datetime:
        local_slot = slot.astimezone(self._tz)
        if local_slot.date() <= now.astimezone(self._tz).date():
            return now
        return datetime.combine(local_slot.date(), NOTIFY_AT, tzinfo=self._tz).astimezone(UTC)

    def _create_child(self, template: Task, slot: datetime, now: datetime) -> Task:
        assignees = list(template.assigned_to)
        child = Task(
            title=template.title,
            description=template.description,
            location=template.location,
            room_number=template.room_number,
            priority=template.priority,
            status=TaskStatus.ASSIGNED_TO_RADNIK if assignees else TaskStatus.WITH_SEF,
            created_by=template.created_by,
            created_by_name=template.created_by_name,
            created_by_department=template.created_by_department,
            assigned_to=assignees,
            assigned_to_name=template.assigned_to_name,
            images=list(template.images),
            is_recurring=False,
            recurrence_pattern=ONCE,
            parent_task_id=template.id,
            scheduled_for=slot,
            execution_hour=template.execution_hour,
            execution_minute=template.execution_minute,
        )
        created = self._repository.create_task(child)
        self._repository.create_task_history(
            TaskHistory(
                task_id=created.id,
                user_id=SYSTEM_ACTOR.id,
                user_name=SYSTEM_ACTOR.name,
                user_role=SYSTEM_ACTOR.role,
                action="task_created",
                status_to=str(created.status),
                notes=f"Recurring task instance created from template {template.id}",
                assigned_to=assignees,
                assigned_to_name=template.assigned_to_name,
            )
        )
        queue_task_notification(
            created,
            assignees,
            actor_id=SYSTEM_ACTOR.id,
            available_at=self._notification_time(slot, now),
        )
        return created

    def _materialize(self, template: Task) -> Task | None:
        now = self._now()
        current = as_utc(template.next_occurrence)
        if current is None:
            return None
        pattern = template.recurrence_pattern
        if parse_pattern(pattern) is None:
            logger.warning(
                "template %s has unparseable recurrence pattern %r; treating it as non-recurring",
                template.id,
                pattern,
            )
            self._repository.update_task(template.id, {"next_occurrence": None})
            return None
        if not self.is_due(template, now):
            return None

        anchor_day = self.anchor_day(template)
        occurrence = current
        # skipped periods only move the counter forward
        following = self.step(occurrence, pattern, anchor_day)
        while following <= now:
            occurrence = following
            following = self.step(occurrence, pattern, anchor_day)

        slot = self.scheduled_slot(template, occurrence)
        created: Task | None = None
        if self._repository.get_child_by_parent_and_date(template.id, slot) is None:
            try:
                created = self._create_child(template, slot, now)
            except DuplicateChildError:
                logger.info("child of %s for %s already materialized", template.id, slot.isoformat())

        while following <= slot:
            following = self.step(following, pattern, anchor_day)
        self._repository.update_task(template.id, {"next_occurrence": following})
        logger.debug("template %s next occurrence advanced to %s", template.id, following.isoformat())
        return created

    def ensure_child_tasks_exist(self, template: Task) -> Task | None:
        """Materialize the due occurrence of a single template, if any."""
        if not template.is_template:
            raise RecurringTaskError(f"task {template.id} is not a recurring template")
        with self._hold(template.id) as acquired:
            if not acquired:
                logger.info("template %s is being processed elsewhere; skipping", template.id)
                return None
            return self._materialize(template)

    def process(self) -> ProcessSummary:
        templates = self._repository.get_due_templates()
        summary = ProcessSummary(templates_scanned=len(templates))
        for template in templates:
            try:
                created = self.ensure_child_tasks_exist(template)
            except Exception as exc:
                logger.exception("recurring template %s failed", template.id)
                summary.errors.append(ProcessErrorRead(template_id=template.id, error=str(exc)))
                continue
            if created is not None:
                summary.children_created += 1
        logger.info(
            "recurring sweep: scanned=%d created=%d errors=%d",
            summary.templates_scanned,
            summary.children_created,
            len(summary.errors),
        )
        return summary


def build_locker() -> TemplateLocker | None:
    if RECURRING_LOCK_BACKEND == "redis":
        return RedisTemplateLocker()
    return None


def get_recurring_processor() -> RecurringTaskProcessor:
    return RecurringTaskProcessor(locker=build_locker())
