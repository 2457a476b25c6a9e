from __future__ import annotations

import logging
import re
from collections import defaultdict
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from reklamacije.domain.models import (
    DETAIL_FIELDS,
    RECURRENCE_FIELDS,
    Actor,
    ReturnReasonRead,
    Task,
    TaskCreate,
    TaskHistory,
    TaskHistoryRead,
    TaskHistoryResponse,
    TaskListRead,
    TaskUpdate,
    as_utc,
    now_utc,
)
from reklamacije.domain.permissions import can_correct_status, can_delete_task, can_edit_task_details
from reklamacije.domain.recurrence import is_recurring_pattern, is_valid_pattern
from reklamacije.domain.state_machine import (
    FINALIZED_STATUSES,
    RETURNED_STATUSES,
    TaskStatus,
    can_transition,
)
from reklamacije.repositories.task_repository import SqlTaskRepository
from reklamacije.services.notification_worker import queue_task_notification
from reklamacije.services.recurring_task_service import RecurringTaskProcessor, build_locker

logger = logging.getLogger(__name__)

REPORT_PREFIXES: dict[TaskStatus, str] = {
    TaskStatus.COMPLETED: "Completed",
    TaskStatus.RETURNED_TO_SEF: "Returned to Supervisor",
    TaskStatus.RETURNED_TO_OPERATOR: "Returned to Operator",
}
RETURN_REASON_RE = re.compile(r"^Returned to (?:Supervisor|Operator): (?P<reason>.+)$", re.DOTALL)
NOTIFY_ON_ASSIGN = frozenset({TaskStatus.ASSIGNED_TO_RADNIK, TaskStatus.WITH_SEF})
PATH_SEPARATOR = " → "
RECEIPT_FIELDS = ("receipt_confirmed_at", "receipt_confirmed_by", "receipt_confirmed_by_name")
COMPLETION_FIELDS = ("completed_at", "completed_by", "completed_by_name")


class TaskError(Exception):
    pass


class NotFoundError(TaskError):
    pass


class ConflictError(TaskError):
    pass


class ValidationError(TaskError):
    pass


class AuthorizationError(TaskError):
    pass


def build_location(hotel: str, blok: str, soba: str | None = None, *, room_label: str = "") -> str:
    parts = [hotel.strip(), blok.strip()]
    if soba and soba.strip():
        parts.append(f"{room_label}{soba.strip()}")
    return ", ".join(parts)


def assignment_path(history: Sequence[TaskHistory]) -> str:
    """Chain of people a task passed through, oldest first."""
    names: list[str] = []
    for entry in sorted(history, key=lambda item: item.timestamp):
        if entry.action == "task_created":
            continue
        for name in (entry.user_name, entry.assigned_to_name):
            if name and (not names or names[-1] != name):
                names.append(name)
    return PATH_SEPARATOR.join(names)


def return_reasons(history: Sequence[TaskHistory]) -> list[ReturnReasonRead]:
    reasons: list[ReturnReasonRead] = []
    for entry in sorted(history, key=lambda item: item.timestamp):
        if entry.status_to not in RETURNED_STATUSES or not entry.notes:
            continue
        match = RETURN_REASON_RE.match(entry.notes)
        if match is None:
            continue
        reasons.append(
            ReturnReasonRead(
                user_name=entry.user_name,
                reason=match.group("reason").strip(),
                timestamp=entry.timestamp,
            )
        )
    return reasons


class TaskService:
    def __init__(
        self,
        repository: SqlTaskRepository | None = None,
        processor: RecurringTaskProcessor | None = None,
        *,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._repository = repository or SqlTaskRepository()
        self._processor = processor or RecurringTaskProcessor(
            self._repository, clock=clock, locker=build_locker()
        )
        self._clock = clock

    def _get_task(self, task_id: str) -> Task:
        task = self._repository.get_task_by_id(task_id)
        if task is None:
            raise NotFoundError("task not found")
        return task

    def _history(
        self,
        task: Task,
        actor: Actor,
        action: str,
        *,
        status_from: str | None = None,
        status_to: str | None = None,
        notes: str | None = None,
        assigned_to: list[str] | None = None,
        assigned_to_name: str | None = None,
    ) -> TaskHistory:
        return self._repository.create_task_history(
            TaskHistory(
                task_id=task.id,
                user_id=actor.id,
                user_name=actor.name,
                user_role=actor.role,
                action=action,
                status_from=str(status_from) if status_from else None,
                status_to=str(status_to) if status_to else None,
                notes=notes,
                assigned_to=list(assigned_to or []),
                assigned_to_name=assigned_to_name,
            )
        )

    def create_task(self, actor: Actor, payload: TaskCreate) -> Task:
        if not is_valid_pattern(payload.recurrence_pattern):
            raise ValidationError(f"invalid recurrence pattern: {payload.recurrence_pattern}")
        now = self._clock()
        recurring = payload.is_recurring and is_recurring_pattern(payload.recurrence_pattern)
        start = as_utc(payload.recurrence_start_date)
        task = Task(
            title=payload.title.strip(),
            description=payload.description.strip(),
            location=build_location(payload.hotel, payload.blok, payload.soba),
            room_number=payload.soba,
            priority=payload.priority,
            status=payload.status,
            created_by=actor.id,
            created_by_name=actor.name,
            created_by_department=actor.department,
            assigned_to=payload.assigned_to,
            assigned_to_name=payload.assigned_to_name,
            images=payload.images,
            is_recurring=payload.is_recurring,
            recurrence_pattern=payload.recurrence_pattern,
            recurrence_start_date=start,
            next_occurrence=(start or now) if recurring else None,
            execution_hour=payload.execution_hour,
            execution_minute=payload.execution_minute,
            recurrence_week_days=payload.recurrence_week_days,
            recurrence_month_days=payload.recurrence_month_days,
            recurrence_year_dates=[item.model_dump() for item in payload.recurrence_year_dates],
            created_at=now,
            updated_at=now,
        )
        created = self._repository.create_task(task)
        self._history(
            created,
            actor,
            "task_created",
            status_to=created.status,
            notes=created.description,
            assigned_to=created.assigned_to,
            assigned_to_name=created.assigned_to_name,
        )

        if created.is_template and recurring:
            try:
                self._processor.ensure_child_tasks_exist(created)
            except Exception:
                logger.exception("first occurrence of template %s was not materialized", created.id)
            return self._repository.get_task_by_id(created.id) or created

        if created.assigned_to:
            queue_task_notification(created, created.assigned_to, actor_id=actor.id)
        return created

    def _check_update_allowed(self, actor: Actor, task: Task, payload: TaskUpdate) -> None:
        editing_details = payload.provided(*DETAIL_FIELDS) or payload.provided(*RECURRENCE_FIELDS)
        if editing_details and not can_edit_task_details(actor.role):
            raise AuthorizationError("only a supervisor or admin may edit task details")
        if payload.receipt_confirmed_at is not None and actor.id not in task.assigned_to:
            raise AuthorizationError("only an assigned user may confirm receipt")
        if payload.provided("recurrence_pattern") and not is_valid_pattern(payload.recurrence_pattern):
            raise ValidationError(f"invalid recurrence pattern: {payload.recurrence_pattern}")
        if payload.status is not None and payload.status != task.status:
            if not can_transition(task.status, payload.status) and not can_correct_status(actor.role):
                raise ConflictError(f"cannot move task from {task.status} to {payload.status}")

    def _recurrence_patch(self, task: Task, payload: TaskUpdate) -> dict[str, Any]:
        patch: dict[str, Any] = {}
        for name in RECURRENCE_FIELDS:
            if payload.provided(name) and getattr(payload, name) is not None:
                patch[name] = getattr(payload, name)
        if "recurrence_year_dates" in patch:
            patch["recurrence_year_dates"] = [item.model_dump() for item in patch["recurrence_year_dates"]]
        if not patch or task.parent_task_id is not None:
            return patch
        recurring = patch.get("is_recurring", task.is_recurring)
        pattern = patch.get("recurrence_pattern", task.recurrence_pattern)
        if not recurring or not is_recurring_pattern(pattern):
            patch["next_occurrence"] = None
        elif task.next_occurrence is None:
            patch["next_occurrence"] = as_utc(task.recurrence_start_date) or self._clock()
        return patch

    def update_task(self, actor: Actor, task_id: str, payload: TaskUpdate) -> Task:
        task = self._get_task(task_id)
        self._check_update_allowed(actor, task, payload)

        now = self._clock()
        old_status = task.status
        new_status = payload.status if payload.status is not None else old_status
        patch: dict[str, Any] = {}
        if new_status != old_status:
            patch["status"] = new_status

        for name in ("title", "description", "priority", "images", "room_number", "soba"):
            if payload.provided(name) and getattr(payload, name) is not None:
                patch["room_number" if name == "soba" else name] = getattr(payload, name)
        if payload.hotel and payload.blok:
            patch["location"] = build_location(payload.hotel, payload.blok, payload.soba, room_label="Soba ")
        patch.update(self._recurrence_patch(task, payload))

        for name in ("worker_report", "worker_images", "external_company_name"):
            if payload.provided(name):
                patch[name] = getattr(payload, name)

        assignees = task.assigned_to
        assignment_changed = False
        if payload.provided("assigned_to"):
            assignees = payload.assigned_to or []
            assignment_changed = assignees != task.assigned_to
            patch["assigned_to"] = assignees
        if payload.provided("assigned_to_name"):
            patch["assigned_to_name"] = payload.assigned_to_name
        elif payload.provided("assigned_to") and not assignees:
            patch["assigned_to_name"] = None
        assignee_name = patch.get("assigned_to_name", task.assigned_to_name)

        leaving_radnik = (
            old_status == TaskStatus.ASSIGNED_TO_RADNIK
            and new_status not in (TaskStatus.ASSIGNED_TO_RADNIK, TaskStatus.COMPLETED)
        )
        if assignment_changed or leaving_radnik:
            patch.update(dict.fromkeys(RECEIPT_FIELDS))

        confirming = payload.receipt_confirmed_at is not None
        if confirming:
            patch["receipt_confirmed_at"] = as_utc(payload.receipt_confirmed_at)
            patch["receipt_confirmed_by"] = actor.id
            patch["receipt_confirmed_by_name"] = actor.name

        if new_status == TaskStatus.COMPLETED and old_status != TaskStatus.COMPLETED:
            patch.update(completed_at=now, completed_by=actor.id, completed_by_name=actor.name)
        elif old_status == TaskStatus.COMPLETED and new_status != TaskStatus.COMPLETED:
            patch.update(dict.fromkeys(COMPLETION_FIELDS))

        notes: str | None = None
        if confirming:
            notes = f"Receipt confirmed by {actor.name}"
        elif payload.worker_report:
            prefix = REPORT_PREFIXES.get(new_status)
            notes = f"{prefix}: {payload.worker_report}" if prefix else payload.worker_report
        elif assignment_changed and assignees:
            notes = f"Assigned to {assignee_name or ', '.join(assignees)}"
        elif assignment_changed:
            notes = "Cleared technician assignment"

        updated = self._repository.update_task(task.id, patch)
        if updated is None:
            raise NotFoundError("task not found")
        self._history(
            updated,
            actor,
            "status_changed" if new_status != old_status else "task_updated",
            status_from=old_status,
            status_to=new_status,
            notes=notes,
            assigned_to=updated.assigned_to,
            assigned_to_name=updated.assigned_to_name,
        )

        if payload.assigned_to and new_status in NOTIFY_ON_ASSIGN:
            queue_task_notification(updated, payload.assigned_to, actor_id=actor.id)
        return updated

    def delete_task(self, actor: Actor, task_id: str) -> int:
        """Delete a task; a template takes its unfinished children with it.

        Returns the number of child tasks removed.
        """
        if not can_delete_task(actor.role):
            raise AuthorizationError("only a supervisor or admin may delete tasks")
        task = self._get_task(task_id)

        deleted_children = 0
        if task.is_template:
            for child in self._repository.get_child_tasks_by_parent_id(task.id):
                if child.status in FINALIZED_STATUSES:
                    continue
                self._history(
                    child,
                    actor,
                    "task_deleted",
                    status_from=child.status,
                    notes=f"Task deleted by {actor.name} (cascade from recurring template {task.id})",
                )
                self._repository.delete_task(child.id)
                deleted_children += 1
            notes = (
                f"Task deleted by {actor.name} (recurring template, {deleted_children} future tasks deleted)"
            )
        elif task.parent_task_id is not None:
            notes = f"Task deleted by {actor.name} (recurring instance)"
        else:
            notes = f"Task deleted by {actor.name}"

        self._history(task, actor, "task_deleted", status_from=task.status, notes=notes)
        self._repository.delete_task(task.id)
        logger.info("task %s deleted by %s with %d child task(s)", task.id, actor.id, deleted_children)
        return deleted_children

    def get_task(self, task_id: str) -> Task:
        return self._get_task(task_id)

    def _with_paths(self, tasks: list[Task]) -> list[TaskListRead]:
        grouped: dict[str, list[TaskHistory]] = defaultdict(list)
        for entry in self._repository.get_task_histories_for_tasks([task.id for task in tasks]):
            grouped[entry.task_id].append(entry)
        rows: list[TaskListRead] = []
        for task in tasks:
            row = TaskListRead.model_validate(task)
            row.assignment_path = assignment_path(grouped[task.id])
            rows.append(row)
        return rows

    def list_tasks(self) -> list[TaskListRead]:
        return self._with_paths(self._repository.list_tasks())

    def list_my_tasks(self, actor: Actor) -> list[TaskListRead]:
        tasks = [task for task in self._repository.list_tasks_for_assignee(actor.id) if not task.is_template]
        return self._with_paths(tasks)

    def get_history(self, task_id: str) -> TaskHistoryResponse:
        history = self._repository.get_task_history(task_id)
        if not history and self._repository.get_task_by_id(task_id) is None:
            raise NotFoundError("task not found")
        return TaskHistoryResponse(
            history=[TaskHistoryRead.model_validate(item) for item in history],
            return_reasons=return_reasons(history),
        )
