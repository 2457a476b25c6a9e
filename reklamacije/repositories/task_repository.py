from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from reklamacije.domain.models import Task, TaskHistory, as_utc, now_utc
from reklamacije.domain.recurrence import ONCE
from reklamacije.infra.db import get_engine


TASK_DATETIME_FIELDS = (
    "recurrence_start_date",
    "next_occurrence",
    "scheduled_for",
    "completed_at",
    "receipt_confirmed_at",
    "created_at",
    "updated_at",
)
DELETION_ACTION = "task_deleted"


class PersistenceError(Exception):
    pass


class DuplicateChildError(PersistenceError):
    pass


class TaskRepository(Protocol):
    def get_due_templates(self) -> list[Task]: ...

    def get_child_by_parent_and_date(self, parent_id: str, scheduled_for: datetime) -> Task | None: ...

    def create_task(self, task: Task) -> Task: ...

    def update_task(self, task_id: str, patch: dict[str, Any]) -> Task | None: ...

    def get_task_by_id(self, task_id: str) -> Task | None: ...

    def get_child_tasks_by_parent_id(self, parent_id: str) -> list[Task]: ...

    def delete_task(self, task_id: str) -> None: ...

    def create_task_history(self, entry: TaskHistory) -> TaskHistory: ...

    def get_task_history(self, task_id: str) -> list[TaskHistory]: ...


def _normalize(task: Task) -> Task:
    for name in TASK_DATETIME_FIELDS:
        setattr(task, name, as_utc(getattr(task, name)))
    return task


def _normalize_history(entry: TaskHistory) -> TaskHistory:
    entry.timestamp = as_utc(entry.timestamp) or entry.timestamp
    return entry


class SqlTaskRepository:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def get_due_templates(self) -> list[Task]:
        """Recurring templates that carry a next occurrence; due-ness is the caller's check."""
        try:
            with self._session() as session:
                statement = (
                    select(Task)
                    .where(Task.is_recurring == True)  # noqa: E712
                    .where(col(Task.parent_task_id).is_(None))
                    .where(Task.recurrence_pattern != ONCE)
                    .where(col(Task.next_occurrence).is_not(None))
                )
                rows = list(session.exec(statement).all())
        except SQLAlchemyError as exc:
            raise PersistenceError(f"loading recurring templates failed: {exc}") from exc
        return [_normalize(row) for row in rows]

    def get_child_by_parent_and_date(self, parent_id: str, scheduled_for: datetime) -> Task | None:
        try:
            with self._session() as session:
                row = session.exec(
                    select(Task)
                    .where(Task.parent_task_id == parent_id)
                    .where(Task.scheduled_for == scheduled_for)
                ).first()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"child lookup failed: {exc}") from exc
        return _normalize(row) if row is not None else None

    def create_task(self, task: Task) -> Task:
        try:
            with self._session() as session:
                session.add(task)
                session.commit()
                session.refresh(task)
        except IntegrityError as exc:
            if task.parent_task_id is not None and task.scheduled_for is not None:
                raise DuplicateChildError(
                    f"child of {task.parent_task_id} for {task.scheduled_for.isoformat()} already exists"
                ) from exc
            raise PersistenceError(f"task insert failed: {exc}") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"task insert failed: {exc}") from exc
        return _normalize(task)

    def update_task(self, task_id: str, patch: dict[str, Any]) -> Task | None:
        try:
            with self._session() as session:
                task = session.get(Task, task_id)
                if task is None:
                    return None
                for key, value in patch.items():
                    setattr(task, key, value)
                task.updated_at = now_utc()
                session.add(task)
                session.commit()
                session.refresh(task)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"task update failed: {exc}") from exc
        return _normalize(task)

    def get_task_by_id(self, task_id: str) -> Task | None:
        try:
            with self._session() as session:
                task = session.get(Task, task_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"task lookup failed: {exc}") from exc
        return _normalize(task) if task is not None else None

    def list_tasks(self) -> list[Task]:
        with self._session() as session:
            rows = list(session.exec(select(Task).order_by(col(Task.created_at).desc())).all())
        return [_normalize(row) for row in rows]

    def list_tasks_for_assignee(self, user_id: str) -> list[Task]:
        # assignees live in a JSON column, filtered here to stay portable across dialects
        return [task for task in self.list_tasks() if user_id in task.assigned_to]

    def get_child_tasks_by_parent_id(self, parent_id: str) -> list[Task]:
        try:
            with self._session() as session:
                rows = list(
                    session.exec(
                        select(Task)
                        .where(Task.parent_task_id == parent_id)
                        .order_by(col(Task.scheduled_for))
                    ).all()
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"child listing failed: {exc}") from exc
        return [_normalize(row) for row in rows]

    def delete_task(self, task_id: str) -> None:
        """Delete a task and its history, keeping the deletion entries as tombstones."""
        try:
            with self._session() as session:
                session.execute(
                    sa.delete(TaskHistory)
                    .where(col(TaskHistory.task_id) == task_id)
                    .where(col(TaskHistory.action) != DELETION_ACTION)
                )
                session.execute(sa.delete(Task).where(col(Task.id) == task_id))
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"task delete failed: {exc}") from exc

    def create_task_history(self, entry: TaskHistory) -> TaskHistory:
        try:
            with self._session() as session:
                session.add(entry)
                session.commit()
                session.refresh(entry)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"history insert failed: {exc}") from exc
        return _normalize_history(entry)

    def get_task_history(self, task_id: str) -> list[TaskHistory]:
        try:
            with self._session() as session:
                rows = list(
                    session.exec(
                        select(TaskHistory)
                        .where(TaskHistory.task_id == task_id)
                        .order_by(col(TaskHistory.timestamp))
                    ).all()
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"history lookup failed: {exc}") from exc
        return [_normalize_history(row) for row in rows]

    def get_task_histories_for_tasks(self, task_ids: Sequence[str]) -> list[TaskHistory]:
        if not task_ids:
            return []
        with self._session() as session:
            rows = list(
                session.exec(
                    select(TaskHistory)
                    .where(col(TaskHistory.task_id).in_(list(task_ids)))
                    .order_by(col(TaskHistory.timestamp))
                ).all()
            )
        return [_normalize_history(row) for row in rows]
