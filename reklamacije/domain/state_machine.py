from __future__ import annotations

from enum import StrEnum


class TaskStatus(StrEnum):
    NEW = "new"
    WITH_SEF = "with_sef"
    ASSIGNED_TO_RADNIK = "assigned_to_radnik"
    WITH_OPERATOR = "with_operator"
    WITH_EXTERNAL = "with_external"
    RETURNED_TO_SEF = "returned_to_sef"
    RETURNED_TO_OPERATOR = "returned_to_operator"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


FINALIZED_STATUSES: frozenset[TaskStatus] = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})
RETURNED_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.RETURNED_TO_SEF, TaskStatus.RETURNED_TO_OPERATOR}
)

TASK_ALLOWED_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.NEW: {
        TaskStatus.WITH_SEF,
        TaskStatus.WITH_OPERATOR,
        TaskStatus.ASSIGNED_TO_RADNIK,
        TaskStatus.WITH_EXTERNAL,
        TaskStatus.CANCELLED,
    },
    TaskStatus.WITH_SEF: {
        TaskStatus.ASSIGNED_TO_RADNIK,
        TaskStatus.WITH_EXTERNAL,
        TaskStatus.WITH_OPERATOR,
        TaskStatus.RETURNED_TO_OPERATOR,
        TaskStatus.COMPLETED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.ASSIGNED_TO_RADNIK: {
        TaskStatus.WITH_SEF,
        TaskStatus.WITH_OPERATOR,
        TaskStatus.RETURNED_TO_SEF,
        TaskStatus.RETURNED_TO_OPERATOR,
        TaskStatus.COMPLETED,
    },
    TaskStatus.WITH_EXTERNAL: {
        TaskStatus.WITH_SEF,
        TaskStatus.WITH_OPERATOR,
        TaskStatus.RETURNED_TO_SEF,
        TaskStatus.COMPLETED,
    },
    TaskStatus.WITH_OPERATOR: {
        TaskStatus.WITH_SEF,
        TaskStatus.ASSIGNED_TO_RADNIK,
        TaskStatus.RETURNED_TO_SEF,
        TaskStatus.RETURNED_TO_OPERATOR,
        TaskStatus.COMPLETED,
    },
    TaskStatus.RETURNED_TO_SEF: {
        TaskStatus.WITH_SEF,
        TaskStatus.ASSIGNED_TO_RADNIK,
        TaskStatus.WITH_EXTERNAL,
        TaskStatus.WITH_OPERATOR,
        TaskStatus.CANCELLED,
    },
    TaskStatus.RETURNED_TO_OPERATOR: {
        TaskStatus.WITH_OPERATOR,
        TaskStatus.WITH_SEF,
        TaskStatus.ASSIGNED_TO_RADNIK,
        TaskStatus.CANCELLED,
    },
    TaskStatus.COMPLETED: set(),
    TaskStatus.CANCELLED: set(),
}


def can_transition(source: TaskStatus, target: TaskStatus) -> bool:
    return target in TASK_ALLOWED_TRANSITIONS.get(source, set())
