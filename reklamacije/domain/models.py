from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from reklamacije.domain.state_machine import TaskStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def split_assignees(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(item).replace(" ", "").strip() for item in value if str(item).strip()]


class TaskPriority(StrEnum):
    URGENT = "urgent"
    NORMAL = "normal"
    CAN_WAIT = "can_wait"


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True, sa_type=DateTime(timezone=True))
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    available_at: datetime = Field(default_factory=now_utc, index=True, sa_type=DateTime(timezone=True))
    delivered_at: datetime | None = Field(default=None, index=True, sa_type=DateTime(timezone=True))
    delivery_attempts: int = Field(default=0)
    last_error: str | None = None


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True, sa_type=DateTime(timezone=True))
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Task(SQLModel, table=True):
    __tablename__ = "tasks"
    __table_args__ = (
        UniqueConstraint("parent_task_id", "scheduled_for", name="uq_tasks_parent_scheduled_for"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    title: str = Field(max_length=255)
    description: str
    location: str
    room_number: str | None = None
    priority: TaskPriority = Field(default=TaskPriority.NORMAL, index=True)
    status: TaskStatus = Field(default=TaskStatus.NEW, index=True)
    created_by: str = Field(index=True)
    created_by_name: str
    created_by_department: str | None = None
    assigned_to: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    assigned_to_name: str | None = None
    external_company_name: str | None = None
    is_recurring: bool = Field(default=False, index=True)
    recurrence_pattern: str = Field(default="once", max_length=32)
    recurrence_start_date: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    next_occurrence: datetime | None = Field(default=None, index=True, sa_type=DateTime(timezone=True))
    parent_task_id: str | None = Field(default=None, index=True)
    scheduled_for: datetime | None = Field(default=None, index=True, sa_type=DateTime(timezone=True))
    execution_hour: int = Field(default=8)
    execution_minute: int = Field(default=0)
    recurrence_week_days: list[int] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    recurrence_month_days: list[int] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    recurrence_year_dates: list[dict[str, int]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    worker_report: str | None = None
    worker_images: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    images: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    completed_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    completed_by: str | None = None
    completed_by_name: str | None = None
    receipt_confirmed_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    receipt_confirmed_by: str | None = None
    receipt_confirmed_by_name: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=now_utc, sa_type=DateTime(timezone=True))

    @property
    def is_template(self) -> bool:
        return self.is_recurring and self.parent_task_id is None


class TaskHistory(SQLModel, table=True):
    __tablename__ = "task_history"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    task_id: str = Field(index=True)
    user_id: str = Field(index=True)
    user_name: str
    user_role: str
    action: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    notes: str | None = None
    assigned_to: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    assigned_to_name: str | None = None
    timestamp: datetime = Field(default_factory=now_utc, index=True, sa_type=DateTime(timezone=True))


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    available_at: datetime | None = None
    payload: dict[str, Any]


class Actor(BaseModel):
    id: str
    name: str
    role: str
    department: str | None = None


SYSTEM_ACTOR = Actor(id="system", name="Scheduler", role="system")


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class YearDate(BaseModel):
    month: int = PydanticField(ge=1, le=12)
    day: int = PydanticField(ge=1, le=31)


class RecurrenceFields(BaseModel):
    recurrence_week_days: list[int] = PydanticField(default_factory=list)
    recurrence_month_days: list[int] = PydanticField(default_factory=list)
    recurrence_year_dates: list[YearDate] = PydanticField(default_factory=list)
    execution_hour: int = PydanticField(default=8, ge=0, le=23)
    execution_minute: int = PydanticField(default=0, ge=0, le=59)

    @field_validator("recurrence_week_days")
    @classmethod
    def _check_week_days(cls, value: list[int]) -> list[int]:
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("week days must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(value))

    @field_validator("recurrence_month_days")
    @classmethod
    def _check_month_days(cls, value: list[int]) -> list[int]:
        if any(day < 1 or day > 31 for day in value):
            raise ValueError("month days must be between 1 and 31")
        return sorted(set(value))


class TaskCreate(RecurrenceFields):
    title: str = PydanticField(min_length=1, max_length=255)
    description: str = PydanticField(min_length=1)
    hotel: str = PydanticField(min_length=1)
    blok: str = PydanticField(min_length=1)
    soba: str | None = None
    priority: TaskPriority = TaskPriority.NORMAL
    status: TaskStatus = TaskStatus.NEW
    images: list[str] = PydanticField(default_factory=list)
    assigned_to: list[str] = PydanticField(default_factory=list)
    assigned_to_name: str | None = None
    is_recurring: bool = False
    recurrence_pattern: str = "once"
    recurrence_start_date: datetime | None = None

    @field_validator("assigned_to", mode="before")
    @classmethod
    def _split_assigned_to(cls, value: Any) -> list[str]:
        return split_assignees(value)

    @field_validator("priority", mode="before")
    @classmethod
    def _legacy_priority(cls, value: Any) -> Any:
        return TaskPriority.CAN_WAIT if value == "low" else value


class TaskUpdate(BaseModel):
    status: TaskStatus | None = None
    assigned_to: list[str] | None = None
    assigned_to_name: str | None = None
    worker_report: str | None = None
    worker_images: list[str] | None = None
    external_company_name: str | None = None
    receipt_confirmed_at: datetime | None = None
    title: str | None = PydanticField(default=None, min_length=1, max_length=255)
    description: str | None = None
    hotel: str | None = None
    blok: str | None = None
    soba: str | None = None
    room_number: str | None = None
    priority: TaskPriority | None = None
    images: list[str] | None = None
    is_recurring: bool | None = None
    recurrence_pattern: str | None = None
    recurrence_week_days: list[int] | None = None
    recurrence_month_days: list[int] | None = None
    recurrence_year_dates: list[YearDate] | None = None
    execution_hour: int | None = PydanticField(default=None, ge=0, le=23)
    execution_minute: int | None = PydanticField(default=None, ge=0, le=59)

    @field_validator("assigned_to", mode="before")
    @classmethod
    def _split_assigned_to(cls, value: Any) -> list[str] | None:
        if value is None:
            return None
        return split_assignees(value)

    @field_validator("priority", mode="before")
    @classmethod
    def _legacy_priority(cls, value: Any) -> Any:
        return TaskPriority.CAN_WAIT if value == "low" else value

    def provided(self, *names: str) -> bool:
        return any(name in self.model_fields_set for name in names)


DETAIL_FIELDS = ("title", "description", "hotel", "blok", "soba", "room_number", "priority", "images")
RECURRENCE_FIELDS = (
    "is_recurring",
    "recurrence_pattern",
    "recurrence_week_days",
    "recurrence_month_days",
    "recurrence_year_dates",
    "execution_hour",
    "execution_minute",
)


class TaskRead(ORMReadModel):
    id: str
    title: str
    description: str
    location: str
    room_number: str | None
    priority: TaskPriority
    status: TaskStatus
    created_by: str
    created_by_name: str
    created_by_department: str | None
    assigned_to: list[str]
    assigned_to_name: str | None
    external_company_name: str | None
    is_recurring: bool
    recurrence_pattern: str
    recurrence_start_date: datetime | None
    next_occurrence: datetime | None
    parent_task_id: str | None
    scheduled_for: datetime | None
    execution_hour: int
    execution_minute: int
    recurrence_week_days: list[int]
    recurrence_month_days: list[int]
    recurrence_year_dates: list[dict[str, int]]
    worker_report: str | None
    worker_images: list[str]
    images: list[str]
    completed_at: datetime | None
    completed_by: str | None
    completed_by_name: str | None
    receipt_confirmed_at: datetime | None
    receipt_confirmed_by: str | None
    receipt_confirmed_by_name: str | None
    created_at: datetime
    updated_at: datetime


class TaskListRead(TaskRead):
    assignment_path: str = ""


class TaskDeleteRead(BaseModel):
    message: str
    deleted_child_tasks: int


class TaskHistoryRead(ORMReadModel):
    id: str
    task_id: str
    user_id: str
    user_name: str
    user_role: str
    action: str
    status_from: str | None
    status_to: str | None
    notes: str | None
    assigned_to: list[str]
    assigned_to_name: str | None
    timestamp: datetime


class ReturnReasonRead(BaseModel):
    user_name: str
    reason: str
    timestamp: datetime


class TaskHistoryResponse(BaseModel):
    history: list[TaskHistoryRead]
    return_reasons: list[ReturnReasonRead]


class ProcessErrorRead(BaseModel):
    template_id: str
    error: str


class ProcessSummary(BaseModel):
    templates_scanned: int = 0
    children_created: int = 0
    errors: list[ProcessErrorRead] = PydanticField(default_factory=list)


class DeliverySummary(BaseModel):
    events_processed: int = 0
    sent: int = 0
    failed: int = 0
