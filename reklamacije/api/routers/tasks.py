from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status

from reklamacije.api.deps import get_current_actor
from reklamacije.domain.models import (
    Actor,
    TaskCreate,
    TaskDeleteRead,
    TaskHistoryResponse,
    TaskListRead,
    TaskRead,
    TaskUpdate,
)
from reklamacije.infra.audit import set_audit_context
from reklamacije.services.notification_worker import drain_notifications
from reklamacije.services.task_service import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TaskError,
    TaskService,
    ValidationError,
)

router = APIRouter()


def get_task_service() -> TaskService:
    return TaskService()


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
Service = Annotated[TaskService, Depends(get_task_service)]


def _handle_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if isinstance(exc, AuthorizationError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    raise exc


@router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    payload: TaskCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: CurrentActor,
    service: Service,
) -> TaskRead:
    set_audit_context(
        request,
        action="task.create",
        detail={"what": {"title": payload.title, "is_recurring": payload.is_recurring}},
    )
    try:
        task = service.create_task(actor, payload)
    except TaskError as exc:
        _handle_error(exc)
        raise
    background_tasks.add_task(drain_notifications)
    return TaskRead.model_validate(task)


@router.get("", response_model=list[TaskListRead])
def list_tasks(actor: CurrentActor, service: Service) -> list[TaskListRead]:
    return service.list_tasks()


@router.get("/my", response_model=list[TaskListRead])
def list_my_tasks(actor: CurrentActor, service: Service) -> list[TaskListRead]:
    return service.list_my_tasks(actor)


@router.get("/{task_id}", response_model=TaskRead)
def get_task(task_id: str, actor: CurrentActor, service: Service) -> TaskRead:
    try:
        return TaskRead.model_validate(service.get_task(task_id))
    except TaskError as exc:
        _handle_error(exc)
        raise


@router.patch("/{task_id}", response_model=TaskRead)
def update_task(
    task_id: str,
    payload: TaskUpdate,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: CurrentActor,
    service: Service,
) -> TaskRead:
    set_audit_context(
        request,
        action="task.update",
        resource=f"task:{task_id}",
        detail={"what": {"fields": sorted(payload.model_fields_set)}},
    )
    try:
        task = service.update_task(actor, task_id, payload)
    except TaskError as exc:
        _handle_error(exc)
        raise
    background_tasks.add_task(drain_notifications)
    return TaskRead.model_validate(task)


@router.delete("/{task_id}", response_model=TaskDeleteRead)
def delete_task(
    task_id: str,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> TaskDeleteRead:
    set_audit_context(request, action="task.delete", resource=f"task:{task_id}")
    try:
        deleted_children = service.delete_task(actor, task_id)
    except TaskError as exc:
        _handle_error(exc)
        raise
    if deleted_children:
        message = f"Recurring template deleted along with {deleted_children} future task(s)"
    else:
        message = "Task deleted"
    return TaskDeleteRead(message=message, deleted_child_tasks=deleted_children)


@router.get("/{task_id}/history", response_model=TaskHistoryResponse)
def get_task_history(task_id: str, actor: CurrentActor, service: Service) -> TaskHistoryResponse:
    try:
        return service.get_history(task_id)
    except TaskError as exc:
        _handle_error(exc)
        raise
