from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from reklamacije.api.deps import require_role
from reklamacije.domain.models import Actor, DeliverySummary, ProcessSummary
from reklamacije.domain.permissions import Role
from reklamacije.infra.audit import set_audit_context
from reklamacije.services.notification_worker import NotificationWorker
from reklamacije.services.recurring_task_service import RecurringTaskProcessor, get_recurring_processor

router = APIRouter()


def get_notification_worker() -> NotificationWorker:
    return NotificationWorker()


Admin = Annotated[Actor, Depends(require_role(Role.ADMIN))]
Processor = Annotated[RecurringTaskProcessor, Depends(get_recurring_processor)]
Worker = Annotated[NotificationWorker, Depends(get_notification_worker)]


@router.post("/process-recurring-tasks", response_model=ProcessSummary)
def process_recurring_tasks(
    request: Request,
    actor: Admin,
    processor: Processor,
    worker: Worker,
) -> ProcessSummary:
    set_audit_context(request, action="cron.process_recurring_tasks")
    summary = processor.process()
    worker.drain()
    return summary


@router.post("/deliver-notifications", response_model=DeliverySummary)
def deliver_notifications(request: Request, actor: Admin, worker: Worker) -> DeliverySummary:
    set_audit_context(request, action="cron.deliver_notifications")
    return worker.drain()

