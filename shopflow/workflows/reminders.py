"""Appointment reminder emails, one workflow per appointment."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel

from ..contracts import CompletionEvent, Priority, RetryPolicy, StepContext, action
from ..db import Appointment, CommunicationLog, Company, Customer, Job
from ..db.models import utcnow
from ..services import ShopServices

if TYPE_CHECKING:
    from ..manager import WorkflowManager

logger = logging.getLogger(__name__)

REMINDER_WORKFLOW = "appointment_reminder"
REMINDER_COMPLETED = "appointment_reminder.completed"

REMINDER_RETRY = RetryPolicy(max_attempts=3, initial_backoff_ms=60_000, backoff_multiplier=2)
WINDOW_START = timedelta(hours=23, minutes=30)
WINDOW_END = timedelta(hours=24, minutes=30)


class ReminderArgs(BaseModel):
    appointment_id: str


def reminder_message(customer_name: str, start_time: datetime, company_name: str) -> str:
    return (
        f"Hi {customer_name},\n\n"
        "This is a friendly reminder of your upcoming auto detailing appointment "
        f"scheduled for {start_time:%A, %B %d at %I:%M %p} (UTC).\n\n"
        "We look forward to seeing you!\n\n"
        f"- {company_name}"
    )


async def send_and_log_reminder(ctx: StepContext) -> Optional[dict[str, Any]]:
    store = ctx.services.store
    appointment = await store.get(Appointment, ctx.args.appointment_id)
    if appointment is None:
        return None
    job = await store.get(Job, appointment.job_id)
    if job is None:
        return None
    customer = await store.get(Customer, job.customer_id)
    if customer is None:
        return None
    company = await store.first(Company)

    message = reminder_message(
        customer.name, appointment.start_time, company.name if company else "Detailing Pro"
    )
    await ctx.services.email.send(customer.email, "Appointment Reminder", message)
    await store.insert(
        CommunicationLog(job_id=job.id, content=message, type="automated_reminder")
    )
    return {"sent_to": customer.email}


async def on_reminder_completed(services: ShopServices, event: CompletionEvent) -> None:
    appointment_id = event.context["appointment_id"]
    if event.result.kind != "success":
        detail = event.result.error if event.result.kind == "error" else "canceled"
        logger.error(f"Sending reminder for appointment {appointment_id} failed: {detail}")
        return
    await services.store.patch(Appointment, appointment_id, reminder_sent_at=utcnow())


def register(manager: "WorkflowManager") -> None:
    manager.define(
        REMINDER_WORKFLOW,
        [action("send_and_log_reminder", send_and_log_reminder, retry=REMINDER_RETRY)],
        args_model=ReminderArgs,
        pool=Priority.HIGH,
    )
    manager.register_completion_handler(REMINDER_COMPLETED, on_reminder_completed)


async def dispatch_reminder_workflows(
    manager: "WorkflowManager", now: Optional[datetime] = None
) -> list[str]:
    """Start a reminder workflow for each appointment about a day away.

    An appointment is claimed by writing a placeholder into
    ``reminder_workflow_id`` with a conditional update before its workflow
    starts, so repeated or concurrent dispatches start at most one workflow
    per appointment.
    """
    store = manager.services.store
    company = await store.first(Company)
    if company is None or not company.enable_email_reminders:
        logger.info("Email reminders are disabled. Skipping dispatch.")
        return []

    now = now or utcnow()
    due = await store.query(
        Appointment,
        Appointment.start_time >= now + WINDOW_START,
        Appointment.start_time <= now + WINDOW_END,
        status="scheduled",
        reminder_sent_at=None,
        reminder_workflow_id=None,
    )

    started: list[str] = []
    for appointment in due:
        claim = f"claim:{uuid.uuid4()}"
        if not await store.compare_and_set(
            Appointment,
            appointment.id,
            {"reminder_workflow_id": None},
            reminder_workflow_id=claim,
        ):
            continue
        try:
            run_id = await manager.start(
                REMINDER_WORKFLOW,
                ReminderArgs(appointment_id=str(appointment.id)),
                on_complete=REMINDER_COMPLETED,
                context={"appointment_id": str(appointment.id)},
            )
        except Exception:
            await store.compare_and_set(
                Appointment,
                appointment.id,
                {"reminder_workflow_id": claim},
                reminder_workflow_id=None,
            )
            raise
        await store.patch(Appointment, appointment.id, reminder_workflow_id=run_id)
        started.append(run_id)

    if started:
        logger.info(f"Dispatched {len(started)} reminder workflow(s)")
    return started
