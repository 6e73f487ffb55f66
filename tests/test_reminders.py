import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from shopflow.contracts import RunStatus
from shopflow.db import Appointment, CommunicationLog, Company, Customer, Job, Vehicle
from shopflow.db.models import utcnow
from shopflow.workflows import reminders


@pytest_asyncio.fixture
async def booked(store):
    """An appointment 24 hours out and one a week out."""
    await store.insert(Company(name="Shiny Cars", enable_email_reminders=True))
    customer = await store.insert(Customer(name="Dana", email="dana@example.com"))
    vehicle = await store.insert(Vehicle(customer_id=customer.id, make="VW", model="Golf", year=2020))
    job = await store.insert(Job(customer_id=customer.id, vehicle_id=vehicle.id))
    now = utcnow()
    tomorrow = await store.insert(
        Appointment(
            job_id=job.id,
            start_time=now + timedelta(hours=24),
            end_time=now + timedelta(hours=25),
        )
    )
    next_week = await store.insert(
        Appointment(
            job_id=job.id,
            start_time=now + timedelta(days=7),
            end_time=now + timedelta(days=7, hours=1),
        )
    )
    return now, job, tomorrow, next_week


@pytest.mark.asyncio
async def test_dispatch_sends_one_reminder_per_appointment(manager, store, email, booked):
    reminders.register(manager)
    now, job, tomorrow, next_week = booked

    first, second = await asyncio.gather(
        reminders.dispatch_reminder_workflows(manager, now=now),
        reminders.dispatch_reminder_workflows(manager, now=now),
    )
    started = first + second
    assert len(started) == 1
    assert await reminders.dispatch_reminder_workflows(manager, now=now) == []

    run = await manager.wait_for(started[0], timeout=5)
    assert run.status == RunStatus.COMPLETED
    assert run.pool.value == "high"

    assert len(email.sent) == 1
    to, subject, body = email.sent[0]
    assert to == "dana@example.com"
    assert subject == "Appointment Reminder"
    assert "Hi Dana" in body
    assert "Shiny Cars" in body

    stored = await store.get(Appointment, tomorrow.id)
    assert stored.reminder_workflow_id == started[0]
    assert stored.reminder_sent_at is not None
    assert (await store.get(Appointment, next_week.id)).reminder_workflow_id is None

    [log] = await store.query(CommunicationLog)
    assert log.job_id == job.id
    assert log.type == "automated_reminder"
    assert log.method == "email"

    # once sent, later dispatches leave the appointment alone
    assert await reminders.dispatch_reminder_workflows(manager, now=now) == []


@pytest.mark.asyncio
async def test_dispatch_respects_company_setting(manager, store, email, booked):
    reminders.register(manager)
    now = booked[0]
    [company] = await store.query(Company)
    await store.patch(Company, company.id, enable_email_reminders=False)

    assert await reminders.dispatch_reminder_workflows(manager, now=now) == []
    assert await manager.list_runs() == []


@pytest.mark.asyncio
async def test_reminder_for_deleted_appointment_is_a_no_op(manager, store, email, booked):
    reminders.register(manager)
    _, _, tomorrow, _ = booked
    await store.delete(Appointment, tomorrow.id)

    run_id = await manager.start(
        reminders.REMINDER_WORKFLOW,
        {"appointment_id": str(tomorrow.id)},
    )
    run = await manager.wait_for(run_id, timeout=5)

    assert run.status == RunStatus.COMPLETED
    assert run.result.return_value is None
    assert email.sent == []
    assert await store.query(CommunicationLog) == []
