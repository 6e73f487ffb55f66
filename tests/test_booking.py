from datetime import date, datetime, timedelta, timezone

import pytest
import pytest_asyncio

from shopflow.contracts import (
    Priority,
    RunStatus,
    StepContext,
    StepEntry,
    StepStatus,
    WorkflowRun,
)
from shopflow.db import Appointment, Company, Customer, Job, Service, Vehicle
from shopflow.workflows import booking

HOURS = {
    day: {"enabled": day not in ("saturday", "sunday"), "start": "09:00", "end": "12:00"}
    for day in ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
}


@pytest_asyncio.fixture
async def catalog(store):
    await store.insert(Company(name="Shiny Cars", business_hours=HOURS, slot_duration_minutes=60))
    wash = await store.insert(Service(name="Wash", base_price=50.0, duration_minutes=60))
    wax = await store.insert(Service(name="Wax", base_price=80.0, duration_minutes=60))
    return wash, wax


def _args(service_ids, **overrides):
    args = {
        "customer_info": {"name": "Dana", "email": "dana@example.com", "phone": "555"},
        "vehicle_info": {"make": "Mazda", "model": "3", "year": 2019, "color": "red"},
        "service_ids": service_ids,
        "start_time": datetime(2030, 3, 4, 10, 0, tzinfo=timezone.utc),
        "total_price": 130.0,
        "total_duration_minutes": 120,
    }
    args.update(overrides)
    return args


@pytest.mark.asyncio
async def test_booking_creates_customer_vehicle_job_and_appointment(manager, store, catalog):
    booking.register(manager)
    wash, wax = catalog

    run_id = await booking.create_booking(manager, _args([str(wash.id), str(wax.id)]))
    run = await manager.wait_for(run_id, timeout=5)

    assert run.status == RunStatus.COMPLETED
    assert run.pool.value == "high"
    ids = run.result.return_value

    [customer] = await store.query(Customer)
    assert customer.email == "dana@example.com"
    [vehicle] = await store.query(Vehicle)
    assert vehicle.customer_id == customer.id
    assert vehicle.vin == booking.ONLINE_BOOKING_VIN

    job = await store.get(Job, ids["job_id"])
    assert job.status == "workOrder"
    assert job.customer_approval_status == "approved"
    assert job.payment_status == "unpaid"
    assert job.total_amount == 130.0
    assert [item["service_id"] for item in job.job_items] == [str(wash.id), str(wax.id)]
    assert [item["total"] for item in job.job_items] == [50.0, 80.0]

    appointment = await store.get(Appointment, ids["appointment_id"])
    assert appointment.job_id == job.id
    assert appointment.status == "scheduled"
    assert appointment.start_time == datetime(2030, 3, 4, 10, 0)
    assert appointment.end_time == datetime(2030, 3, 4, 12, 0)


@pytest.mark.asyncio
async def test_returning_customer_is_reused(manager, store, catalog):
    booking.register(manager)
    wash, _ = catalog
    existing = await store.insert(Customer(name="Dana", email="dana@example.com"))

    run_id = await booking.create_booking(manager, _args([str(wash.id)]))
    run = await manager.wait_for(run_id, timeout=5)

    assert run.status == RunStatus.COMPLETED
    assert [c.id for c in await store.query(Customer)] == [existing.id]
    assert run.history[3].output == str(existing.id)


@pytest.mark.asyncio
async def test_unknown_service_fails_before_writing(manager, store, catalog):
    booking.register(manager)

    run_id = await booking.create_booking(
        manager, _args(["00000000-0000-0000-0000-000000000000"])
    )
    run = await manager.wait_for(run_id, timeout=5)

    assert run.status == RunStatus.FAILED
    assert "not found" in run.result.error
    assert await store.query(Customer) == []
    assert await store.query(Job) == []


@pytest.mark.asyncio
async def test_available_slots_skip_booked_times(store, catalog):
    monday = date(2030, 3, 4)
    assert monday.strftime("%A") == "Monday"

    slots = await booking.get_available_slots(store, monday, 60)
    assert [s.hour for s in slots] == [9, 10, 11]

    customer = await store.insert(Customer(name="A", email="a@example.com"))
    vehicle = await store.insert(Vehicle(customer_id=customer.id, make="VW", model="Golf", year=2020))
    job = await store.insert(Job(customer_id=customer.id, vehicle_id=vehicle.id))
    await store.insert(
        Appointment(
            job_id=job.id,
            start_time=datetime(2030, 3, 4, 10, 0),
            end_time=datetime(2030, 3, 4, 11, 0),
        )
    )

    slots = await booking.get_available_slots(store, monday, 60)
    assert [s.hour for s in slots] == [9, 11]
    assert await booking.get_available_slots(store, monday, 120) == []
    assert await booking.get_available_slots(store, monday + timedelta(days=5), 60) == []


@pytest.mark.asyncio
async def test_recovered_booking_reuses_committed_vehicle(manager, store, catalog):
    booking.register(manager)
    wash, _ = catalog
    args = booking.BookingArgs.model_validate(_args([str(wash.id)]))
    customer = await store.insert(Customer(**args.customer_info.model_dump()))

    # the vehicle insert committed but the process died before journaling it
    run = WorkflowRun(
        definition_name=booking.BOOKING_WORKFLOW,
        args=args.model_dump(mode="json"),
        pool=Priority.HIGH,
    )
    await manager.journal.create_run(run)
    for index, name, output in [
        (0, "validate_services", [str(wash.id)]),
        (1, "find_or_create_customer", str(customer.id)),
    ]:
        await manager.journal.append(
            run.id,
            StepEntry(
                step_index=index,
                step_name=name,
                attempt=1,
                status=StepStatus.SUCCEEDED,
                output=output,
            ),
        )
    await manager.journal.append(
        run.id,
        StepEntry(step_index=2, step_name="create_vehicle", attempt=1, status=StepStatus.PENDING),
    )
    committed = await store.insert(
        Vehicle(
            **args.vehicle_info.model_dump(),
            customer_id=customer.id,
            vin=booking.ONLINE_BOOKING_VIN,
            workflow_run_id=run.id,
        )
    )

    assert await manager.recover() == [run.id]
    done = await manager.wait_for(run.id, timeout=5)

    assert done.status == RunStatus.COMPLETED
    assert [v.id for v in await store.query(Vehicle)] == [committed.id]
    [job] = await store.query(Job)
    assert job.vehicle_id == committed.id
    assert len(await store.query(Appointment)) == 1


@pytest.mark.asyncio
async def test_job_step_rerun_returns_the_committed_job(store, services, catalog):
    wash, _ = catalog
    customer = await store.insert(Customer(name="Dana", email="dana@example.com"))
    vehicle = await store.insert(Vehicle(customer_id=customer.id, make="VW", model="Golf", year=2020))
    ctx = StepContext(
        run_id="run-1",
        attempt=1,
        args=booking.BookingArgs.model_validate(_args([str(wash.id)])),
        outputs={"find_or_create_customer": str(customer.id), "create_vehicle": str(vehicle.id)},
        services=services,
    )

    first = await booking.create_job_and_appointment(ctx)
    again = await booking.create_job_and_appointment(ctx)

    assert again == first
    assert len(await store.query(Job)) == 1
    assert len(await store.query(Appointment)) == 1
