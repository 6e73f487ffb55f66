"""Online booking: customer, vehicle, job and appointment in one workflow."""

from __future__ import annotations

import logging
import time
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any, Mapping

from pydantic import BaseModel, Field, field_validator

from ..contracts import Priority, StepContext, mutation, query
from ..db import Appointment, Company, Customer, Job, Service, ShopStore, Vehicle
from ..db.models import as_naive_utc, utcnow
from ..db.store import as_uuid
from ..errors import InvalidStateError, RecordNotFoundError

if TYPE_CHECKING:
    from ..manager import WorkflowManager

logger = logging.getLogger(__name__)

BOOKING_WORKFLOW = "online_booking"
ONLINE_BOOKING_VIN = "N/A_OnlineBooking"


class CustomerInfo(BaseModel):
    name: str
    email: str
    phone: str = ""


class VehicleInfo(BaseModel):
    make: str
    model: str
    year: int
    color: str = ""


class BookingArgs(BaseModel):
    customer_info: CustomerInfo
    vehicle_info: VehicleInfo
    service_ids: list[str] = Field(min_length=1)
    start_time: datetime
    total_price: float = Field(ge=0)
    total_duration_minutes: int = Field(gt=0)

    @field_validator("start_time")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        return as_naive_utc(value)


def job_item(service: Service) -> dict[str, Any]:
    return {
        "id": f"item_{int(time.time() * 1000)}_{service.id}",
        "service_id": str(service.id),
        "quantity": 1,
        "unit_price": service.base_price,
        "applied_pricing_rule_ids": [],
        "added_upcharge_ids": [],
        "total": service.base_price,
    }


# ----------------------------------------------------------------------
# Steps
async def validate_services(ctx: StepContext) -> list[str]:
    """Fail fast on unknown services before anything is written."""
    args: BookingArgs = ctx.args
    store = ctx.services.store
    for service_id in args.service_ids:
        if await store.get(Service, service_id) is None:
            raise RecordNotFoundError(f"Service {service_id} not found")
    return args.service_ids


async def find_or_create_customer(ctx: StepContext) -> str:
    info = ctx.args.customer_info
    store = ctx.services.store
    existing = await store.first(Customer, email=info.email)
    if existing is not None:
        return str(existing.id)
    customer = await store.insert(Customer(**info.model_dump()))
    return str(customer.id)


async def create_vehicle(ctx: StepContext) -> str:
    store = ctx.services.store
    # a re-run after a crash finds the vehicle its first attempt committed
    existing = await store.first(Vehicle, workflow_run_id=ctx.run_id)
    if existing is not None:
        return str(existing.id)
    customer_id = ctx.outputs["find_or_create_customer"]
    vehicle = await store.insert(
        Vehicle(
            **ctx.args.vehicle_info.model_dump(),
            customer_id=as_uuid(customer_id),
            vin=ONLINE_BOOKING_VIN,
            workflow_run_id=ctx.run_id,
        )
    )
    return str(vehicle.id)


async def create_job_and_appointment(ctx: StepContext) -> dict[str, str]:
    args: BookingArgs = ctx.args
    store = ctx.services.store
    now = utcnow()
    async with store.transaction() as session:
        existing = await store.first(Job, session=session, workflow_run_id=ctx.run_id)
        if existing is not None:
            appointment = await store.first(Appointment, session=session, job_id=existing.id)
            return {"job_id": str(existing.id), "appointment_id": str(appointment.id)}
        items = []
        for service_id in args.service_ids:
            service = await store.get(Service, service_id, session=session)
            if service is None:
                raise RecordNotFoundError(f"Service {service_id} not found")
            items.append(job_item(service))
        job = await store.insert(
            Job(
                customer_id=as_uuid(ctx.outputs["find_or_create_customer"]),
                vehicle_id=as_uuid(ctx.outputs["create_vehicle"]),
                status="workOrder",
                estimate_date=now,
                work_order_date=now,
                total_amount=args.total_price,
                payment_received=0,
                payment_status="unpaid",
                job_items=items,
                customer_approval_status="approved",
                notes="Booked online by customer.",
                inventory_debited=False,
                workflow_run_id=ctx.run_id,
            ),
            session=session,
        )
        appointment = await store.insert(
            Appointment(
                job_id=job.id,
                start_time=args.start_time,
                end_time=args.start_time + timedelta(minutes=args.total_duration_minutes),
                status="scheduled",
                description="Online Booking",
            ),
            session=session,
        )
    return {"job_id": str(job.id), "appointment_id": str(appointment.id)}


# ----------------------------------------------------------------------
def register(manager: "WorkflowManager") -> None:
    manager.define(
        BOOKING_WORKFLOW,
        [
            query("validate_services", validate_services),
            mutation("find_or_create_customer", find_or_create_customer),
            mutation("create_vehicle", create_vehicle),
            mutation("create_job_and_appointment", create_job_and_appointment),
        ],
        args_model=BookingArgs,
        pool=Priority.HIGH,
    )


async def create_booking(
    manager: "WorkflowManager", args: BookingArgs | Mapping[str, Any]
) -> str:
    """Start the booking workflow on the high priority pool."""
    run_id = await manager.start(BOOKING_WORKFLOW, args)
    logger.info(f"Online booking accepted, run_id={run_id}")
    return run_id


async def get_available_slots(
    store: ShopStore, day: date, total_duration_minutes: int
) -> list[datetime]:
    """Start times on ``day`` where a job of the given length fits.

    Slots are laid out every ``slot_duration_minutes`` inside the company's
    business hours (UTC) and skipped when they overlap an appointment.
    """
    company = await store.first(Company)
    if company is None or not company.business_hours:
        raise InvalidStateError("Business hours are not configured.")

    hours = company.business_hours.get(day.strftime("%A").lower())
    if not hours or not hours.get("enabled"):
        return []

    start_hour, start_minute = (int(p) for p in hours["start"].split(":"))
    end_hour, end_minute = (int(p) for p in hours["end"].split(":"))
    day_start = datetime(day.year, day.month, day.day, start_hour, start_minute)
    day_end = datetime(day.year, day.month, day.day, end_hour, end_minute)

    next_day = datetime(day.year, day.month, day.day) + timedelta(days=1)
    booked = await store.query(
        Appointment,
        Appointment.start_time >= datetime(day.year, day.month, day.day),
        Appointment.start_time < next_day,
    )

    step = timedelta(minutes=company.slot_duration_minutes or 30)
    length = timedelta(minutes=total_duration_minutes)
    slots: list[datetime] = []
    slot_start = day_start
    while slot_start + length <= day_end:
        slot_end = slot_start + length
        if not any(slot_start < a.end_time and slot_end > a.start_time for a in booked):
            slots.append(slot_start)
        slot_start += step
    return slots
