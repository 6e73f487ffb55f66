from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo on round trip."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Company(SQLModel, table=True):
    """Shop-wide settings."""

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = "Detailing Pro"
    enable_email_reminders: bool = True
    slot_duration_minutes: int = 30
    # {"monday": {"enabled": true, "start": "09:00", "end": "17:00"}, ...}
    business_hours: dict = Field(default_factory=dict, sa_column=Column(JSON))


class Customer(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str
    email: str = Field(index=True)
    phone: str = ""


class Vehicle(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    customer_id: UUID = Field(foreign_key="customer.id", index=True)
    make: str
    model: str
    year: int
    color: str = ""
    vin: str = ""
    # booking run that created this record
    workflow_run_id: Optional[str] = Field(default=None, index=True)


class Service(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str
    description: str = ""
    base_price: float = 0.0
    duration_minutes: int = 60
    is_dealer_package: bool = False


class Upcharge(SQLModel, table=True):
    """Surcharge such as excessive pet hair, either fixed or a percentage."""

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str
    description: str = ""
    default_amount: float = 0.0
    is_percentage: bool = False


class Job(SQLModel, table=True):
    """Estimate, work order or invoice for one vehicle."""

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    customer_id: UUID = Field(foreign_key="customer.id", index=True)
    vehicle_id: UUID = Field(foreign_key="vehicle.id")
    status: str = "estimate"
    estimate_date: datetime = Field(default_factory=utcnow)
    work_order_date: Optional[datetime] = None
    total_amount: float = 0.0
    payment_received: float = 0.0
    payment_status: str = "unpaid"
    job_items: list = Field(default_factory=list, sa_column=Column(JSON))
    customer_approval_status: str = "pending"
    notes: str = ""
    inventory_debited: bool = False
    visual_quote_photo_urls: list = Field(default_factory=list, sa_column=Column(JSON))
    visual_quote_status: Optional[str] = None
    workflow_run_id: Optional[str] = Field(default=None, index=True)


class Appointment(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    job_id: UUID = Field(foreign_key="job.id", index=True)
    start_time: datetime = Field(index=True)
    end_time: datetime
    status: str = "scheduled"
    description: str = ""
    reminder_workflow_id: Optional[str] = None
    reminder_sent_at: Optional[datetime] = None


class Campaign(SQLModel, table=True):
    """Marketing email campaign whose content is generated by AI."""

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    goal: str
    subject: Optional[str] = None
    body: Optional[str] = None
    status: str = "generating"
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None


class CommunicationLog(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    job_id: UUID = Field(foreign_key="job.id", index=True)
    content: str
    type: str
    method: str = "email"
    timestamp: datetime = Field(default_factory=utcnow)
