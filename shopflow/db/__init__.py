from .models import (
    Appointment,
    Campaign,
    CommunicationLog,
    Company,
    Customer,
    Job,
    Service,
    Upcharge,
    Vehicle,
)
from .store import ShopStore

__all__ = [
    "Appointment",
    "Campaign",
    "CommunicationLog",
    "Company",
    "Customer",
    "Job",
    "Service",
    "Upcharge",
    "Vehicle",
    "ShopStore",
]
