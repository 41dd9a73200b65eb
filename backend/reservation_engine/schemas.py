from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_serializer

from .domain.services import LedgerDiscrepancy
from .models import Reservation, ReservationStatus
from .usecases.booking import Availability
from .utils.time import utc_naive_to_venue


class SlotRemaining(BaseModel):
    time: str
    remaining: int


class AvailabilityRead(BaseModel):
    date: date
    capacity: int
    slots: list[SlotRemaining]

    @classmethod
    def from_domain(cls, availability: Availability) -> "AvailabilityRead":
        return cls(
            date=availability.day,
            capacity=availability.capacity,
            slots=[SlotRemaining(time=s.time, remaining=s.remaining) for s in availability.slots],
        )


class ReservationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    email: EmailStr
    phone: Optional[str] = Field(default=None, max_length=32, pattern=r"^\d+$")
    date: str
    time: str
    party_size: int
    notes: Optional[str] = Field(default=None, max_length=500)


class ReservationCancel(BaseModel):
    email: EmailStr


class ReservationCreated(BaseModel):
    id: int
    date: date
    slot: str
    party_size: int
    status: ReservationStatus

    @classmethod
    def from_db(cls, *, reservation: Reservation) -> "ReservationCreated":
        return cls(
            id=reservation.id,
            date=reservation.day,
            slot=reservation.slot,
            party_size=reservation.party_size,
            status=reservation.status,
        )


class ReservationRead(BaseModel):
    id: int
    name: str
    email: str
    phone: Optional[str]
    date: date
    slot: str
    party_size: int
    notes: Optional[str]
    status: ReservationStatus
    created_at: datetime
    updated_at: datetime

    @field_serializer("created_at", "updated_at")
    def _ser_datetime(self, dt: datetime) -> str:
        return dt.isoformat()

    @classmethod
    def from_db(cls, *, reservation: Reservation) -> "ReservationRead":
        return cls(
            id=reservation.id,
            name=reservation.name,
            email=reservation.email,
            phone=reservation.phone,
            date=reservation.day,
            slot=reservation.slot,
            party_size=reservation.party_size,
            notes=reservation.notes,
            status=reservation.status,
            created_at=utc_naive_to_venue(reservation.created_at),
            updated_at=utc_naive_to_venue(reservation.updated_at),
        )


class LedgerDiscrepancyRead(BaseModel):
    slot: str
    ledger_total: int
    record_total: int
    drift: int

    @classmethod
    def from_domain(cls, item: LedgerDiscrepancy) -> "LedgerDiscrepancyRead":
        return cls(
            slot=item.slot,
            ledger_total=item.ledger_total,
            record_total=item.record_total,
            drift=item.drift,
        )


class ReconcileRead(BaseModel):
    date: date
    repaired: bool
    discrepancies: list[LedgerDiscrepancyRead]
