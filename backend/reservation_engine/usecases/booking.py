from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date

from ..config import BookingConfig
from ..domain.calendar import SlotCalendar, parse_date
from ..domain.errors import (
    AlreadyCancelledError,
    CapacityExceededError,
    DateNotBookableError,
    MissingFieldError,
    ReservationNotFoundError,
    SlotNotOfferedError,
)
from ..domain.repositories import CapacityLedger, ReservationRepository
from ..domain.services import validate_party_size
from ..models import Reservation, ReservationStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotAvailability:
    time: str
    remaining: int


@dataclass(frozen=True)
class Availability:
    day: date
    capacity: int
    slots: list[SlotAvailability] = field(default_factory=list)


class BookingService:
    """Entry point for availability, booking and cancellation.

    Validation happens before any mutation. A booking is admitted by the
    ledger first and persisted second; if persistence fails, or the request
    is abandoned in between, the admitted capacity is released again.
    """

    def __init__(
        self,
        calendar: SlotCalendar,
        ledger: CapacityLedger,
        reservations: ReservationRepository,
    ) -> None:
        self.calendar = calendar
        self.ledger = ledger
        self.reservations = reservations

    @property
    def config(self) -> BookingConfig:
        return self.calendar.config

    async def get_availability(self, day: str | date) -> Availability:
        parsed = parse_date(day)
        capacity = self.config.capacity_for(parsed)
        # blackout dates yield no slots rather than an error
        slots = [
            SlotAvailability(time=slot, remaining=await self.ledger.remaining(parsed, slot))
            for slot in self.calendar.generate_slots(parsed)
        ]
        return Availability(day=parsed, capacity=capacity, slots=slots)

    async def create_booking(
        self,
        *,
        name: str,
        email: str,
        date: str | date,
        time: str,
        party_size: int,
        phone: str | None = None,
        notes: str | None = None,
    ) -> Reservation:
        name = (name or "").strip()
        email = (email or "").strip().lower()
        if not name:
            raise MissingFieldError("name is required")
        if not email:
            raise MissingFieldError("email is required")

        validate_party_size(self.config, party_size)
        day = parse_date(date)
        if self.config.is_blackout(day):
            raise DateNotBookableError(f"{day.isoformat()} is not bookable")
        slot = self.calendar.normalize_to_slot(time)
        if not self.calendar.is_offered(day, slot):
            raise SlotNotOfferedError(f"{slot} is not offered on {day.isoformat()}")

        if not await self.ledger.try_reserve(day, slot, party_size):
            logger.info("rejected party of %d for %s %s: capacity exceeded", party_size, day, slot)
            raise CapacityExceededError(
                f"not enough capacity at {slot} on {day.isoformat()}, please pick another time"
            )

        try:
            reservation = await self.reservations.create(
                name=name,
                email=email,
                phone=phone or None,
                day=day,
                slot=slot,
                party_size=party_size,
                notes=notes or None,
            )
        except (Exception, asyncio.CancelledError):
            await asyncio.shield(self._compensate(day, slot, party_size))
            raise

        logger.info(
            "admitted reservation %s: party of %d for %s %s", reservation.id, party_size, day, slot
        )
        return reservation

    async def _compensate(self, day: date, slot: str, party_size: int) -> None:
        try:
            await self.ledger.release(day, slot, party_size)
        except Exception:
            # the one path that can leak committed capacity; reconciliation repairs it
            logger.exception(
                "compensating release failed for party of %d at %s %s", party_size, day, slot
            )

    async def cancel_booking(self, reservation_id: int, *, email: str | None = None) -> Reservation:
        """Cancel a confirmed booking.

        When ``email`` is given (user-initiated cancellation) it must match the
        booking's contact email; administrative cancellations pass None.
        """
        reservation = await self.reservations.get(reservation_id)
        if reservation is None or (email is not None and reservation.email != email.strip().lower()):
            raise ReservationNotFoundError(f"reservation {reservation_id} not found")
        if reservation.status == ReservationStatus.CANCELLED:
            raise AlreadyCancelledError(f"reservation {reservation_id} is already cancelled")

        # durable status flip first: a crash before release under-reports capacity
        cancelled = await self.reservations.mark_cancelled(reservation_id)
        if cancelled is None:
            raise AlreadyCancelledError(f"reservation {reservation_id} is already cancelled")
        await self.ledger.release(cancelled.day, cancelled.slot, cancelled.party_size)
        logger.info(
            "cancelled reservation %s, released %d at %s %s",
            reservation_id,
            cancelled.party_size,
            cancelled.day,
            cancelled.slot,
        )
        return cancelled

    async def get_reservation(self, reservation_id: int) -> Reservation:
        reservation = await self.reservations.get(reservation_id)
        if reservation is None:
            raise ReservationNotFoundError(f"reservation {reservation_id} not found")
        return reservation

    async def list_reservations(
        self,
        *,
        day: str | date | None = None,
        status: ReservationStatus | None = None,
        name: str | None = None,
        party_size: int | None = None,
    ) -> list[Reservation]:
        return await self.reservations.search(
            day=parse_date(day) if day is not None else None,
            status=status,
            name=name,
            party_size=party_size,
        )
