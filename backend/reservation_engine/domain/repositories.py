from __future__ import annotations

from datetime import date
from typing import Protocol

from ..models import Reservation, ReservationStatus


class CapacityLedger(Protocol):
    """Owner of the committed party-size total per (day, slot).

    ``try_reserve`` must be atomic with respect to every other concurrent
    ``try_reserve`` on the same (day, slot).
    """

    async def remaining(self, day: date, slot: str) -> int: ...

    async def try_reserve(self, day: date, slot: str, party_size: int) -> bool: ...

    async def release(self, day: date, slot: str, party_size: int) -> None: ...

    async def totals(self, day: date) -> dict[str, int]: ...

    async def reset(self, day: date, slot: str, committed: int) -> None: ...


class ReservationRepository(Protocol):
    async def create(
        self,
        *,
        name: str,
        email: str,
        phone: str | None,
        day: date,
        slot: str,
        party_size: int,
        notes: str | None,
    ) -> Reservation: ...

    async def get(self, reservation_id: int) -> Reservation | None: ...

    async def search(
        self,
        *,
        day: date | None = None,
        status: ReservationStatus | None = None,
        name: str | None = None,
        party_size: int | None = None,
    ) -> list[Reservation]: ...

    async def list_confirmed_for_slot(self, day: date, slot: str) -> list[Reservation]: ...

    async def sum_confirmed_by_slot(self, day: date) -> dict[str, int]: ...

    async def mark_cancelled(self, reservation_id: int) -> Reservation | None:
        """Flip confirmed -> cancelled. Returns None if it was not confirmed."""
        ...
