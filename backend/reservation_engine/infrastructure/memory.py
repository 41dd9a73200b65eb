from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import date
from typing import AsyncIterator

from ..config import BookingConfig
from ..domain.errors import CapacityCheckTimeoutError, LedgerInvariantError
from ..domain.repositories import CapacityLedger, ReservationRepository
from ..domain.services import LedgerSnapshot, admitted_total, released_total
from ..models import Reservation, ReservationStatus
from ..utils.time import utc_now_naive


class InMemoryCapacityLedger(CapacityLedger):
    """Process-local ledger guarded by one asyncio lock per (day, slot).

    Safe for concurrent tasks on a single event loop; a multi-process
    deployment needs the SQL ledger.
    """

    def __init__(self, config: BookingConfig, *, lock_timeout: float = 2.0) -> None:
        self.config = config
        self.lock_timeout = lock_timeout
        self._committed: dict[tuple[date, str], int] = {}
        self._locks: dict[tuple[date, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[date, str], int] = {}

    @asynccontextmanager
    async def _slot_guard(self, day: date, slot: str) -> AsyncIterator[None]:
        # a lock lives only while some task holds or waits on it
        key = (day, slot)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.lock_timeout)
            except asyncio.TimeoutError as exc:
                raise CapacityCheckTimeoutError(
                    f"capacity check for {day.isoformat()} {slot} timed out"
                ) from exc
            try:
                yield
            finally:
                lock.release()
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _snapshot(self, day: date, slot: str) -> LedgerSnapshot:
        return LedgerSnapshot(
            capacity=self.config.capacity_for(day),
            committed=self._committed.get((day, slot), 0),
        )

    def _store(self, day: date, slot: str, committed: int) -> None:
        if committed:
            self._committed[(day, slot)] = committed
        else:
            self._committed.pop((day, slot), None)

    async def remaining(self, day: date, slot: str) -> int:
        return (await self._snapshot(day, slot)).remaining

    async def try_reserve(self, day: date, slot: str, party_size: int) -> bool:
        async with self._slot_guard(day, slot):
            new_total = admitted_total(await self._snapshot(day, slot), party_size=party_size)
            if new_total is None:
                return False
            self._store(day, slot, new_total)
            return True

    async def release(self, day: date, slot: str, party_size: int) -> None:
        async with self._slot_guard(day, slot):
            snapshot = await self._snapshot(day, slot)
            self._store(day, slot, released_total(snapshot, party_size=party_size))

    async def totals(self, day: date) -> dict[str, int]:
        return {
            slot: committed
            for (entry_day, slot), committed in self._committed.items()
            if entry_day == day
        }

    async def reset(self, day: date, slot: str, committed: int) -> None:
        if committed < 0:
            raise LedgerInvariantError(f"committed total cannot be negative ({committed})")
        async with self._slot_guard(day, slot):
            self._store(day, slot, committed)


class InMemoryReservationRepository(ReservationRepository):
    def __init__(self) -> None:
        self._rows: dict[int, Reservation] = {}
        self._ids = itertools.count(1)

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
    ) -> Reservation:
        now = utc_now_naive()
        reservation = Reservation(
            id=next(self._ids),
            name=name,
            email=email,
            phone=phone,
            day=day,
            slot=slot,
            party_size=party_size,
            notes=notes,
            status=ReservationStatus.CONFIRMED,
            created_at=now,
            updated_at=now,
        )
        self._rows[reservation.id] = reservation
        return reservation

    async def get(self, reservation_id: int) -> Reservation | None:
        return self._rows.get(reservation_id)

    async def search(
        self,
        *,
        day: date | None = None,
        status: ReservationStatus | None = None,
        name: str | None = None,
        party_size: int | None = None,
    ) -> list[Reservation]:
        rows = list(self._rows.values())
        if day is not None:
            rows = [r for r in rows if r.day == day]
        if status is not None:
            rows = [r for r in rows if r.status == status]
        if name:
            needle = name.lower()
            rows = [r for r in rows if needle in r.name.lower()]
        if party_size is not None:
            rows = [r for r in rows if r.party_size == party_size]
        return sorted(rows, key=lambda r: (r.day, r.slot, r.id))

    async def list_confirmed_for_slot(self, day: date, slot: str) -> list[Reservation]:
        return [
            r
            for r in await self.search(day=day, status=ReservationStatus.CONFIRMED)
            if r.slot == slot
        ]

    async def sum_confirmed_by_slot(self, day: date) -> dict[str, int]:
        totals: dict[str, int] = defaultdict(int)
        for r in await self.search(day=day, status=ReservationStatus.CONFIRMED):
            totals[r.slot] += r.party_size
        return dict(totals)

    async def mark_cancelled(self, reservation_id: int) -> Reservation | None:
        reservation = self._rows.get(reservation_id)
        if reservation is None or not reservation.is_active:
            return None
        reservation.mark_cancelled(utc_now_naive())
        return reservation
