from __future__ import annotations

import logging
from datetime import date
from typing import Any, List, Optional

from sqlalchemy import Select, func, select, update
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import BookingConfig
from ..domain.errors import CapacityCheckTimeoutError, LedgerInvariantError, StorageFailureError
from ..domain.repositories import CapacityLedger, ReservationRepository
from ..models import Reservation, ReservationStatus, SlotLedger
from ..utils.time import utc_now_naive

logger = logging.getLogger(__name__)


# Lock-wait timeouts roll back only the failed statement (MySQL 1205,
# PostgreSQL 55P03) or nothing at all (SQLite busy). Anything else, a deadlock
# in particular, may have rolled back the caller's whole transaction.
LOCK_WAIT_CODES = frozenset({1205, "55P03"})


def is_lock_wait(exc: OperationalError) -> bool:
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code is None and getattr(orig, "args", None):
        code = orig.args[0]
    if code in LOCK_WAIT_CODES:
        return True
    return "database is locked" in str(orig)


class SqlAlchemyCapacityLedger(CapacityLedger):
    """Materialized per-slot counter updated with a conditional UPDATE.

    The capacity check and the increment are one statement, so the database
    row lock serializes concurrent admissions for the same (day, slot). The
    row is created or locked with an upsert first, which takes the exclusive
    lock up front instead of upgrading a shared one.
    """

    def __init__(self, session: AsyncSession, config: BookingConfig, *, max_attempts: int = 3) -> None:
        self.session = session
        self.config = config
        self.max_attempts = max_attempts

    def _upsert(self, values: dict[str, Any]) -> Any:
        table = SlotLedger.__table__
        dialect = self.session.get_bind().dialect.name
        if dialect == "mysql":
            return mysql.insert(table).values(**values).on_duplicate_key_update(committed=table.c.committed)
        if dialect == "postgresql":
            return postgresql.insert(table).values(**values).on_conflict_do_update(
                index_elements=["day", "slot"], set_={"committed": table.c.committed}
            )
        if dialect == "sqlite":
            return sqlite.insert(table).values(**values).on_conflict_do_update(
                index_elements=["day", "slot"], set_={"committed": table.c.committed}
            )
        raise StorageFailureError(f"unsupported database dialect {dialect!r}")

    async def _lock_row(self, day: date, slot: str) -> None:
        stmt = self._upsert(
            {"day": day, "slot": slot, "committed": 0, "version": 1, "updated_at": utc_now_naive()}
        )
        await self._apply(stmt, day=day, slot=slot)

    async def _committed(self, day: date, slot: str) -> int:
        value = await self.session.scalar(
            select(SlotLedger.committed).where(SlotLedger.day == day, SlotLedger.slot == slot)
        )
        return int(value or 0)

    async def _apply(self, stmt: Any, *, day: date, slot: str) -> int:
        """Execute one ledger statement, retrying only lock-wait timeouts.

        Other operational errors are never retried here: the transaction may
        already be gone, so the whole operation has to be retried by the caller.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.session.begin_nested():
                    result = await self.session.execute(stmt)
                return int(result.rowcount)
            except OperationalError as exc:
                if not is_lock_wait(exc):
                    logger.warning(
                        "ledger transaction aborted on %s %s: %s", day.isoformat(), slot, exc.orig
                    )
                    raise CapacityCheckTimeoutError(
                        f"capacity check for {day.isoformat()} {slot} was aborted, retry the request"
                    ) from exc
                if attempt >= self.max_attempts:
                    raise CapacityCheckTimeoutError(
                        f"capacity check for {day.isoformat()} {slot} gave up after {attempt} attempts"
                    ) from exc
                logger.warning(
                    "ledger lock wait on %s %s (attempt %d/%d): %s",
                    day.isoformat(),
                    slot,
                    attempt,
                    self.max_attempts,
                    exc.orig,
                )

    async def remaining(self, day: date, slot: str) -> int:
        return max(self.config.capacity_for(day) - await self._committed(day, slot), 0)

    async def try_reserve(self, day: date, slot: str, party_size: int) -> bool:
        capacity = self.config.capacity_for(day)
        await self._lock_row(day, slot)
        stmt = (
            update(SlotLedger)
            .where(
                SlotLedger.day == day,
                SlotLedger.slot == slot,
                SlotLedger.committed + party_size <= capacity,
            )
            .values(
                committed=SlotLedger.committed + party_size,
                version=SlotLedger.version + 1,
                updated_at=utc_now_naive(),
            )
            .execution_options(synchronize_session=False)
        )
        return await self._apply(stmt, day=day, slot=slot) == 1

    async def release(self, day: date, slot: str, party_size: int) -> None:
        stmt = (
            update(SlotLedger)
            .where(
                SlotLedger.day == day,
                SlotLedger.slot == slot,
                SlotLedger.committed >= party_size,
            )
            .values(
                committed=SlotLedger.committed - party_size,
                version=SlotLedger.version + 1,
                updated_at=utc_now_naive(),
            )
            .execution_options(synchronize_session=False)
        )
        if await self._apply(stmt, day=day, slot=slot) != 1:
            raise LedgerInvariantError(
                f"releasing {party_size} from {day.isoformat()} {slot} would drive committed below zero"
            )

    async def totals(self, day: date) -> dict[str, int]:
        rows = await self.session.execute(
            select(SlotLedger.slot, SlotLedger.committed).where(
                SlotLedger.day == day, SlotLedger.committed > 0
            )
        )
        return {slot: int(committed) for slot, committed in rows.all()}

    async def reset(self, day: date, slot: str, committed: int) -> None:
        if committed < 0:
            raise LedgerInvariantError(f"committed total cannot be negative ({committed})")
        await self._lock_row(day, slot)
        stmt = (
            update(SlotLedger)
            .where(SlotLedger.day == day, SlotLedger.slot == slot)
            .values(committed=committed, version=SlotLedger.version + 1, updated_at=utc_now_naive())
            .execution_options(synchronize_session=False)
        )
        await self._apply(stmt, day=day, slot=slot)


class SqlAlchemyReservationRepository(ReservationRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

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
        try:
            # savepoint keeps the session usable for a compensating release
            async with self.session.begin_nested():
                self.session.add(reservation)
        except SQLAlchemyError as exc:
            raise StorageFailureError("failed to persist reservation") from exc
        return reservation

    async def get(self, reservation_id: int) -> Reservation | None:
        result = await self.session.get(Reservation, reservation_id)
        return result if isinstance(result, Reservation) else None

    async def search(
        self,
        *,
        day: date | None = None,
        status: ReservationStatus | None = None,
        name: str | None = None,
        party_size: int | None = None,
    ) -> List[Reservation]:
        stmt: Select[tuple[Reservation]] = select(Reservation)
        if day is not None:
            stmt = stmt.where(Reservation.day == day)
        if status is not None:
            stmt = stmt.where(Reservation.status == status)
        if name:
            stmt = stmt.where(func.lower(Reservation.name).contains(name.lower(), autoescape=True))
        if party_size is not None:
            stmt = stmt.where(Reservation.party_size == party_size)
        stmt = stmt.order_by(Reservation.day, Reservation.slot, Reservation.id)
        return list((await self.session.scalars(stmt)).all())

    async def list_confirmed_for_slot(self, day: date, slot: str) -> List[Reservation]:
        stmt = (
            select(Reservation)
            .where(
                Reservation.day == day,
                Reservation.slot == slot,
                Reservation.status == ReservationStatus.CONFIRMED,
            )
            .order_by(Reservation.id)
        )
        return list((await self.session.scalars(stmt)).all())

    async def sum_confirmed_by_slot(self, day: date) -> dict[str, int]:
        stmt = (
            select(Reservation.slot, func.coalesce(func.sum(Reservation.party_size), 0))
            .where(Reservation.day == day, Reservation.status == ReservationStatus.CONFIRMED)
            .group_by(Reservation.slot)
        )
        rows = await self.session.execute(stmt)
        return {slot: int(total) for slot, total in rows.all()}

    async def mark_cancelled(self, reservation_id: int) -> Optional[Reservation]:
        stmt = (
            update(Reservation)
            .where(Reservation.id == reservation_id, Reservation.status == ReservationStatus.CONFIRMED)
            .values(status=ReservationStatus.CANCELLED, updated_at=utc_now_naive())
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise StorageFailureError(f"failed to cancel reservation {reservation_id}") from exc
        if result.rowcount != 1:
            return None
        return await self.session.get(Reservation, reservation_id, populate_existing=True)
