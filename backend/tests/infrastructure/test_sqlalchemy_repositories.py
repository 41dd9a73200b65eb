import asyncio
from contextlib import asynccontextmanager
from datetime import date
from pathlib import Path
from typing import Any, AsyncIterator

import pytest
from sqlalchemy import event, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from reservation_engine.config import BookingConfig
from reservation_engine.domain.calendar import SlotCalendar
from reservation_engine.domain.errors import (
    AlreadyCancelledError,
    CapacityCheckTimeoutError,
    CapacityExceededError,
    LedgerInvariantError,
)
from reservation_engine.infrastructure.repositories import (
    SqlAlchemyCapacityLedger,
    SqlAlchemyReservationRepository,
)
from reservation_engine.models import Base, Reservation, ReservationStatus, SlotLedger
from reservation_engine.usecases.booking import BookingService
from reservation_engine.usecases.reconcile import reconcile_ledger

DAY = date(2024, 6, 1)
CONFIG = BookingConfig(capacity_per_slot=24)


async def _engine(url: str, **kwargs: Any) -> AsyncEngine:
    engine = create_async_engine(url, **kwargs)

    # let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest inside a real transaction
    @event.listens_for(engine.sync_engine, "connect")
    def _no_driver_begin(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


@asynccontextmanager
async def _session() -> AsyncIterator[AsyncSession]:
    engine = await _engine("sqlite+aiosqlite://", poolclass=StaticPool)
    maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    try:
        async with maker() as session:
            yield session
    finally:
        await engine.dispose()


class _DriverError(Exception):
    pass


def _fail_ledger_updates(
    monkeypatch: pytest.MonkeyPatch, session: AsyncSession, *, code: int, message: str, times: int
) -> list[Any]:
    """Make the first ``times`` UPDATEs of slot_ledger fail like the driver would."""
    calls: list[Any] = []
    real_execute = session.execute

    async def execute(stmt: Any, *args: Any, **kwargs: Any) -> Any:
        if getattr(stmt, "is_update", False) and stmt.table.name == "slot_ledger":
            calls.append(stmt)
            if len(calls) <= times:
                raise OperationalError(str(stmt), {}, _DriverError(code, message))
        return await real_execute(stmt, *args, **kwargs)

    monkeypatch.setattr(session, "execute", execute)
    return calls


async def _create(repo: SqlAlchemyReservationRepository, *, slot: str = "19:00", party_size: int = 2, name: str = "Ada"):
    return await repo.create(
        name=name,
        email=f"{name.lower()}@example.com",
        phone=None,
        day=DAY,
        slot=slot,
        party_size=party_size,
        notes=None,
    )


@pytest.mark.asyncio
async def test_conditional_update_enforces_capacity() -> None:
    async with _session() as session:
        ledger = SqlAlchemyCapacityLedger(session, CONFIG)
        assert await ledger.remaining(DAY, "19:00") == 24
        assert await ledger.try_reserve(DAY, "19:00", 10) is True
        assert await ledger.try_reserve(DAY, "19:00", 15) is False
        assert await ledger.remaining(DAY, "19:00") == 14
        assert await ledger.try_reserve(DAY, "19:00", 14) is True
        assert await ledger.remaining(DAY, "19:00") == 0
        assert await ledger.totals(DAY) == {"19:00": 24}


@pytest.mark.asyncio
async def test_ledger_row_is_created_once() -> None:
    async with _session() as session:
        ledger = SqlAlchemyCapacityLedger(session, CONFIG)
        await ledger.try_reserve(DAY, "19:00", 1)
        await ledger.try_reserve(DAY, "19:00", 1)
        rows = (await session.scalars(SlotLedger.__table__.select())).all()
        assert len(rows) == 1


@pytest.mark.asyncio
async def test_release_below_zero_raises() -> None:
    async with _session() as session:
        ledger = SqlAlchemyCapacityLedger(session, CONFIG)
        await ledger.try_reserve(DAY, "19:00", 2)
        await ledger.release(DAY, "19:00", 2)
        assert await ledger.remaining(DAY, "19:00") == 24
        with pytest.raises(LedgerInvariantError):
            await ledger.release(DAY, "19:00", 1)
        with pytest.raises(LedgerInvariantError):
            await ledger.release(DAY, "20:00", 1)


@pytest.mark.asyncio
async def test_reservation_repository_roundtrip_and_filters() -> None:
    async with _session() as session:
        repo = SqlAlchemyReservationRepository(session)
        ada = await _create(repo, slot="19:00", party_size=4, name="Ada")
        await _create(repo, slot="19:00", party_size=3, name="Grace")
        await _create(repo, slot="19:30", party_size=2, name="Linus")

        assert ada.id is not None
        assert (await repo.get(ada.id)) is ada
        assert await repo.get(12345) is None
        assert await repo.sum_confirmed_by_slot(DAY) == {"19:00": 7, "19:30": 2}
        assert [r.name for r in await repo.list_confirmed_for_slot(DAY, "19:00")] == ["Ada", "Grace"]
        assert [r.name for r in await repo.search(name="RAC")] == ["Grace"]
        assert [r.name for r in await repo.search(day=DAY, party_size=2)] == ["Linus"]

        cancelled = await repo.mark_cancelled(ada.id)
        assert cancelled is not None
        assert cancelled.status == ReservationStatus.CANCELLED
        assert await repo.mark_cancelled(ada.id) is None
        assert await repo.sum_confirmed_by_slot(DAY) == {"19:00": 3, "19:30": 2}
        assert [r.name for r in await repo.search(status=ReservationStatus.CANCELLED)] == ["Ada"]


@pytest.mark.asyncio
async def test_booking_service_over_sql_end_to_end() -> None:
    async with _session() as session:
        ledger = SqlAlchemyCapacityLedger(session, CONFIG)
        repo = SqlAlchemyReservationRepository(session)
        service = BookingService(SlotCalendar(CONFIG), ledger, repo)

        async with session.begin():
            party_a = await service.create_booking(
                name="A", email="a@example.com", date="2024-06-01", time="19:00", party_size=10
            )
        assert await ledger.remaining(DAY, "19:00") == 14

        with pytest.raises(CapacityExceededError):
            await service.create_booking(
                name="B", email="b@example.com", date="2024-06-01", time="19:10", party_size=15
            )
        await service.create_booking(
            name="B", email="b@example.com", date="2024-06-01", time="19:10", party_size=14
        )
        assert await ledger.remaining(DAY, "19:00") == 0

        await service.cancel_booking(party_a.id)
        assert await ledger.remaining(DAY, "19:00") == 14
        with pytest.raises(AlreadyCancelledError):
            await service.cancel_booking(party_a.id)
        assert await ledger.totals(DAY) == await repo.sum_confirmed_by_slot(DAY)


@pytest.mark.asyncio
async def test_reconcile_detects_and_repairs_drift() -> None:
    async with _session() as session:
        ledger = SqlAlchemyCapacityLedger(session, CONFIG)
        repo = SqlAlchemyReservationRepository(session)
        service = BookingService(SlotCalendar(CONFIG), ledger, repo)
        await service.create_booking(name="A", email="a@example.com", date=DAY, time="18:00", party_size=6)

        await session.execute(
            update(SlotLedger)
            .where(SlotLedger.day == DAY, SlotLedger.slot == "18:00")
            .values(committed=9)
            .execution_options(synchronize_session=False)
        )

        found = await reconcile_ledger(ledger, repo, day=DAY)
        assert [(d.slot, d.ledger_total, d.record_total) for d in found] == [("18:00", 9, 6)]
        assert await ledger.totals(DAY) == {"18:00": 9}

        await reconcile_ledger(ledger, repo, day=DAY, repair=True)
        assert await ledger.totals(DAY) == {"18:00": 6}
        assert await reconcile_ledger(ledger, repo, day=DAY) == []


@pytest.mark.asyncio
async def test_separate_sessions_never_oversell(tmp_path: Path) -> None:
    engine = await _engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", connect_args={"timeout": 30})
    maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    config = BookingConfig(capacity_per_slot=5)

    async def book(i: int) -> Reservation:
        async with maker() as session:
            service = BookingService(
                SlotCalendar(config),
                SqlAlchemyCapacityLedger(session, config),
                SqlAlchemyReservationRepository(session),
            )
            async with session.begin():
                return await service.create_booking(
                    name=f"Guest {i}",
                    email=f"guest{i}@example.com",
                    date="2024-06-01",
                    time="19:00",
                    party_size=1,
                )

    try:
        results = await asyncio.gather(*(book(i) for i in range(20)), return_exceptions=True)

        admitted = [r for r in results if isinstance(r, Reservation)]
        rejected = [r for r in results if not isinstance(r, Reservation)]
        assert len(admitted) == 5
        assert len(rejected) == 15
        assert all(isinstance(r, CapacityExceededError) for r in rejected)

        async with maker() as session:
            ledger_totals = await SqlAlchemyCapacityLedger(session, config).totals(DAY)
            record_totals = await SqlAlchemyReservationRepository(session).sum_confirmed_by_slot(DAY)
        assert ledger_totals == record_totals == {"19:00": 5}
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_lock_wait_timeout_is_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    async with _session() as session:
        ledger = SqlAlchemyCapacityLedger(session, CONFIG, max_attempts=3)
        calls = _fail_ledger_updates(
            monkeypatch, session, code=1205, message="Lock wait timeout exceeded", times=2
        )

        assert await ledger.try_reserve(DAY, "19:00", 4) is True
        assert len(calls) == 3
        assert await ledger.remaining(DAY, "19:00") == 20


@pytest.mark.asyncio
async def test_lock_wait_gives_up_after_max_attempts(monkeypatch: pytest.MonkeyPatch) -> None:
    async with _session() as session:
        ledger = SqlAlchemyCapacityLedger(session, CONFIG, max_attempts=3)
        calls = _fail_ledger_updates(
            monkeypatch, session, code=1205, message="Lock wait timeout exceeded", times=10
        )

        with pytest.raises(CapacityCheckTimeoutError):
            await ledger.try_reserve(DAY, "19:00", 4)
        assert len(calls) == 3
        assert await ledger.remaining(DAY, "19:00") == 24


@pytest.mark.asyncio
async def test_deadlock_aborts_cancel_without_retry(monkeypatch: pytest.MonkeyPatch) -> None:
    async with _session() as session:
        ledger = SqlAlchemyCapacityLedger(session, CONFIG, max_attempts=3)
        repo = SqlAlchemyReservationRepository(session)
        service = BookingService(SlotCalendar(CONFIG), ledger, repo)
        async with session.begin():
            reservation = await service.create_booking(
                name="A", email="a@example.com", date="2024-06-01", time="19:00", party_size=4
            )

        calls = _fail_ledger_updates(
            monkeypatch, session, code=1213, message="Deadlock found when trying to get lock", times=1
        )
        with pytest.raises(CapacityCheckTimeoutError):
            async with session.begin():
                await service.cancel_booking(reservation.id)

        # the release is not retried and the status flip is rolled back with it
        assert len(calls) == 1
        reloaded = await session.get(Reservation, reservation.id, populate_existing=True)
        assert reloaded is not None
        assert reloaded.status == ReservationStatus.CONFIRMED
        assert await ledger.totals(DAY) == await repo.sum_confirmed_by_slot(DAY) == {"19:00": 4}
