from functools import lru_cache
from typing import AsyncIterator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .database import async_session
from .domain.calendar import SlotCalendar
from .infrastructure.memory import InMemoryCapacityLedger, InMemoryReservationRepository
from .infrastructure.repositories import SqlAlchemyCapacityLedger, SqlAlchemyReservationRepository
from .usecases.booking import BookingService
from .utils.auth import decode_admin_token


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


@lru_cache
def _memory_store() -> tuple[InMemoryCapacityLedger, InMemoryReservationRepository]:
    settings = get_settings()
    ledger = InMemoryCapacityLedger(settings.booking, lock_timeout=settings.ledger_lock_timeout_seconds)
    return ledger, InMemoryReservationRepository()


async def get_booking_service(session: AsyncSession = Depends(get_session)) -> BookingService:
    settings = get_settings()
    calendar = SlotCalendar(settings.booking)
    if settings.storage_backend == "memory":
        ledger, reservations = _memory_store()
        return BookingService(calendar, ledger, reservations)
    return BookingService(
        calendar,
        SqlAlchemyCapacityLedger(session, settings.booking, max_attempts=settings.ledger_max_attempts),
        SqlAlchemyReservationRepository(session),
    )


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_admin(authorization: str | None = Header(default=None)) -> str:
    if authorization is None:
        raise _unauthorized("Authorization header required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _unauthorized("Bearer token required")
    settings = get_settings()
    try:
        return decode_admin_token(
            token.strip(),
            secret=settings.auth_secret,
            algorithms=[settings.auth_algorithm],
        )
    except ValueError as exc:
        raise _unauthorized("invalid or expired token") from exc
