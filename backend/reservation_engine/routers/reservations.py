from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_booking_service, get_session
from ..models import Reservation, ReservationStatus
from ..schemas import ReservationCancel, ReservationCreate, ReservationCreated, ReservationRead
from ..usecases.booking import BookingService
from ..utils.audit_log import emit_audit_log
from .errors import booking_transaction

router = APIRouter(prefix="", tags=["reservations"])


def _audit(reservation: Reservation, **kwargs: Any) -> None:
    try:
        emit_audit_log(
            reservation_id=reservation.id,
            day=reservation.day,
            slot=reservation.slot,
            party_size=reservation.party_size,
            **kwargs,
        )
    except RuntimeError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed"
        ) from exc


@router.post("/reservations", response_model=ReservationCreated, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    payload: ReservationCreate,
    session: AsyncSession = Depends(get_session),
    service: BookingService = Depends(get_booking_service),
) -> ReservationCreated:
    async with booking_transaction(session):
        reservation = await service.create_booking(
            name=payload.name,
            email=payload.email,
            phone=payload.phone,
            date=payload.date,
            time=payload.time,
            party_size=payload.party_size,
            notes=payload.notes,
        )

    _audit(
        reservation,
        action="reservation.created",
        initiator="user",
        status_to=ReservationStatus.CONFIRMED,
    )
    return ReservationCreated.from_db(reservation=reservation)


@router.post("/reservations/{reservation_id}/cancel", response_model=ReservationRead)
async def cancel_reservation(
    payload: ReservationCancel,
    reservation_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    service: BookingService = Depends(get_booking_service),
) -> ReservationRead:
    async with booking_transaction(session):
        reservation = await service.cancel_booking(reservation_id, email=payload.email)

    _audit(
        reservation,
        action="reservation.cancelled",
        initiator="user",
        status_from=ReservationStatus.CONFIRMED,
        status_to=ReservationStatus.CANCELLED,
    )
    return ReservationRead.from_db(reservation=reservation)
