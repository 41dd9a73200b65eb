from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_booking_service, get_session, require_admin
from ..domain.calendar import parse_date
from ..models import Reservation, ReservationStatus
from ..schemas import LedgerDiscrepancyRead, ReconcileRead, ReservationRead
from ..usecases.booking import BookingService
from ..usecases.reconcile import reconcile_ledger
from ..utils.audit_log import emit_audit_log
from .errors import booking_transaction, translate_errors

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def _audit(**kwargs: Any) -> None:
    try:
        emit_audit_log(**kwargs)
    except RuntimeError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed"
        ) from exc


@router.get("/reservations", response_model=List[ReservationRead])
async def list_reservations(
    date: Optional[str] = Query(default=None, description="YYYY-MM-DD"),
    status_filter: Optional[ReservationStatus] = Query(default=None, alias="status"),
    name: Optional[str] = Query(default=None, max_length=120),
    party_size: Optional[int] = Query(default=None, ge=1),
    service: BookingService = Depends(get_booking_service),
) -> list[ReservationRead]:
    async with translate_errors():
        rows = await service.list_reservations(
            day=date,
            status=status_filter,
            name=name,
            party_size=party_size,
        )
    return [ReservationRead.from_db(reservation=r) for r in rows]


@router.get("/reservations/{reservation_id}", response_model=ReservationRead)
async def get_reservation(
    reservation_id: int = Path(..., ge=1),
    service: BookingService = Depends(get_booking_service),
) -> ReservationRead:
    async with translate_errors():
        reservation = await service.get_reservation(reservation_id)
    return ReservationRead.from_db(reservation=reservation)


@router.post("/reservations/{reservation_id}/cancel", response_model=ReservationRead)
async def cancel_reservation(
    reservation_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    service: BookingService = Depends(get_booking_service),
) -> ReservationRead:
    async with booking_transaction(session):
        reservation: Reservation = await service.cancel_booking(reservation_id)

    _audit(
        action="reservation.cancelled",
        initiator="admin",
        reservation_id=reservation.id,
        day=reservation.day,
        slot=reservation.slot,
        party_size=reservation.party_size,
        status_from=ReservationStatus.CONFIRMED,
        status_to=ReservationStatus.CANCELLED,
    )
    return ReservationRead.from_db(reservation=reservation)


@router.post("/ledger/reconcile", response_model=ReconcileRead)
async def reconcile(
    date: str = Query(..., description="YYYY-MM-DD"),
    repair: bool = Query(default=False),
    session: AsyncSession = Depends(get_session),
    service: BookingService = Depends(get_booking_service),
) -> ReconcileRead:
    async with booking_transaction(session):
        day = parse_date(date)
        discrepancies = await reconcile_ledger(
            service.ledger,
            service.reservations,
            day=day,
            repair=repair,
        )

    if repair:
        for item in discrepancies:
            _audit(
                action="ledger.repaired",
                initiator="admin",
                reservation_id=None,
                day=day,
                slot=item.slot,
                party_size=None,
                extra={"ledger_total": item.ledger_total, "record_total": item.record_total},
            )
    return ReconcileRead(
        date=day,
        repaired=repair,
        discrepancies=[LedgerDiscrepancyRead.from_domain(item) for item in discrepancies],
    )
