from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..deps import get_booking_service
from ..schemas import AvailabilityRead
from ..usecases.booking import BookingService
from ..utils.time import venue_today
from .errors import translate_errors

router = APIRouter(prefix="", tags=["availability"])


@router.get("/availability", response_model=AvailabilityRead)
async def get_availability(
    date: Optional[str] = Query(default=None, description="Venue-local day, YYYY-MM-DD (default: today)"),
    service: BookingService = Depends(get_booking_service),
) -> AvailabilityRead:
    async with translate_errors():
        availability = await service.get_availability(date or venue_today())
    return AvailabilityRead.from_domain(availability)
