import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.errors import BookingError, StorageFailureError

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "InvalidInput": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "DateNotBookable": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "SlotNotOffered": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "CapacityExceeded": status.HTTP_409_CONFLICT,
    "CapacityCheckTimeout": status.HTTP_503_SERVICE_UNAVAILABLE,
    "AlreadyCancelled": status.HTTP_409_CONFLICT,
    "NotFound": status.HTTP_404_NOT_FOUND,
    "StorageFailure": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def to_http_exception(exc: BookingError) -> HTTPException:
    """Map an error kind to its transport status; detail keeps kind/code/message."""
    status_code = STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    headers = {"Retry-After": "1"} if exc.kind == "CapacityCheckTimeout" else None
    return HTTPException(status_code=status_code, detail=exc.to_dict(), headers=headers)


@asynccontextmanager
async def translate_errors() -> AsyncIterator[None]:
    try:
        yield
    except BookingError as exc:
        if exc.kind == "InternalError":
            logger.error("internal booking error: %s", exc.message)
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        logger.exception("storage error")
        raise to_http_exception(StorageFailureError("storage unavailable")) from exc


@asynccontextmanager
async def booking_transaction(session: AsyncSession) -> AsyncIterator[None]:
    """Run the block in one transaction; roll back on any error and translate it."""
    async with translate_errors():
        async with session.begin():
            yield
