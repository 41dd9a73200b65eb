from __future__ import annotations


class BookingError(Exception):
    """Base for every error the booking engine reports to its callers.

    ``kind`` is the coarse category callers branch on; ``code`` names the
    specific reason inside that category.
    """

    kind = "InternalError"
    code = "InternalError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "code": self.code, "message": self.message}


class InvalidInputError(BookingError):
    kind = "InvalidInput"
    code = "InvalidInput"


class MissingFieldError(InvalidInputError):
    code = "MissingField"


class InvalidDateError(InvalidInputError):
    code = "InvalidDate"


class InvalidTimeFormatError(InvalidInputError):
    code = "InvalidTimeFormat"


class InvalidPartySizeError(InvalidInputError):
    code = "InvalidPartySize"


class DateNotBookableError(BookingError):
    kind = "DateNotBookable"
    code = "DateNotBookable"


class SlotNotOfferedError(BookingError):
    kind = "SlotNotOffered"
    code = "SlotNotOffered"


class CapacityExceededError(BookingError):
    kind = "CapacityExceeded"
    code = "CapacityExceeded"


class CapacityCheckTimeoutError(BookingError):
    kind = "CapacityCheckTimeout"
    code = "CapacityCheckTimeout"


class AlreadyCancelledError(BookingError):
    kind = "AlreadyCancelled"
    code = "AlreadyCancelled"


class ReservationNotFoundError(BookingError):
    kind = "NotFound"
    code = "ReservationNotFound"


class StorageFailureError(BookingError):
    kind = "StorageFailure"
    code = "StorageFailure"


class LedgerInvariantError(BookingError):
    """Committed capacity would go negative: ledger and records have diverged."""

    kind = "InternalError"
    code = "LedgerInvariantViolation"
