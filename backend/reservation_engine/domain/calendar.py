from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date

from ..config import BookingConfig
from .errors import InvalidDateError, InvalidTimeFormatError

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def format_minutes(total_minutes: int) -> str:
    return f"{total_minutes // 60:02d}:{total_minutes % 60:02d}"


def parse_date(value: str | date) -> date:
    """Parse a ``YYYY-MM-DD`` venue-local calendar day."""
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not DATE_PATTERN.match(value):
        raise InvalidDateError(f"invalid date {value!r}, expected YYYY-MM-DD")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise InvalidDateError(f"invalid date {value!r}: {exc}") from exc


@dataclass(frozen=True)
class SlotCalendar:
    """Derives bookable slot labels from the booking configuration.

    Slots are plain ``HH:MM`` wall-clock labels for a venue-local date, so no
    server timezone is involved in either generation or normalization.
    """

    config: BookingConfig

    def generate_slots(self, day: date) -> tuple[str, ...]:
        if self.config.is_blackout(day):
            return ()
        step = self.config.slot_minutes
        close = self.config.close_hour * 60
        labels = []
        start = self.config.open_hour * 60
        # a slot is only offered if it can run a full interval before closing
        while start + step <= close:
            labels.append(format_minutes(start))
            start += step
        return tuple(labels)

    def normalize_to_slot(self, value: str) -> str:
        """Round a ``HH:MM`` time down to the start of its containing slot.

        Operating hours are not checked here; see ``is_offered``.
        """
        match = TIME_PATTERN.match(value) if isinstance(value, str) else None
        if match is None:
            raise InvalidTimeFormatError(f"invalid time {value!r}, expected HH:MM (24h)")
        total = int(match.group(1)) * 60 + int(match.group(2))
        step = self.config.slot_minutes
        return format_minutes((total // step) * step)

    def is_offered(self, day: date, slot: str) -> bool:
        return slot in self.generate_slots(day)
