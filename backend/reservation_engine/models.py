from __future__ import annotations

from datetime import date, datetime
from enum import StrEnum
from typing import Any, Optional

from sqlalchemy import CheckConstraint, Enum, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates
from sqlalchemy.sql.sqltypes import BigInteger, Date, DateTime, Integer, String

from .domain.errors import AlreadyCancelledError

# SQLite only autoincrements INTEGER primary keys
PrimaryKey = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    pass


class ReservationStatus(StrEnum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("party_size >= 1", name="chk_res_party_size"),
        Index("idx_res_day_slot_status", "day", "slot", "status"),
        Index("idx_res_email", "email"),
    )

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    slot: Mapped[str] = mapped_column(String(5), nullable=False)
    party_size: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    status: Mapped[ReservationStatus] = mapped_column(
        Enum(
            ReservationStatus,
            values_callable=lambda enum_cls: [e.value for e in enum_cls],
            native_enum=False,
        ),
        nullable=False,
        default=ReservationStatus.CONFIRMED,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    @validates("day", "slot", "party_size")
    def _freeze_booking_terms(self, key: str, value: Any) -> Any:
        # moving or resizing a booking is cancel + rebook, never an in-place edit
        current = self.__dict__.get(key)
        if current is not None and current != value:
            raise ValueError(f"{key} is immutable once a reservation exists")
        return value

    @property
    def is_active(self) -> bool:
        return self.status == ReservationStatus.CONFIRMED

    def mark_cancelled(self, now: datetime) -> None:
        if self.status == ReservationStatus.CANCELLED:
            raise AlreadyCancelledError(f"reservation {self.id} is already cancelled")
        self.status = ReservationStatus.CANCELLED
        self.updated_at = now


class SlotLedger(Base):
    """Materialized committed party-size total for one (day, slot)."""

    __tablename__ = "slot_ledger"
    __table_args__ = (
        CheckConstraint("committed >= 0", name="chk_ledger_committed"),
        UniqueConstraint("day", "slot", name="uq_ledger_day_slot"),
    )

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True, autoincrement=True)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    slot: Mapped[str] = mapped_column(String(5), nullable=False)
    committed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
