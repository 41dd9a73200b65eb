from dataclasses import dataclass
from typing import Mapping

from ..config import BookingConfig
from .errors import InvalidPartySizeError, LedgerInvariantError


@dataclass(frozen=True)
class LedgerSnapshot:
    capacity: int
    committed: int

    @property
    def remaining(self) -> int:
        return max(self.capacity - self.committed, 0)


@dataclass(frozen=True)
class LedgerDiscrepancy:
    slot: str
    ledger_total: int
    record_total: int

    @property
    def drift(self) -> int:
        return self.ledger_total - self.record_total


def validate_party_size(config: BookingConfig, party_size: int) -> None:
    if isinstance(party_size, bool) or not isinstance(party_size, int):
        raise InvalidPartySizeError("party_size must be an integer")
    if not config.min_party_size <= party_size <= config.max_party_size:
        raise InvalidPartySizeError(
            f"party_size must be between {config.min_party_size} and {config.max_party_size}"
        )


def admitted_total(snapshot: LedgerSnapshot, *, party_size: int) -> int | None:
    """
    Pure admission rule: the slot may hold at most ``capacity`` guests in total.
    Returns the new committed total if the party fits, otherwise None.
    """
    if party_size <= 0:
        raise InvalidPartySizeError("party_size must be positive")
    new_total = snapshot.committed + party_size
    if new_total > snapshot.capacity:
        return None
    return new_total


def released_total(snapshot: LedgerSnapshot, *, party_size: int) -> int:
    new_total = snapshot.committed - party_size
    if party_size <= 0 or new_total < 0:
        raise LedgerInvariantError(
            f"cannot release {party_size} from committed total {snapshot.committed}"
        )
    return new_total


def diff_totals(
    ledger_totals: Mapping[str, int],
    record_totals: Mapping[str, int],
) -> list[LedgerDiscrepancy]:
    """Compare materialized ledger totals against confirmed-record sums, per slot."""
    discrepancies = []
    for slot in sorted(set(ledger_totals) | set(record_totals)):
        ledger_total = int(ledger_totals.get(slot, 0))
        record_total = int(record_totals.get(slot, 0))
        if ledger_total != record_total:
            discrepancies.append(
                LedgerDiscrepancy(slot=slot, ledger_total=ledger_total, record_total=record_total)
            )
    return discrepancies
