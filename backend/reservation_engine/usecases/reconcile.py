import logging
from datetime import date

from ..domain.repositories import CapacityLedger, ReservationRepository
from ..domain.services import LedgerDiscrepancy, diff_totals

logger = logging.getLogger(__name__)


async def reconcile_ledger(
    ledger: CapacityLedger,
    res_repo: ReservationRepository,
    *,
    day: date,
    repair: bool = False,
) -> list[LedgerDiscrepancy]:
    """
    Recompute committed totals for ``day`` from confirmed reservations and
    report every slot where the ledger disagrees. With ``repair`` the ledger is
    overwritten with the recomputed totals. Safe to run repeatedly.
    """
    record_totals = await res_repo.sum_confirmed_by_slot(day)
    ledger_totals = await ledger.totals(day)
    discrepancies = diff_totals(ledger_totals, record_totals)
    for item in discrepancies:
        logger.warning(
            "ledger drift on %s %s: ledger=%d records=%d",
            day.isoformat(),
            item.slot,
            item.ledger_total,
            item.record_total,
        )
        if repair:
            await ledger.reset(day, item.slot, item.record_total)
    return discrepancies
