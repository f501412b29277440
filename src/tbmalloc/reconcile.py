from __future__ import annotations

from decimal import Decimal

from . import db
from .errors import ReconciliationBreach
from .ledger import SpendLedger
from .store import MaterializationStore
from .types import ReconciliationReport, Stage

ZERO = Decimal("0")
DEFAULT_TOLERANCE = Decimal("0.005")


def divergence(a: Decimal, b: Decimal) -> Decimal:
    """Absolute difference as a fraction of the larger total."""
    larger = max(abs(a), abs(b))
    if larger == ZERO:
        return ZERO
    return abs(a - b) / larger


def compare_totals(
    totals: list[tuple[str, Decimal]], tolerance: Decimal = DEFAULT_TOLERANCE
) -> list[ReconciliationBreach]:
    breaches = []
    for (up_name, up_total), (down_name, down_total) in zip(totals, totals[1:]):
        diverged = divergence(up_total, down_total)
        if diverged > tolerance:
            breaches.append(ReconciliationBreach(up_name, down_name, up_total, down_total, diverged))
    return breaches


class ReconciliationChecker:
    """Read-only conservation check over a period's materialized stages."""

    def __init__(self, conn: db.Connection, tolerance: Decimal = DEFAULT_TOLERANCE) -> None:
        self.ledger = SpendLedger(conn)
        self.store = MaterializationStore(conn)
        self.tolerance = tolerance

    def _stage_total(self, organization: str, period: str, stage: Stage) -> Decimal:
        return sum((r.amount for r in self.store.read(organization, period, stage)), ZERO)

    def check(
        self, organization: str, period: str, cost_pool_total: Decimal | None = None
    ) -> ReconciliationReport:
        """Compare adjacent stage totals.

        *cost_pool_total* pins the spend side to what a run actually allocated;
        without it the ledger is read.
        """
        if cost_pool_total is None:
            cost_pool_total = self.ledger.total(organization, period)
        totals = [
            ("cost_pool", cost_pool_total),
            ("tower", self._stage_total(organization, period, Stage.TOWER)),
            ("solution", self._stage_total(organization, period, Stage.SOLUTION)),
            ("business", self._stage_total(organization, period, Stage.BUSINESS)),
        ]
        breaches = compare_totals(totals, self.tolerance)
        return ReconciliationReport(
            cost_pool_total=totals[0][1],
            tower_total=totals[1][1],
            solution_total=totals[2][1],
            business_total=totals[3][1],
            within_tolerance=not breaches,
            tolerance=self.tolerance,
            breaches=breaches,
        )
