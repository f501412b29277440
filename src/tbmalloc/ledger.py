from __future__ import annotations

from decimal import Decimal

from . import db
from .types import SpendRecord


class SpendLedger:
    """Read-only view of per-department spend feeding stage one."""

    def __init__(self, conn: db.Connection) -> None:
        self.conn = conn

    def get_spend(self, organization: str, period: str) -> list[SpendRecord]:
        return db.list_spend(self.conn, organization, period)

    def total(self, organization: str, period: str) -> Decimal:
        return sum((r.amount for r in self.get_spend(organization, period)), Decimal("0"))
