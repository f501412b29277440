"""Error taxonomy for allocation runs.

Fatal conditions are exceptions; advisory conditions (dropped value,
reconciliation breaches) are plain records carried on the run summary.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any


class AllocationError(Exception):
    """Base class for errors that abort a pipeline run."""

    run_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": type(self).__name__, "message": str(self)}


class WeightSumError(AllocationError):
    def __init__(
        self,
        source_key: str,
        total: Decimal,
        rule_set: str = "",
        violations: list["WeightSumError"] | None = None,
    ) -> None:
        self.source_key = source_key
        self.total = total
        self.rule_set = rule_set
        self.violations = violations if violations is not None else [self]
        super().__init__(f"Weights for {rule_set or 'rules'} source '{source_key}' sum to {total}, expected 1")

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "WeightSumError",
            "message": str(self),
            "source_key": self.source_key,
            "sum": str(self.total),
            "rule_set": self.rule_set,
            "violations": [
                {"source_key": v.source_key, "sum": str(v.total), "rule_set": v.rule_set} for v in self.violations
            ],
        }


class PersistenceError(AllocationError):
    def __init__(self, stage: str, reason: str) -> None:
        self.stage = stage
        self.reason = reason
        super().__init__(f"Failed to write {stage} stage: {reason}")

    def to_dict(self) -> dict[str, Any]:
        return {"type": "PersistenceError", "message": str(self), "stage": self.stage}


class RunCancelled(AllocationError):
    pass


class StaleMaterializationError(AllocationError):
    pass


@dataclass(frozen=True)
class MissingRuleWarning:
    stage: str
    source_key: str
    amount: Decimal

    def __str__(self) -> str:
        return f"{self.source_key} has {self.amount} with no {self.stage} allocation rule; value left unallocated"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "MissingRuleWarning",
            "stage": self.stage,
            "source_key": self.source_key,
            "amount": str(self.amount),
            "message": str(self),
        }


@dataclass(frozen=True)
class ReconciliationBreach:
    upstream: str
    downstream: str
    upstream_total: Decimal
    downstream_total: Decimal
    divergence: Decimal  # fraction of the larger total

    def __str__(self) -> str:
        return (
            f"{self.upstream} total {self.upstream_total} vs {self.downstream} total "
            f"{self.downstream_total} diverges by {self.divergence:.4%}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "ReconciliationBreach",
            "upstream": self.upstream,
            "downstream": self.downstream,
            "upstream_total": str(self.upstream_total),
            "downstream_total": str(self.downstream_total),
            "divergence": str(self.divergence),
            "message": str(self),
        }
