from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any


def to_decimal(value: Any) -> Decimal:
    """Coerce DB/CSV/JSON values to Decimal without binary float artefacts."""
    if isinstance(value, Decimal):
        return value
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))


class Stage(str, Enum):
    TOWER = "tower"
    SOLUTION = "solution"
    BUSINESS = "business"

    @property
    def table(self) -> str:
        return f"{self.value}_costs"


STAGE_ORDER: tuple[Stage, ...] = (Stage.TOWER, Stage.SOLUTION, Stage.BUSINESS)


class RuleSet(str, Enum):
    DEPARTMENT_TOWER = "department_tower"
    TOWER_SOLUTION = "tower_solution"


class RunStatus(str, Enum):
    PENDING = "PENDING"
    VALIDATING = "VALIDATING"
    ALLOCATING = "ALLOCATING"
    MATERIALIZED = "MATERIALIZED"
    RECONCILED = "RECONCILED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class SpendRecord:
    organization: str
    period: str  # YYYY-MM-01
    department: str
    amount: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", to_decimal(self.amount))
        if self.amount < 0:
            raise ValueError(f"Spend for {self.department} must be non-negative, got {self.amount}")


@dataclass(frozen=True)
class AllocationRule:
    organization: str
    period: str
    rule_set: RuleSet
    source_key: str
    target_key: str
    percent: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "rule_set", RuleSet(self.rule_set))
        object.__setattr__(self, "percent", to_decimal(self.percent))
        if not Decimal("0") <= self.percent <= Decimal("1"):
            raise ValueError(
                f"Percent for {self.source_key}->{self.target_key} must be within 0..1, got {self.percent}"
            )


@dataclass(frozen=True)
class Solution:
    organization: str
    solution_key: str
    name: str
    business_tag: str


@dataclass(frozen=True)
class CostRow:
    """One materialized row of a stage output."""

    organization: str
    period: str
    stage: Stage
    target_key: str
    amount: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "organization": self.organization,
            "period": self.period,
            "stage": self.stage.value,
            "target_key": self.target_key,
            "amount": str(self.amount),
        }


@dataclass(frozen=True)
class ReconciliationReport:
    cost_pool_total: Decimal
    tower_total: Decimal
    solution_total: Decimal
    business_total: Decimal
    within_tolerance: bool
    tolerance: Decimal
    breaches: list[Any] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "costPoolTotal": str(self.cost_pool_total),
            "towerTotal": str(self.tower_total),
            "solutionTotal": str(self.solution_total),
            "businessTotal": str(self.business_total),
            "withinTolerance": self.within_tolerance,
            "tolerance": str(self.tolerance),
        }


@dataclass(frozen=True)
class RunSummary:
    run_id: int | None
    organization: str
    period: str
    status: RunStatus
    stages_written: list[Stage]
    reconciliation: dict[str, Any] | None
    warnings: list[dict[str, Any]] = field(default_factory=list)
    unallocated: dict[str, dict[str, str]] = field(default_factory=dict)
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "organization": self.organization,
            "period": self.period,
            "status": self.status.value,
            "stagesWritten": [s.value for s in self.stages_written],
            "reconciliation": self.reconciliation,
            "warnings": self.warnings,
            "unallocated": self.unallocated,
            "skipped": self.skipped,
        }
