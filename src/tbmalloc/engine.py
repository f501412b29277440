from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Iterable, Mapping

import pandas as pd

from .errors import MissingRuleWarning
from .types import STAGE_ORDER, AllocationRule, CostRow, Solution, SpendRecord, Stage

ZERO = Decimal("0")
ONE = Decimal("1")
_RULE_COLUMNS = ["source_key", "target_key", "percent"]


@dataclass(frozen=True)
class StageResult:
    stage: Stage
    amounts: dict[str, Decimal]  # target -> unrounded amount
    unallocated: dict[str, Decimal] = field(default_factory=dict)  # source -> value with no outbound rule

    @property
    def total(self) -> Decimal:
        return sum(self.amounts.values(), ZERO)

    @property
    def unallocated_total(self) -> Decimal:
        return sum(self.unallocated.values(), ZERO)

    def rows(self, organization: str, period: str, quantum: Decimal = Decimal("0.01")) -> list[CostRow]:
        return [
            CostRow(organization, period, self.stage, key, amount.quantize(quantum, rounding=ROUND_HALF_EVEN))
            for key, amount in sorted(self.amounts.items())
        ]


@dataclass(frozen=True)
class Allocation:
    tower: StageResult
    solution: StageResult
    business: StageResult

    @property
    def stages(self) -> dict[Stage, StageResult]:
        return {Stage.TOWER: self.tower, Stage.SOLUTION: self.solution, Stage.BUSINESS: self.business}

    @property
    def warnings(self) -> list[MissingRuleWarning]:
        return [
            MissingRuleWarning(stage.value, source, amount)
            for stage in STAGE_ORDER
            for source, amount in sorted(self.stages[stage].unallocated.items())
        ]

    def rows_by_stage(
        self, organization: str, period: str, quantum: Decimal = Decimal("0.01")
    ) -> dict[Stage, list[CostRow]]:
        return {stage: result.rows(organization, period, quantum) for stage, result in self.stages.items()}


def rules_frame(rules: Iterable[AllocationRule]) -> pd.DataFrame:
    return pd.DataFrame(
        [(r.source_key, r.target_key, r.percent) for r in rules], columns=_RULE_COLUMNS, dtype=object
    )


def _spread(values: Mapping[str, Decimal], rules: pd.DataFrame, stage: Stage) -> StageResult:
    """Push each source value to its targets in proportion to the rule percents.

    Sources without any rule keep their value out of the result and are
    reported in ``unallocated`` when non-zero.
    """
    sources = pd.DataFrame(
        {"source_key": list(values.keys()), "value": list(values.values())}, columns=["source_key", "value"], dtype=object
    )
    merged = sources.merge(rules, on="source_key", how="left", indicator="matched")

    amounts: dict[str, Decimal] = defaultdict(Decimal)
    unallocated: dict[str, Decimal] = {}
    for row in merged.itertuples(index=False):
        if row.matched == "left_only":
            if row.value != ZERO:
                unallocated[row.source_key] = row.value
            continue
        amounts[row.target_key] += row.value * row.percent
    return StageResult(stage, dict(amounts), unallocated)


def allocate_spend_to_towers(spend: Iterable[SpendRecord], rules: Iterable[AllocationRule]) -> StageResult:
    by_department: dict[str, Decimal] = defaultdict(Decimal)
    for record in spend:
        by_department[record.department] += record.amount
    return _spread(by_department, rules_frame(rules), Stage.TOWER)


def allocate_towers_to_solutions(
    tower_amounts: Mapping[str, Decimal], rules: Iterable[AllocationRule]
) -> StageResult:
    return _spread(tower_amounts, rules_frame(rules), Stage.SOLUTION)


def roll_up_solutions_to_business(
    solution_amounts: Mapping[str, Decimal], solutions: Iterable[Solution]
) -> StageResult:
    # Unweighted group-by: every solution maps wholly onto its business tag
    catalog = pd.DataFrame(
        [(s.solution_key, s.business_tag, ONE) for s in solutions], columns=_RULE_COLUMNS, dtype=object
    )
    return _spread(solution_amounts, catalog, Stage.BUSINESS)


def run_allocation(
    spend: Iterable[SpendRecord],
    department_tower_rules: Iterable[AllocationRule],
    tower_solution_rules: Iterable[AllocationRule],
    solutions: Iterable[Solution],
) -> Allocation:
    """Run the three stages in order; each consumes the previous stage's unrounded amounts."""
    tower = allocate_spend_to_towers(spend, department_tower_rules)
    solution = allocate_towers_to_solutions(tower.amounts, tower_solution_rules)
    business = roll_up_solutions_to_business(solution.amounts, solutions)
    return Allocation(tower=tower, solution=solution, business=business)
