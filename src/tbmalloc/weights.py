"""Allocation weights: loading rule sets and the sum-to-one precondition.

Rules may be saved in any state while being edited; the sum check only runs
when a rule set is about to be used by the engine.
"""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from typing import Iterable

from . import db
from .errors import WeightSumError
from .types import AllocationRule, RuleSet

DEFAULT_TOLERANCE = Decimal("0.0001")
ONE = Decimal("1")


def sum_by_source(rules: Iterable[AllocationRule]) -> dict[str, Decimal]:
    totals: dict[str, Decimal] = defaultdict(Decimal)
    for rule in rules:
        totals[rule.source_key] += rule.percent
    return dict(totals)


def find_violations(
    rules: Iterable[AllocationRule], tolerance: Decimal = DEFAULT_TOLERANCE
) -> list[WeightSumError]:
    rules = list(rules)
    rule_set = rules[0].rule_set.value if rules else ""
    return [
        WeightSumError(source, total, rule_set)
        for source, total in sorted(sum_by_source(rules).items())
        if abs(total - ONE) > tolerance
    ]


def validate(rules: Iterable[AllocationRule], tolerance: Decimal = DEFAULT_TOLERANCE) -> None:
    """Raise WeightSumError if any source's percentages miss 1.0 by more than *tolerance*.

    A source covering only some of the available targets passes as long as
    its percentages still sum to one.
    """
    violations = find_violations(rules, tolerance)
    if violations:
        first = violations[0]
        raise WeightSumError(first.source_key, first.total, first.rule_set, violations=violations)


class WeightStore:
    def __init__(self, conn: db.Connection, tolerance: Decimal = DEFAULT_TOLERANCE) -> None:
        self.conn = conn
        self.tolerance = tolerance

    def get_rules(self, organization: str, period: str, rule_set: RuleSet) -> list[AllocationRule]:
        return db.list_rules(self.conn, organization, period, rule_set)

    def validate(self, rules: Iterable[AllocationRule]) -> None:
        validate(rules, self.tolerance)

    def get_validated_rules(self, organization: str, period: str, rule_set: RuleSet) -> list[AllocationRule]:
        rules = self.get_rules(organization, period, rule_set)
        self.validate(rules)
        return rules
