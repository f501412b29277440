"""Return-on-investment metrics over allocated business cost.

Benefit assumptions expand into per-category base values, optionally
weighted by the period's benefit weights; ROI compares the weighted benefit
with the period's total business cost.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_EVEN, Decimal
from enum import Enum
from typing import Any, Mapping

from . import db
from .io import normalize_organization, normalize_period
from .pipeline import authoritative_costs
from .types import Stage, to_decimal
from .weights import DEFAULT_TOLERANCE, ONE

ZERO = Decimal("0")


class BenefitCategory(str, Enum):
    REVENUE_UPLIFT = "REVENUE_UPLIFT"
    PRODUCTIVITY = "PRODUCTIVITY"
    RISK_AVOIDANCE = "RISK_AVOIDANCE"
    COST_AVOIDANCE = "COST_AVOIDANCE"
    OTHER = "OTHER"


@dataclass(frozen=True)
class BenefitAssumptions:
    revenue_uplift: Decimal = ZERO
    productivity_gain_hours: Decimal = ZERO
    avg_loaded_rate: Decimal = ZERO
    risk_avoided_value: Decimal = ZERO
    cost_avoided: Decimal = ZERO

    def __post_init__(self) -> None:
        for name, value in asdict(self).items():
            value = to_decimal(value)
            if value < 0:
                raise ValueError(f"{name} must be non-negative, got {value}")
            object.__setattr__(self, name, value)

    @staticmethod
    def from_mapping(raw: Mapping[str, Any]) -> "BenefitAssumptions":
        known = BenefitAssumptions.__dataclass_fields__
        return BenefitAssumptions(**{k: to_decimal(v) for k, v in raw.items() if k in known})

    def base_values(self) -> dict[BenefitCategory, Decimal]:
        return {
            BenefitCategory.REVENUE_UPLIFT: self.revenue_uplift,
            BenefitCategory.PRODUCTIVITY: self.productivity_gain_hours * self.avg_loaded_rate,
            BenefitCategory.RISK_AVOIDANCE: self.risk_avoided_value,
            BenefitCategory.COST_AVOIDANCE: self.cost_avoided,
            BenefitCategory.OTHER: ZERO,
        }


def compute_benefit(
    weights: Mapping[str, Decimal],
    assumptions: BenefitAssumptions,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> tuple[Decimal, dict[str, Decimal]]:
    """Return (total benefit, base value per category).

    With no weights every base value counts in full.
    """
    base = assumptions.base_values()
    breakdown = {category.value: value for category, value in base.items()}
    if not weights:
        return sum(base.values(), ZERO), breakdown

    weights = {BenefitCategory(k): to_decimal(v) for k, v in weights.items()}
    total_weight = sum(weights.values(), ZERO)
    if abs(total_weight - ONE) > tolerance:
        raise ValueError(f"Benefit weights must sum to 1, got {total_weight}")
    return sum((base[c] * w for c, w in weights.items()), ZERO), breakdown


def compute_roi(cost: Decimal, benefit: Decimal) -> Decimal:
    cost = to_decimal(cost)
    if cost <= 0:
        raise ValueError("Cost must be > 0")
    return (to_decimal(benefit) - cost) / cost


def build_roi_snapshot(
    conn: db.Connection,
    organization: str,
    period: Any,
    assumptions: BenefitAssumptions,
) -> dict[str, Any]:
    """Compute ROI for the period from its business costs and store the snapshot."""
    organization = normalize_organization(organization)
    period = normalize_period(period)
    cost = sum((r.amount for r in authoritative_costs(conn, organization, period, Stage.BUSINESS)), ZERO)
    weights = db.list_benefit_weights(conn, organization, period)
    benefit, breakdown = compute_benefit(weights, assumptions)
    roi_pct = compute_roi(cost, benefit).quantize(Decimal("0.000001"), rounding=ROUND_HALF_EVEN)
    benefit = benefit.quantize(Decimal("0.01"), rounding=ROUND_HALF_EVEN)

    stored = {k: str(v) for k, v in asdict(assumptions).items()}
    stored["_derived"] = {
        "net": str(benefit - cost),
        "breakdown": {k: str(v) for k, v in breakdown.items()},
        "weighted": bool(weights),
    }
    db.upsert_roi_snapshot(conn, organization, period, cost, benefit, roi_pct, stored)
    return db.get_roi_snapshot(conn, organization, period)
