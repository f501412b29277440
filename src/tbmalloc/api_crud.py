"""FastAPI APIRouter for entering spend, allocation rules, solutions and benefit weights."""

from __future__ import annotations

from dataclasses import asdict
from decimal import Decimal
from enum import Enum
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from . import db
from .io import normalize_organization, normalize_period
from .roi import BenefitCategory
from .types import AllocationRule, RuleSet, Solution, SpendRecord
from .weights import find_violations

router = APIRouter(prefix="/api")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _conn():
    return db.get_connection()


def _404(item: str):
    raise HTTPException(status_code=404, detail=f"{item} not found")


def _keys(organization: str, period: str | None = None) -> tuple[str, str | None]:
    """Normalize the identity fields once, at the boundary."""
    try:
        return normalize_organization(organization), normalize_period(period) if period is not None else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _record_dict(record: Any) -> dict[str, Any]:
    out = {}
    for key, value in asdict(record).items():
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, Enum):
            value = value.value
        out[key] = value
    return out


# ---------------------------------------------------------------------------
# Pydantic request models
# ---------------------------------------------------------------------------


class SpendIn(BaseModel):
    organization: str
    period: str
    department: str
    amount: Decimal = Field(ge=0)


class RuleIn(BaseModel):
    organization: str
    period: str
    rule_set: RuleSet
    source_key: str
    target_key: str
    percent: Decimal = Field(ge=0, le=1)


class SolutionIn(BaseModel):
    organization: str
    solution_key: str
    name: str = ""
    business_tag: str


class BenefitWeightIn(BaseModel):
    organization: str
    period: str
    category: BenefitCategory
    percent: Decimal = Field(ge=0, le=1)


# ---------------------------------------------------------------------------
# Spend
# ---------------------------------------------------------------------------


@router.put("/spend")
def upsert_spend(body: list[SpendIn]):
    records = []
    for item in body:
        organization, period = _keys(item.organization, item.period)
        records.append(SpendRecord(organization, period, item.department.strip(), item.amount))
    conn = _conn()
    try:
        return {"ok": True, "upserted": db.upsert_spend(conn, records)}
    finally:
        conn.close()


@router.get("/spend")
def list_spend(organization: str, period: str):
    organization, period = _keys(organization, period)
    conn = _conn()
    try:
        return [_record_dict(r) for r in db.list_spend(conn, organization, period)]
    finally:
        conn.close()


@router.delete("/spend")
def delete_spend(organization: str, period: str, department: str):
    organization, period = _keys(organization, period)
    conn = _conn()
    try:
        if not db.delete_spend(conn, organization, period, department):
            _404("Spend record")
        return {"ok": True}
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Allocation rules
# ---------------------------------------------------------------------------


@router.put("/rules")
def upsert_rules(body: list[RuleIn]):
    rules = []
    for item in body:
        organization, period = _keys(item.organization, item.period)
        rules.append(
            AllocationRule(
                organization, period, item.rule_set, item.source_key.strip(), item.target_key.strip(), item.percent
            )
        )
    conn = _conn()
    try:
        return {"ok": True, "upserted": db.upsert_rules(conn, rules)}
    finally:
        conn.close()


@router.get("/rules")
def list_rules(organization: str, period: str, rule_set: RuleSet):
    organization, period = _keys(organization, period)
    conn = _conn()
    try:
        return [_record_dict(r) for r in db.list_rules(conn, organization, period, rule_set)]
    finally:
        conn.close()


@router.delete("/rules")
def delete_rule(organization: str, period: str, rule_set: RuleSet, source_key: str, target_key: str):
    organization, period = _keys(organization, period)
    conn = _conn()
    try:
        if not db.delete_rule(conn, organization, period, rule_set, source_key, target_key):
            _404("Allocation rule")
        return {"ok": True}
    finally:
        conn.close()


@router.get("/rules/validate")
def validate_rules(organization: str, period: str):
    """Edit-time feedback; saving incomplete rule sets is always allowed."""
    organization, period = _keys(organization, period)
    conn = _conn()
    try:
        violations = []
        for rule_set in RuleSet:
            violations.extend(find_violations(db.list_rules(conn, organization, period, rule_set)))
    finally:
        conn.close()
    return {
        "ok": not violations,
        "violations": [{"rule_set": v.rule_set, "source_key": v.source_key, "sum": str(v.total)} for v in violations],
    }


# ---------------------------------------------------------------------------
# Solutions
# ---------------------------------------------------------------------------


@router.put("/solutions")
def upsert_solutions(body: list[SolutionIn]):
    solutions = []
    for item in body:
        organization, _ = _keys(item.organization)
        solutions.append(
            Solution(organization, item.solution_key.strip(), item.name or item.solution_key, item.business_tag.strip())
        )
    conn = _conn()
    try:
        return {"ok": True, "upserted": db.upsert_solutions(conn, solutions)}
    finally:
        conn.close()


@router.get("/solutions")
def list_solutions(organization: str):
    organization, _ = _keys(organization)
    conn = _conn()
    try:
        return [_record_dict(s) for s in db.list_solutions(conn, organization)]
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Benefit weights
# ---------------------------------------------------------------------------


@router.put("/benefit-weights")
def upsert_benefit_weights(body: list[BenefitWeightIn]):
    conn = _conn()
    try:
        for item in body:
            organization, period = _keys(item.organization, item.period)
            db.upsert_benefit_weight(conn, organization, period, item.category.value, item.percent)
        return {"ok": True, "upserted": len(body)}
    finally:
        conn.close()


@router.get("/benefit-weights")
def list_benefit_weights(organization: str, period: str):
    organization, period = _keys(organization, period)
    conn = _conn()
    try:
        return {k: str(v) for k, v in db.list_benefit_weights(conn, organization, period).items()}
    finally:
        conn.close()
