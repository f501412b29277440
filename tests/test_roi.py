from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest

from tbmalloc import db
from tbmalloc.errors import StaleMaterializationError
from tbmalloc.roi import BenefitAssumptions, build_roi_snapshot, compute_benefit, compute_roi
from tbmalloc.store import MaterializationStore
from tbmalloc.types import CostRow, RunStatus, Stage

ORG = "ACME"
PERIOD = "2025-05-01"

ASSUMPTIONS = BenefitAssumptions(
    revenue_uplift=Decimal("100000"),
    productivity_gain_hours=Decimal("1000"),
    avg_loaded_rate=Decimal("40"),
)


@pytest.fixture()
def conn(tmp_path: Path):
    url = f"sqlite:///{tmp_path / 'roi.db'}"
    db.init_db(url)
    conn = db.get_connection(url)
    yield conn
    conn.close()


def _business_cost(conn, **amounts: str) -> None:
    rows = [CostRow(ORG, PERIOD, Stage.BUSINESS, key, Decimal(v)) for key, v in amounts.items()]
    MaterializationStore(conn).replace(ORG, PERIOD, Stage.BUSINESS, rows)


def test_unweighted_benefit_counts_every_category() -> None:
    total, breakdown = compute_benefit({}, ASSUMPTIONS)
    assert total == Decimal("140000")
    assert breakdown["PRODUCTIVITY"] == Decimal("40000")
    assert breakdown["OTHER"] == Decimal("0")


def test_weighted_benefit() -> None:
    total, _ = compute_benefit({"REVENUE_UPLIFT": Decimal("0.5"), "PRODUCTIVITY": Decimal("0.5")}, ASSUMPTIONS)
    assert total == Decimal("70000")


def test_weights_must_sum_to_one() -> None:
    with pytest.raises(ValueError):
        compute_benefit({"REVENUE_UPLIFT": Decimal("0.5")}, ASSUMPTIONS)


def test_unknown_category_is_rejected() -> None:
    with pytest.raises(ValueError):
        compute_benefit({"GOODWILL": Decimal("1")}, ASSUMPTIONS)


def test_compute_roi() -> None:
    assert compute_roi(Decimal("100000"), Decimal("140000")) == Decimal("0.4")
    assert compute_roi(Decimal("100000"), Decimal("70000")) == Decimal("-0.3")
    with pytest.raises(ValueError):
        compute_roi(Decimal("0"), Decimal("10"))


def test_negative_assumptions_are_rejected() -> None:
    with pytest.raises(ValueError):
        BenefitAssumptions(revenue_uplift=Decimal("-1"))


def test_assumptions_from_mapping_ignores_unknown_keys() -> None:
    parsed = BenefitAssumptions.from_mapping({"revenue_uplift": "10", "discount_rate": "0.08"})
    assert parsed.revenue_uplift == Decimal("10")
    assert parsed.cost_avoided == Decimal("0")


def test_snapshot_uses_business_costs(conn) -> None:
    _business_cost(conn, SALES="34000.00", ENGINEERING="66000.00")

    snapshot = build_roi_snapshot(conn, ORG, "2025-05", ASSUMPTIONS)
    assert snapshot["total_cost"] == Decimal("100000")
    assert snapshot["total_benefit"] == Decimal("140000")
    assert snapshot["roi_pct"] == Decimal("0.4")
    assert snapshot["assumptions"]["_derived"]["weighted"] is False


def test_snapshot_applies_stored_weights_and_upserts(conn) -> None:
    _business_cost(conn, SALES="100000.00")
    build_roi_snapshot(conn, ORG, PERIOD, ASSUMPTIONS)

    db.upsert_benefit_weight(conn, ORG, PERIOD, "REVENUE_UPLIFT", Decimal("0.5"))
    db.upsert_benefit_weight(conn, ORG, PERIOD, "PRODUCTIVITY", Decimal("0.5"))
    snapshot = build_roi_snapshot(conn, ORG, PERIOD, ASSUMPTIONS)

    assert snapshot["total_benefit"] == Decimal("70000")
    assert snapshot["roi_pct"] == Decimal("-0.3")
    assert snapshot["assumptions"]["_derived"]["net"] == "-30000.00"


def test_snapshot_without_costs_fails(conn) -> None:
    with pytest.raises(ValueError):
        build_roi_snapshot(conn, ORG, PERIOD, ASSUMPTIONS)


def test_snapshot_refuses_stale_costs(conn) -> None:
    _business_cost(conn, SALES="100000.00")
    run_id = db.create_run(conn, ORG, PERIOD, "fp")
    db.update_run(conn, run_id, RunStatus.FAILED, error={"type": "PersistenceError", "message": "boom"})
    with pytest.raises(StaleMaterializationError):
        build_roi_snapshot(conn, ORG, PERIOD, ASSUMPTIONS)
