from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Any

import pandas as pd

from .types import AllocationRule, RuleSet, Solution, SpendRecord

SPEND_FILE = "Spend_Records.csv"
DEPARTMENT_TOWER_FILE = "Department_Tower_Rules.csv"
TOWER_SOLUTION_FILE = "Tower_Solution_Rules.csv"
SOLUTIONS_FILE = "Solutions.csv"


def normalize_period(value: Any) -> str:
    """Normalize 'YYYY-MM', 'YYYY-MM-DD', dates and Periods to 'YYYY-MM-01'."""
    if isinstance(value, pd.Period):
        period = value.asfreq("M")
    elif isinstance(value, date):
        period = pd.Period(year=value.year, month=value.month, freq="M")
    else:
        text = str(value or "").strip()
        if not text:
            raise ValueError("Period is required")
        try:
            period = pd.Timestamp(text).to_period("M")
        except (ValueError, TypeError) as exc:
            raise ValueError(f"Invalid period '{value}'; use YYYY-MM or YYYY-MM-DD") from exc
    return period.start_time.date().isoformat()


def normalize_organization(value: Any) -> str:
    organization = str(value or "").strip()
    if not organization:
        raise ValueError("Organization is required")
    return organization


def _read_csv(path: Path) -> pd.DataFrame:
    if not path.exists():
        raise FileNotFoundError(f"Missing required input: {path}")
    # Keys stay strings; amounts are parsed to Decimal from their text form
    return pd.read_csv(path, dtype=str, keep_default_na=False)


def _require(df: pd.DataFrame, name: str, columns: list[str]) -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"{name} missing required column(s): {', '.join(missing)}")


def load_spend(path: str | Path, organization: str) -> list[SpendRecord]:
    df = _read_csv(Path(path))
    _require(df, SPEND_FILE, ["Period", "Department", "Amount"])
    return [
        SpendRecord(organization, normalize_period(row.Period), row.Department.strip(), row.Amount)
        for row in df.itertuples(index=False)
    ]


def load_rules(path: str | Path, organization: str, rule_set: RuleSet) -> list[AllocationRule]:
    df = _read_csv(Path(path))
    _require(df, Path(path).name, ["Period", "Source", "Target", "Percent"])
    return [
        AllocationRule(
            organization,
            normalize_period(row.Period),
            rule_set,
            row.Source.strip(),
            row.Target.strip(),
            row.Percent,
        )
        for row in df.itertuples(index=False)
    ]


def load_solutions(path: str | Path, organization: str) -> list[Solution]:
    df = _read_csv(Path(path))
    _require(df, SOLUTIONS_FILE, ["Solution", "BusinessTag"])
    if "Name" not in df.columns:
        df["Name"] = df["Solution"]
    return [
        Solution(organization, row.Solution.strip(), row.Name or row.Solution, row.BusinessTag.strip())
        for row in df.itertuples(index=False)
    ]


def load_input_dir(input_dir: str | Path, organization: str) -> dict[str, list[Any]]:
    input_dir = Path(input_dir)
    return {
        "spend": load_spend(input_dir / SPEND_FILE, organization),
        "department_tower": load_rules(input_dir / DEPARTMENT_TOWER_FILE, organization, RuleSet.DEPARTMENT_TOWER),
        "tower_solution": load_rules(input_dir / TOWER_SOLUTION_FILE, organization, RuleSet.TOWER_SOLUTION),
        "solutions": load_solutions(input_dir / SOLUTIONS_FILE, organization),
    }
