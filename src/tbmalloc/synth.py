from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from pathlib import Path

import numpy as np
import pandas as pd

from .io import DEPARTMENT_TOWER_FILE, SOLUTIONS_FILE, SPEND_FILE, TOWER_SOLUTION_FILE

DEPARTMENTS = ["ENGINEERING", "SALES", "MARKETING", "FINANCE", "HR", "OPERATIONS", "OTHER"]
TOWERS = ["APP_DEV", "SERVICE_DESK", "DATA_CENTER", "NETWORK", "END_USER", "SECURITY", "CLOUD", "OTHER"]
SOLUTIONS = [
    ("CRM", "Customer Relationship Management", "SALES"),
    ("ERP", "Enterprise Resource Planning", "FINANCE"),
    ("DATA_PLATFORM", "Data Platform", "ENGINEERING"),
    ("COLLAB", "Collaboration Suite", "OPERATIONS"),
    ("HRIS", "HR Information System", "HR"),
    ("WEB", "Public Website", "MARKETING"),
]


@dataclass(frozen=True)
class SynthSpec:
    start: str  # YYYY-MM
    months: int
    seed: int
    targets_per_source: int = 3


def _weights(rng: np.random.Generator, n: int) -> list[Decimal]:
    """n four-decimal weights summing to exactly 1."""
    raw = rng.dirichlet(np.ones(n))
    weights = [Decimal(str(float(w))).quantize(Decimal("0.0001"), rounding=ROUND_DOWN) for w in raw[:-1]]
    weights.append(Decimal("1") - sum(weights, Decimal("0")))
    return weights


def _rules(rng: np.random.Generator, period: str, sources: list[str], targets: list[str], k: int) -> list[list[str]]:
    rows = []
    for source in sources:
        chosen = rng.choice(targets, size=min(k, len(targets)), replace=False)
        for target, weight in zip(sorted(chosen), _weights(rng, len(chosen))):
            rows.append([period, source, str(target), str(weight)])
    return rows


def generate_synthetic_dataset(out_dir: str | Path, spec: SynthSpec) -> Path:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    rng = np.random.default_rng(spec.seed)
    periods = [str(p) for p in pd.period_range(spec.start, periods=spec.months, freq="M")]

    spend_rows = []
    for period in periods:
        for department in DEPARTMENTS:
            amount = max(float(rng.normal(120_000, 40_000)), 5_000.0)
            spend_rows.append([period, department, f"{amount:.2f}"])
    pd.DataFrame(spend_rows, columns=["Period", "Department", "Amount"]).to_csv(out_dir / SPEND_FILE, index=False)

    solution_keys = [key for key, _, _ in SOLUTIONS]
    dept_tower, tower_solution = [], []
    for period in periods:
        dept_tower.extend(_rules(rng, period, DEPARTMENTS, TOWERS, spec.targets_per_source))
        tower_solution.extend(_rules(rng, period, TOWERS, solution_keys, spec.targets_per_source))
    columns = ["Period", "Source", "Target", "Percent"]
    pd.DataFrame(dept_tower, columns=columns).to_csv(out_dir / DEPARTMENT_TOWER_FILE, index=False)
    pd.DataFrame(tower_solution, columns=columns).to_csv(out_dir / TOWER_SOLUTION_FILE, index=False)

    pd.DataFrame(SOLUTIONS, columns=["Solution", "Name", "BusinessTag"]).to_csv(out_dir / SOLUTIONS_FILE, index=False)
    return out_dir
