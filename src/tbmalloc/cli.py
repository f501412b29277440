from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import db
from .config import PipelineConfig, default_pipeline_config
from .errors import AllocationError
from .io import load_input_dir, normalize_organization, normalize_period
from .pipeline import AllocationPipeline, reconciliation_status, run_all_organizations
from .roi import BenefitAssumptions, build_roi_snapshot
from .synth import SynthSpec, generate_synthetic_dataset
from .types import RuleSet, RunSummary
from .weights import find_violations

app = typer.Typer(add_completion=False, help="Cost allocation pipeline: spend -> towers -> solutions -> business units.")
console = Console()

DbUrl = typer.Option(None, "--db-url", help="Database URL (default: DATABASE_URL env, sqlite:///path for SQLite).")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging.")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _config(path: Optional[Path]) -> PipelineConfig:
    return PipelineConfig.from_yaml(path) if path else default_pipeline_config()


def _print_summary(summary: RunSummary) -> None:
    rec = summary.reconciliation or {}
    table = Table(title=f"{summary.organization} {summary.period} ({summary.status.value})")
    table.add_column("Stage")
    table.add_column("Total", justify="right")
    for label, key in [
        ("Cost pool", "costPoolTotal"),
        ("Tower", "towerTotal"),
        ("Solution", "solutionTotal"),
        ("Business", "businessTotal"),
    ]:
        table.add_row(label, rec.get(key, "-"))
    console.print(table)
    if summary.skipped:
        console.print("[dim]Inputs unchanged since last run; nothing recomputed (use --force).[/dim]")
    if rec and not rec.get("withinTolerance", True):
        console.print("[yellow]Reconciliation breach: stage totals diverge beyond tolerance.[/yellow]")
    for warning in summary.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning['message']}")


@app.command()
def synth(
    out: Path = typer.Option(..., help="Output directory for synthetic CSVs."),
    start: str = typer.Option("2025-01", help="Start period (YYYY-MM)."),
    months: int = typer.Option(3, min=1, help="Number of months."),
    seed: int = typer.Option(42, help="RNG seed."),
):
    generate_synthetic_dataset(out, SynthSpec(start=start, months=months, seed=seed))
    console.print(f"Wrote synthetic dataset to {out}")


@app.command(name="init-db")
def init_db_cmd(db_url: Optional[str] = DbUrl):
    """Create tables if they don't exist."""
    db.init_db(db_url)
    console.print("Database initialized")


@app.command(name="import-csv")
def import_csv(
    input: Path = typer.Option(..., exists=True, file_okay=False, help="Directory with spend/rule/solution CSVs."),
    organization: str = typer.Option(..., help="Organization the rows belong to."),
    db_url: Optional[str] = DbUrl,
):
    """Load spend, allocation rules and the solution catalog from CSV."""
    data = load_input_dir(input, normalize_organization(organization))
    conn = db.get_connection(db_url)
    try:
        n_spend = db.upsert_spend(conn, data["spend"])
        n_rules = db.upsert_rules(conn, data["department_tower"] + data["tower_solution"])
        n_solutions = db.upsert_solutions(conn, data["solutions"])
    finally:
        conn.close()
    console.print(f"Imported {n_spend} spend rows, {n_rules} rules, {n_solutions} solutions for {organization}")


@app.command()
def validate(
    organization: str = typer.Option(...),
    period: str = typer.Option(..., help="YYYY-MM"),
    config: Optional[Path] = typer.Option(None, help="Pipeline config YAML."),
    db_url: Optional[str] = DbUrl,
):
    """Check that every source's weights sum to 1 without running the pipeline."""
    cfg = _config(config)
    conn = db.get_connection(db_url)
    try:
        problems = []
        for rule_set in RuleSet:
            rules = db.list_rules(conn, normalize_organization(organization), normalize_period(period), rule_set)
            problems.extend(find_violations(rules, cfg.weight_tolerance))
    finally:
        conn.close()
    if not problems:
        console.print("[green]All weights sum to 1 within tolerance.[/green]")
        return
    for problem in problems:
        console.print(f"[red]{problem}[/red]")
    raise typer.Exit(code=1)


@app.command()
def run(
    organization: str = typer.Option(...),
    period: str = typer.Option(..., help="YYYY-MM"),
    force: bool = typer.Option(False, help="Recompute even if inputs are unchanged."),
    config: Optional[Path] = typer.Option(None, help="Pipeline config YAML."),
    db_url: Optional[str] = DbUrl,
):
    """Run the allocation pipeline for one organization and period."""
    conn = db.get_connection(db_url)
    try:
        summary = AllocationPipeline(conn, _config(config)).run(organization, period, force=force)
    except AllocationError as exc:
        console.print(f"[red]Run failed:[/red] {exc}")
        raise typer.Exit(code=1)
    finally:
        conn.close()
    _print_summary(summary)


@app.command(name="run-all")
def run_all(
    period: str = typer.Option(..., help="YYYY-MM"),
    force: bool = typer.Option(False, help="Recompute even if inputs are unchanged."),
    workers: Optional[int] = typer.Option(None, min=1, help="Parallel organizations."),
    config: Optional[Path] = typer.Option(None, help="Pipeline config YAML."),
    db_url: Optional[str] = DbUrl,
):
    """Run every organization with spend in the period."""
    results = run_all_organizations(
        lambda: db.get_connection(db_url), period, force=force, config=_config(config), max_workers=workers
    )
    failed = 0
    for organization, result in results.items():
        if isinstance(result, Exception):
            failed += 1
            console.print(f"[red]{organization}: {result}[/red]")
        else:
            _print_summary(result)
    if failed:
        raise typer.Exit(code=1)


@app.command()
def status(
    organization: str = typer.Option(...),
    period: str = typer.Option(..., help="YYYY-MM"),
    db_url: Optional[str] = DbUrl,
):
    """Print the latest run summary and reconciliation for the period."""
    conn = db.get_connection(db_url)
    try:
        out = reconciliation_status(conn, organization, period)
    finally:
        conn.close()
    if out is None:
        console.print(f"No allocation run recorded for {organization} {period}")
        raise typer.Exit(code=1)
    console.print_json(json.dumps(out))


@app.command()
def roi(
    organization: str = typer.Option(...),
    period: str = typer.Option(..., help="YYYY-MM"),
    revenue_uplift: float = typer.Option(0.0, min=0),
    productivity_gain_hours: float = typer.Option(0.0, min=0),
    avg_loaded_rate: float = typer.Option(0.0, min=0),
    risk_avoided_value: float = typer.Option(0.0, min=0),
    cost_avoided: float = typer.Option(0.0, min=0),
    db_url: Optional[str] = DbUrl,
):
    """Compute and store the ROI snapshot from the period's business costs."""
    assumptions = BenefitAssumptions.from_mapping(
        {
            "revenue_uplift": revenue_uplift,
            "productivity_gain_hours": productivity_gain_hours,
            "avg_loaded_rate": avg_loaded_rate,
            "risk_avoided_value": risk_avoided_value,
            "cost_avoided": cost_avoided,
        }
    )
    conn = db.get_connection(db_url)
    try:
        snapshot = build_roi_snapshot(conn, organization, period, assumptions)
    except (AllocationError, ValueError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    finally:
        conn.close()
    console.print(
        f"Cost {snapshot['total_cost']}  Benefit {snapshot['total_benefit']}  ROI {snapshot['roi_pct']:.2%}"
    )


def _find_available_port(host: str, preferred: int) -> int:
    """Return *preferred* if free, otherwise try fallbacks then let the OS pick."""
    import socket

    candidates = [preferred] + [p for p in (8000, 8001, 8080, 8888) if p != preferred]
    for port in candidates:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((host, port))
                return port
            except OSError:
                continue
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Host to bind (use 0.0.0.0 for LAN)."),
    port: int = typer.Option(8000, help="Port to serve the API on."),
):
    """Start the allocation API server."""
    try:
        import uvicorn
    except Exception as e:  # pragma: no cover
        raise typer.BadParameter('Missing server deps. Install with: pip install -e ".[server]"') from e

    actual_port = _find_available_port(host, port)
    if actual_port != port:
        console.print(f"Port {port} is in use, using port {actual_port} instead.")
    uvicorn.run("tbmalloc.server:app", host=host, port=actual_port, reload=False)


if __name__ == "__main__":
    app()
