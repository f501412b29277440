from __future__ import annotations

import hashlib
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from decimal import Decimal
from typing import Any, Callable

from . import db
from .config import PipelineConfig, default_pipeline_config
from .engine import run_allocation
from .errors import AllocationError, PersistenceError, RunCancelled, StaleMaterializationError
from .io import normalize_organization, normalize_period
from .ledger import SpendLedger
from .locks import PeriodLocks
from .reconcile import ReconciliationChecker
from .store import MaterializationStore
from .types import AllocationRule, CostRow, RuleSet, RunStatus, RunSummary, Solution, SpendRecord, Stage
from .weights import WeightStore

logger = logging.getLogger("tbmalloc.pipeline")


def _plain(value: Decimal) -> str:
    return format(value.normalize(), "f")


def input_fingerprint(
    spend: list[SpendRecord],
    department_tower_rules: list[AllocationRule],
    tower_solution_rules: list[AllocationRule],
    solutions: list[Solution],
    config: PipelineConfig,
) -> str:
    """Stable hash of everything a run reads; equal hashes give identical output."""
    payload = {
        "spend": sorted([r.department, _plain(r.amount)] for r in spend),
        "department_tower": sorted([r.source_key, r.target_key, _plain(r.percent)] for r in department_tower_rules),
        "tower_solution": sorted([r.source_key, r.target_key, _plain(r.percent)] for r in tower_solution_rules),
        "solutions": sorted([s.solution_key, s.business_tag] for s in solutions),
        "config": [str(config.weight_tolerance), str(config.reconciliation_tolerance), config.currency_places],
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


def summary_from_run(run: dict[str, Any], skipped: bool = False) -> RunSummary:
    return RunSummary(
        run_id=run["id"],
        organization=run["organization"],
        period=run["period"],
        status=RunStatus(run["status"]),
        stages_written=[Stage(s) for s in run["stages_written"]],
        reconciliation=run["reconciliation"],
        warnings=run["warnings"],
        unallocated=run["unallocated"],
        skipped=skipped,
    )


class AllocationPipeline:
    """Runs PENDING -> VALIDATING -> ALLOCATING -> MATERIALIZED -> RECONCILED for one period.

    Weight or persistence failures mark the run FAILED and re-raise; nothing
    is written in that case. Reconciliation breaches are advisory and only
    recorded on the summary.
    """

    def __init__(
        self,
        conn: db.Connection,
        config: PipelineConfig | None = None,
        locks: PeriodLocks | None = None,
    ) -> None:
        self.conn = conn
        self.config = config or default_pipeline_config()
        self.weights = WeightStore(conn, self.config.weight_tolerance)
        self.ledger = SpendLedger(conn)
        self.store = MaterializationStore(conn, locks)
        self.checker = ReconciliationChecker(conn, self.config.reconciliation_tolerance)

    def _transition(self, run_id: int, status: RunStatus, **fields: Any) -> None:
        db.update_run(self.conn, run_id, status, **fields)
        logger.debug("run=%s -> %s", run_id, status.value)

    def _fail(self, run_id: int, organization: str, period: str, exc: Exception) -> None:
        if isinstance(exc, AllocationError):
            exc.run_id = run_id
            error = exc.to_dict()
        else:
            error = {"type": type(exc).__name__, "message": str(exc)}
        self._transition(run_id, RunStatus.FAILED, error=error)
        logger.error("Allocation run %s failed for %s %s: %s", run_id, organization, period, exc)

    def run(
        self,
        organization: str,
        period: Any,
        force: bool = False,
        cancel: threading.Event | None = None,
    ) -> RunSummary:
        organization = normalize_organization(organization)
        period = normalize_period(period)

        spend = self.ledger.get_spend(organization, period)
        department_tower = self.weights.get_rules(organization, period, RuleSet.DEPARTMENT_TOWER)
        tower_solution = self.weights.get_rules(organization, period, RuleSet.TOWER_SOLUTION)
        solutions = db.list_solutions(self.conn, organization)
        fingerprint = input_fingerprint(spend, department_tower, tower_solution, solutions, self.config)

        if not force:
            previous = db.get_latest_run(self.conn, organization, period)
            if (
                previous is not None
                and previous["status"] == RunStatus.RECONCILED.value
                and previous["input_fingerprint"] == fingerprint
            ):
                logger.info("Inputs unchanged for %s %s; reusing run %s", organization, period, previous["id"])
                return summary_from_run(previous, skipped=True)

        run_id = db.create_run(self.conn, organization, period, fingerprint, forced=force)
        logger.info("Allocation run %s started for %s %s", run_id, organization, period)

        try:
            self._transition(run_id, RunStatus.VALIDATING)
            self.weights.validate(department_tower)
            self.weights.validate(tower_solution)

            if cancel is not None and cancel.is_set():
                raise RunCancelled(f"Run {run_id} cancelled before allocation")
            self._transition(run_id, RunStatus.ALLOCATING)
            allocation = run_allocation(spend, department_tower, tower_solution, solutions)
            rows: dict[Stage, list[CostRow]] = allocation.rows_by_stage(organization, period, self.config.quantum)
            if cancel is not None and cancel.is_set():
                raise RunCancelled(f"Run {run_id} cancelled before materialization")
            written = self.store.replace_all(organization, period, rows)
        except Exception as exc:
            self._fail(run_id, organization, period, exc)
            raise

        warnings = [w.to_dict() for w in allocation.warnings]
        for warning in allocation.warnings:
            logger.warning("run=%s %s", run_id, warning)
        unallocated = {
            stage.value: {key: str(amount) for key, amount in sorted(result.unallocated.items())}
            for stage, result in allocation.stages.items()
            if result.unallocated
        }
        stages_written = [s.value for s in written]
        # The cost pool total is the spend this run allocated, not a fresh ledger read
        cost_pool_total = sum((r.amount for r in spend), Decimal("0"))

        try:
            self._transition(
                run_id, RunStatus.MATERIALIZED, stages_written=stages_written, warnings=warnings, unallocated=unallocated
            )
            report = self.checker.check(organization, period, cost_pool_total=cost_pool_total)
            for breach in report.breaches:
                logger.warning("run=%s reconciliation breach: %s", run_id, breach)
            warnings.extend(b.to_dict() for b in report.breaches)
            self._transition(run_id, RunStatus.RECONCILED, reconciliation=report.to_dict(), warnings=warnings)
        except db.DB_ERRORS as exc:
            failure = PersistenceError("reconcile", str(exc))
            self._fail(run_id, organization, period, failure)
            raise failure from exc
        except Exception as exc:
            self._fail(run_id, organization, period, exc)
            raise
        logger.info(
            "Allocation run %s reconciled for %s %s within_tolerance=%s",
            run_id,
            organization,
            period,
            report.within_tolerance,
        )

        return RunSummary(
            run_id=run_id,
            organization=organization,
            period=period,
            status=RunStatus.RECONCILED,
            stages_written=written,
            reconciliation=report.to_dict(),
            warnings=warnings,
            unallocated=unallocated,
        )


def run_all_organizations(
    connect: Callable[[], db.Connection],
    period: Any,
    organizations: list[str] | None = None,
    force: bool = False,
    config: PipelineConfig | None = None,
    max_workers: int | None = None,
) -> dict[str, RunSummary | Exception]:
    """Run every organization for *period* on a thread pool, one connection per run.

    An organization that fails gets its exception in place of a summary; the
    others still run to completion.
    """
    config = config or default_pipeline_config()
    period = normalize_period(period)
    if organizations is None:
        conn = connect()
        try:
            organizations = db.list_organizations(conn, period)
        finally:
            conn.close()

    def _one(organization: str) -> RunSummary:
        conn = connect()
        try:
            return AllocationPipeline(conn, config).run(organization, period, force=force)
        finally:
            conn.close()

    results: dict[str, RunSummary | Exception] = {}
    with ThreadPoolExecutor(max_workers=max_workers or config.max_workers) as pool:
        futures = {pool.submit(_one, org): org for org in organizations}
        for future in as_completed(futures):
            org = futures[future]
            try:
                results[org] = future.result()
            except AllocationError as exc:
                results[org] = exc
            except Exception as exc:
                logger.exception("Allocation for %s %s failed unexpectedly", org, period)
                results[org] = exc
    return dict(sorted(results.items()))


def reconciliation_status(conn: db.Connection, organization: str, period: Any) -> dict[str, Any] | None:
    """Latest run for the period as a summary dict, or None if it never ran."""
    run = db.get_latest_run(conn, normalize_organization(organization), normalize_period(period))
    if run is None:
        return None
    out = summary_from_run(run).to_dict()
    out["error"] = run["error"]
    out["startedAt"] = str(run["started_at"]) if run["started_at"] else None
    out["finishedAt"] = str(run["finished_at"]) if run["finished_at"] else None
    return out


def authoritative_costs(conn: db.Connection, organization: str, period: Any, stage: Stage) -> list[CostRow]:
    """Materialized rows for reporting; refused while the period's last run is FAILED."""
    organization = normalize_organization(organization)
    period = normalize_period(period)
    latest = db.get_latest_run(conn, organization, period)
    if latest is not None and latest["status"] == RunStatus.FAILED.value:
        raise StaleMaterializationError(
            f"Last allocation run {latest['id']} for {organization} {period} failed; materialized costs are stale"
        )
    return MaterializationStore(conn).read(organization, period, Stage(stage))
