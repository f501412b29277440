from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from tbmalloc import db
from tbmalloc.cli import app
from tbmalloc.types import AllocationRule, RuleSet, Stage

runner = CliRunner()


def _prepare(tmp_path: Path) -> str:
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    data = tmp_path / "data"
    assert runner.invoke(app, ["synth", "--out", str(data), "--months", "1", "--seed", "5"]).exit_code == 0
    assert runner.invoke(app, ["init-db", "--db-url", url]).exit_code == 0
    result = runner.invoke(app, ["import-csv", "--input", str(data), "--organization", "ACME", "--db-url", url])
    assert result.exit_code == 0, result.output
    assert "Imported 7 spend rows" in result.output
    return url


def test_synth_import_validate_run_status(tmp_path: Path) -> None:
    url = _prepare(tmp_path)

    result = runner.invoke(app, ["validate", "--organization", "ACME", "--period", "2025-01", "--db-url", url])
    assert result.exit_code == 0, result.output

    result = runner.invoke(app, ["run", "--organization", "ACME", "--period", "2025-01", "--db-url", url])
    assert result.exit_code == 0, result.output
    conn = db.get_connection(url)
    try:
        assert db.list_stage_rows(conn, "ACME", "2025-01-01", Stage.BUSINESS)
    finally:
        conn.close()

    result = runner.invoke(app, ["run", "--organization", "ACME", "--period", "2025-01", "--db-url", url])
    assert result.exit_code == 0
    assert "nothing recomputed" in result.output

    result = runner.invoke(app, ["status", "--organization", "ACME", "--period", "2025-01", "--db-url", url])
    assert result.exit_code == 0
    assert "RECONCILED" in result.output


def test_run_fails_on_bad_weights(tmp_path: Path) -> None:
    url = _prepare(tmp_path)
    conn = db.get_connection(url)
    try:
        db.upsert_rules(
            conn, [AllocationRule("ACME", "2025-01-01", RuleSet.DEPARTMENT_TOWER, "ENGINEERING", "EXTRA", "0.5")]
        )
    finally:
        conn.close()

    result = runner.invoke(app, ["validate", "--organization", "ACME", "--period", "2025-01", "--db-url", url])
    assert result.exit_code == 1

    result = runner.invoke(app, ["run", "--organization", "ACME", "--period", "2025-01", "--db-url", url])
    assert result.exit_code == 1
    assert "Run failed" in result.output


def test_status_without_runs(tmp_path: Path) -> None:
    url = _prepare(tmp_path)
    result = runner.invoke(app, ["status", "--organization", "ACME", "--period", "2025-02", "--db-url", url])
    assert result.exit_code == 1
