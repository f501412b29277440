from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Iterable, Mapping

from . import db
from .errors import PersistenceError
from .locks import PERIOD_LOCKS, PeriodLocks
from .types import STAGE_ORDER, CostRow, Stage


class MaterializationStore:
    """Stage outputs per (organization, period), replaced wholesale on each run.

    Writes go through ``scope()``: one transaction plus the period lock,
    committed on success and rolled back on any exit by exception, so
    readers never see a half-written stage.
    """

    def __init__(self, conn: db.Connection, locks: PeriodLocks | None = None) -> None:
        self.conn = conn
        self.locks = locks or PERIOD_LOCKS
        self._active: tuple[str, str] | None = None

    @contextmanager
    def scope(self, organization: str, period: str) -> Generator["MaterializationStore", None, None]:
        if self._active is not None:
            raise RuntimeError(f"Write scope already open for {self._active}")
        with self.locks.hold(organization, period):
            # Stage writes raise their own PersistenceError; this covers the lock and the commit
            try:
                with db.transaction(self.conn):
                    db.acquire_period_lock(self.conn, organization, period)
                    self._active = (organization, period)
                    try:
                        yield self
                    finally:
                        self._active = None
            except db.DB_ERRORS as exc:
                raise PersistenceError("materialize", str(exc)) from exc

    def _write(self, organization: str, period: str, stage: Stage, rows: list[CostRow]) -> None:
        for row in rows:
            if (row.organization, row.period, row.stage) != (organization, period, stage):
                raise ValueError(f"Row {row} does not belong to {organization} {period} {stage.value}")
        try:
            db.delete_stage_rows(self.conn, organization, period, stage)
            db.insert_stage_rows(self.conn, stage, rows)
        except db.DB_ERRORS as exc:
            raise PersistenceError(stage.value, str(exc)) from exc

    def replace(self, organization: str, period: str, stage: Stage, rows: Iterable[CostRow]) -> None:
        """Supersede every row of *stage* for the period with *rows*."""
        stage = Stage(stage)
        rows = list(rows)
        if self._active == (organization, period):
            self._write(organization, period, stage, rows)
            return
        with self.scope(organization, period):
            self._write(organization, period, stage, rows)

    def replace_all(
        self, organization: str, period: str, rows_by_stage: Mapping[Stage, Iterable[CostRow]]
    ) -> list[Stage]:
        """Replace every stage in one transaction; returns the stages written."""
        written: list[Stage] = []
        with self.scope(organization, period):
            for stage in STAGE_ORDER:
                if stage in rows_by_stage:
                    self.replace(organization, period, stage, rows_by_stage[stage])
                    written.append(stage)
        return written

    def read(self, organization: str, period: str, stage: Stage) -> list[CostRow]:
        return db.list_stage_rows(self.conn, organization, period, stage)
