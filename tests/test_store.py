from __future__ import annotations

import sqlite3
import threading
import time
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path

import pytest

from tbmalloc import db
from tbmalloc.errors import PersistenceError
from tbmalloc.locks import PeriodLocks
from tbmalloc.store import MaterializationStore
from tbmalloc.types import CostRow, Stage

ORG = "ACME"
PERIOD = "2025-02-01"


@pytest.fixture()
def conn(tmp_path: Path):
    url = f"sqlite:///{tmp_path / 'store.db'}"
    db.init_db(url)
    conn = db.get_connection(url)
    yield conn
    conn.close()


def _rows(stage: Stage, **amounts: str) -> list[CostRow]:
    return [CostRow(ORG, PERIOD, stage, key, Decimal(amount)) for key, amount in amounts.items()]


def test_replace_supersedes_previous_rows(conn) -> None:
    store = MaterializationStore(conn)
    store.replace(ORG, PERIOD, Stage.TOWER, _rows(Stage.TOWER, APP_DEV="10.00", CLOUD="5.00"))
    store.replace(ORG, PERIOD, Stage.TOWER, _rows(Stage.TOWER, APP_DEV="7.50"))

    rows = store.read(ORG, PERIOD, Stage.TOWER)
    assert [(r.target_key, r.amount) for r in rows] == [("APP_DEV", Decimal("7.50"))]


def test_replace_is_scoped_to_period_and_organization(conn) -> None:
    store = MaterializationStore(conn)
    store.replace(ORG, PERIOD, Stage.TOWER, _rows(Stage.TOWER, APP_DEV="1.00"))
    other = [CostRow("OTHER", PERIOD, Stage.TOWER, "APP_DEV", Decimal("2.00"))]
    store.replace("OTHER", PERIOD, Stage.TOWER, other)
    store.replace(ORG, PERIOD, Stage.TOWER, [])

    assert store.read(ORG, PERIOD, Stage.TOWER) == []
    assert store.read("OTHER", PERIOD, Stage.TOWER)[0].amount == Decimal("2.00")


def test_amounts_round_trip_as_decimal(conn) -> None:
    store = MaterializationStore(conn)
    store.replace(ORG, PERIOD, Stage.SOLUTION, _rows(Stage.SOLUTION, CRM="0.10"))
    [row] = store.read(ORG, PERIOD, Stage.SOLUTION)
    assert isinstance(row.amount, Decimal)
    assert row.amount == Decimal("0.10")


def test_rows_for_another_period_are_rejected(conn) -> None:
    store = MaterializationStore(conn)
    stray = [CostRow(ORG, "2025-03-01", Stage.TOWER, "APP_DEV", Decimal("1"))]
    with pytest.raises(ValueError):
        store.replace(ORG, PERIOD, Stage.TOWER, stray)


def test_failed_write_leaves_previous_rows_intact(conn, monkeypatch) -> None:
    store = MaterializationStore(conn)
    store.replace(ORG, PERIOD, Stage.TOWER, _rows(Stage.TOWER, APP_DEV="10.00"))

    def boom(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(db, "insert_stage_rows", boom)
    with pytest.raises(PersistenceError) as info:
        store.replace(ORG, PERIOD, Stage.TOWER, _rows(Stage.TOWER, CLOUD="99.00"))
    assert info.value.stage == "tower"

    monkeypatch.undo()
    rows = store.read(ORG, PERIOD, Stage.TOWER)
    assert [(r.target_key, r.amount) for r in rows] == [("APP_DEV", Decimal("10.00"))]


def test_replace_all_is_all_or_nothing(conn, monkeypatch) -> None:
    store = MaterializationStore(conn)
    before = {
        Stage.TOWER: _rows(Stage.TOWER, APP_DEV="1.00"),
        Stage.SOLUTION: _rows(Stage.SOLUTION, CRM="1.00"),
        Stage.BUSINESS: _rows(Stage.BUSINESS, SALES="1.00"),
    }
    assert store.replace_all(ORG, PERIOD, before) == [Stage.TOWER, Stage.SOLUTION, Stage.BUSINESS]

    original = db.insert_stage_rows

    def fail_on_business(conn_, stage, rows):
        if stage is Stage.BUSINESS:
            raise sqlite3.IntegrityError("constraint failed")
        return original(conn_, stage, rows)

    monkeypatch.setattr(db, "insert_stage_rows", fail_on_business)
    after = {
        Stage.TOWER: _rows(Stage.TOWER, APP_DEV="2.00"),
        Stage.SOLUTION: _rows(Stage.SOLUTION, CRM="2.00"),
        Stage.BUSINESS: _rows(Stage.BUSINESS, SALES="2.00"),
    }
    with pytest.raises(PersistenceError) as info:
        store.replace_all(ORG, PERIOD, after)
    assert info.value.stage == "business"

    for stage in Stage:
        assert store.read(ORG, PERIOD, stage)[0].amount == Decimal("1.00")


def test_scope_cannot_be_nested(conn) -> None:
    store = MaterializationStore(conn)
    with store.scope(ORG, PERIOD):
        with pytest.raises(RuntimeError):
            with store.scope(ORG, "2025-03-01"):
                pass


def test_commit_failure_is_a_persistence_error(conn, monkeypatch) -> None:
    store = MaterializationStore(conn)
    store.replace(ORG, PERIOD, Stage.TOWER, _rows(Stage.TOWER, APP_DEV="10.00"))

    @contextmanager
    def failing_commit(conn_):
        try:
            yield conn_
        except BaseException:
            conn_.rollback()
            raise
        conn_.rollback()
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "transaction", failing_commit)
    with pytest.raises(PersistenceError) as info:
        store.replace(ORG, PERIOD, Stage.TOWER, _rows(Stage.TOWER, CLOUD="99.00"))
    assert info.value.stage == "materialize"
    assert "database is locked" in str(info.value)

    monkeypatch.undo()
    rows = store.read(ORG, PERIOD, Stage.TOWER)
    assert [(r.target_key, r.amount) for r in rows] == [("APP_DEV", Decimal("10.00"))]


def test_period_lock_failure_is_a_persistence_error(conn, monkeypatch) -> None:
    def no_lock(*args):
        raise sqlite3.OperationalError("lock timeout")

    monkeypatch.setattr(db, "acquire_period_lock", no_lock)
    with pytest.raises(PersistenceError) as info:
        MaterializationStore(conn).replace(ORG, PERIOD, Stage.TOWER, _rows(Stage.TOWER, APP_DEV="1.00"))
    assert info.value.stage == "materialize"


class TestPeriodLocks:
    def test_same_period_serializes(self) -> None:
        locks = PeriodLocks()
        events: list[str] = []
        holding = threading.Event()

        def first():
            with locks.hold(ORG, PERIOD):
                holding.set()
                events.append("first-start")
                time.sleep(0.1)
                events.append("first-end")

        def second():
            holding.wait()
            with locks.hold(ORG, PERIOD):
                events.append("second")

        threads = [threading.Thread(target=first), threading.Thread(target=second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert events == ["first-start", "first-end", "second"]

    def test_different_periods_do_not_block(self) -> None:
        locks = PeriodLocks()
        holding = threading.Event()
        release = threading.Event()
        acquired: list[bool] = []

        def first():
            with locks.hold(ORG, PERIOD):
                holding.set()
                release.wait(timeout=5)

        t = threading.Thread(target=first)
        t.start()
        holding.wait()
        with locks.hold(ORG, "2025-03-01", timeout=1):
            acquired.append(True)
        release.set()
        t.join()
        assert acquired == [True]

    def test_timeout(self) -> None:
        locks = PeriodLocks()
        holding = threading.Event()
        release = threading.Event()

        def first():
            with locks.hold(ORG, PERIOD):
                holding.set()
                release.wait(timeout=5)

        t = threading.Thread(target=first)
        t.start()
        holding.wait()
        try:
            with pytest.raises(TimeoutError):
                with locks.hold(ORG, PERIOD, timeout=0.05):
                    pass
        finally:
            release.set()
            t.join()

    def test_released_locks_are_evicted(self) -> None:
        locks = PeriodLocks()
        for month in range(1, 13):
            with locks.hold(ORG, f"2025-{month:02d}-01"):
                assert len(locks) == 1
        assert len(locks) == 0

    def test_lock_kept_while_another_thread_waits(self) -> None:
        locks = PeriodLocks()
        holding = threading.Event()
        release = threading.Event()
        acquired: list[bool] = []

        def first():
            with locks.hold(ORG, PERIOD):
                holding.set()
                release.wait(timeout=5)

        def second():
            with locks.hold(ORG, PERIOD, timeout=5):
                acquired.append(True)

        t1 = threading.Thread(target=first)
        t1.start()
        holding.wait()
        t2 = threading.Thread(target=second)
        t2.start()
        time.sleep(0.05)
        assert len(locks) == 1
        release.set()
        t1.join()
        t2.join()
        assert acquired == [True]
        assert len(locks) == 0
