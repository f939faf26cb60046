"""
Tests for schema creation and transaction handles.
"""

import asyncio
import sqlite3
from pathlib import Path

import pytest

from domain_engine.runtime.database import DatabaseManager, current_transaction
from domain_engine.runtime.errors import InternalError
from domain_engine.specs.registry import EntityRegistry


@pytest.fixture
def db(tmp_path: Path, registry: EntityRegistry) -> DatabaseManager:
    manager = DatabaseManager(tmp_path / "nested" / "engine.db")
    manager.create_all_tables(registry)
    return manager


class TestSchema:
    def test_creates_entity_and_junction_tables(self, db: DatabaseManager) -> None:
        for table in ("Department", "Employee", "Project"):
            assert db.table_exists(table)
        for junction in ("employee_projects", "mentorship", "friendship"):
            assert db.table_exists(junction)
        assert not db.table_exists("Ghost")

    def test_schema_creation_is_repeatable(
        self, db: DatabaseManager, registry: EntityRegistry
    ) -> None:
        db.create_all_tables(registry)
        assert db.table_exists("Employee")

    def test_foreign_keys_enforced(self, db: DatabaseManager) -> None:
        conn = db.connect()
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute(
                    'INSERT INTO "employee_projects" ("employeeId", "projectId") VALUES (?, ?)',
                    ("a", "b"),
                )
        finally:
            conn.close()


class TestTransaction:
    """Tests for commit callbacks and the rollback-only flag."""

    def test_on_commit_runs_after_commit(self, db: DatabaseManager) -> None:
        calls: list[str] = []
        tx = db.begin()
        tx.on_commit(lambda: calls.append("first"))
        tx.on_commit(lambda: calls.append("second"))
        assert calls == []

        tx.commit()

        assert calls == ["first", "second"]
        assert not tx.active

    def test_rollback_discards_callbacks(self, db: DatabaseManager) -> None:
        calls: list[str] = []
        tx = db.begin()
        tx.on_commit(lambda: calls.append("never"))
        tx.rollback()
        assert calls == []

    def test_failing_callback_does_not_break_commit(self, db: DatabaseManager) -> None:
        calls: list[str] = []

        def boom() -> None:
            raise RuntimeError("callback failed")

        tx = db.begin()
        tx.on_commit(boom)
        tx.on_commit(lambda: calls.append("still runs"))
        tx.commit()
        assert calls == ["still runs"]

    def test_rollback_only_commit_raises(self, db: DatabaseManager) -> None:
        tx = db.begin()
        tx.execute('INSERT INTO "Department" ("id", "name", "createdAt", "updatedAt") '
                   "VALUES ('d1', 'R&D', 'now', 'now')")
        tx.mark_rollback_only()

        with pytest.raises(InternalError):
            tx.commit()

        check = db.begin()
        try:
            assert check.fetchone('SELECT COUNT(*) AS n FROM "Department"') == {"n": 0}
        finally:
            check.rollback()

    def test_finished_transaction_rejects_statements(self, db: DatabaseManager) -> None:
        tx = db.begin()
        tx.commit()
        with pytest.raises(InternalError):
            tx.execute("SELECT 1")

    @pytest.mark.asyncio
    async def test_async_transaction_rolls_back_on_error(self, db: DatabaseManager) -> None:
        with pytest.raises(ValueError):
            async with db.transaction() as tx:
                tx.execute('INSERT INTO "Department" ("id", "name", "createdAt", "updatedAt") '
                           "VALUES ('d1', 'R&D', 'now', 'now')")
                raise ValueError("abort")

        async with db.transaction() as tx:
            assert tx.fetchone('SELECT COUNT(*) AS n FROM "Department"') == {"n": 0}


_INSERT_DEPARTMENT = (
    'INSERT INTO "Department" ("id", "name", "createdAt", "updatedAt") '
    "VALUES (?, ?, 'now', 'now')"
)


def _departments(db: DatabaseManager) -> int:
    conn = db.connect()
    try:
        return conn.execute('SELECT COUNT(*) FROM "Department"').fetchone()[0]
    finally:
        conn.close()


class TestNestedTransaction:
    """A transaction opened inside another one in the same task joins it."""

    @pytest.mark.asyncio
    async def test_inner_block_joins_outer(self, db: DatabaseManager) -> None:
        async def run() -> None:
            async with db.transaction() as outer:
                async with db.transaction() as inner:
                    assert inner is outer
                    inner.execute(_INSERT_DEPARTMENT, ("d1", "R&D"))
                assert outer.active
                assert _departments(db) == 0
            assert _departments(db) == 1

        await asyncio.wait_for(run(), timeout=5)

    @pytest.mark.asyncio
    async def test_inner_failure_marks_outer_rollback_only(self, db: DatabaseManager) -> None:
        with pytest.raises(InternalError):
            async with db.transaction() as outer:
                outer.execute(_INSERT_DEPARTMENT, ("d1", "R&D"))
                with pytest.raises(ValueError):
                    async with db.transaction():
                        raise ValueError("inner")
                assert outer.rollback_only
        assert _departments(db) == 0

    @pytest.mark.asyncio
    async def test_unbound_before_commit_callbacks(self, db: DatabaseManager) -> None:
        seen: list[object] = []
        assert current_transaction() is None
        async with db.transaction() as tx:
            assert current_transaction() is tx
            tx.on_commit(lambda: seen.append(current_transaction()))
        assert seen == [None]
        assert current_transaction() is None

    @pytest.mark.asyncio
    async def test_separate_tasks_do_not_share(self, db: DatabaseManager) -> None:
        inside = asyncio.Event()
        release = asyncio.Event()
        seen: list[object] = []

        async def holder() -> None:
            async with db.transaction():
                inside.set()
                await release.wait()

        async def other() -> None:
            await inside.wait()
            seen.append(current_transaction())
            release.set()
            async with db.transaction() as tx:
                tx.execute(_INSERT_DEPARTMENT, ("d2", "Sales"))

        await asyncio.wait_for(asyncio.gather(holder(), other()), timeout=5)
        assert seen == [None]
        assert _departments(db) == 1
