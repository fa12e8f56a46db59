import asyncio
import json
from contextlib import asynccontextmanager

import asyncpg
import pytest

from asyncpg_repository import (
    AsyncPGItemRepository, DatabasePool, open_repository, translate_errors,
)
from config import Settings
from errors import PersistenceError, UniqueViolation
from ingestion_orchestrator import _main
from models import Category, Item
from simhash import normalize_text
from taxonomy_resolver import TaxonomyResolver


class FakeTransaction:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        self.conn.events.append(f"open@{self.conn.depth}")
        self.conn.depth += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.conn.depth -= 1
        self.conn.events.append(f"{'rollback' if exc_type else 'commit'}@{self.conn.depth}")
        return False


class FakeConnection:
    """Records statements; ``fetchrow`` answers from a queue, then None."""

    def __init__(self):
        self.events = []
        self.depth = 0
        self.executed = []
        self.rows = []
        self.execute_error = None

    def transaction(self):
        return FakeTransaction(self)

    async def execute(self, sql, *args):
        if self.execute_error is not None:
            error, self.execute_error = self.execute_error, None
            raise error
        self.executed.append((sql, args))

    async def executemany(self, sql, args):
        self.executed.append((sql, tuple(args)))

    async def fetchrow(self, sql, *args):
        return self.rows.pop(0) if self.rows else None

    async def fetch(self, sql, *args):
        self.executed.append((sql, args))
        return []

    async def fetchval(self, sql, *args):
        return 0


class FakePool:
    def __init__(self, shared=True):
        self.shared = FakeConnection() if shared else None
        self.acquired = []
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        conn = self.shared or FakeConnection()
        self.acquired.append(conn)
        yield conn

    async def close(self):
        self.closed = True

    def get_size(self):
        return 1

    def get_idle_size(self):
        return 1


def _pool_backed(pool):
    db = DatabasePool("postgresql://quiz@localhost/quizbank")
    db._pool = pool
    return db


def _unique_violation(constraint):
    error = asyncpg.UniqueViolationError("duplicate key value violates unique constraint")
    error.constraint_name = constraint
    return error


# ============================================================
# Error translation
# ============================================================

def test_unique_violation_is_translated():
    async def run():
        async with translate_errors("create category"):
            raise _unique_violation("ux_categories_name_lower")

    with pytest.raises(UniqueViolation) as exc:
        asyncio.run(run())
    assert exc.value.constraint == "ux_categories_name_lower"
    assert isinstance(exc.value.__cause__, asyncpg.UniqueViolationError)


@pytest.mark.parametrize("error", [
    asyncpg.InterfaceError("connection is closed"),
    OSError("connection refused"),
    asyncio.TimeoutError(),
])
def test_store_errors_become_persistence_errors(error):
    async def run():
        async with translate_errors("create item"):
            raise error

    with pytest.raises(PersistenceError) as exc:
        asyncio.run(run())
    assert not isinstance(exc.value, UniqueViolation)
    assert str(exc.value).startswith("create item failed")


def test_other_exceptions_pass_through():
    async def run():
        async with translate_errors("create item"):
            raise ValueError("bad row")

    with pytest.raises(ValueError):
        asyncio.run(run())


# ============================================================
# Transactions
# ============================================================

def test_nested_transaction_reuses_connection_as_savepoint():
    pool = FakePool(shared=False)
    db = _pool_backed(pool)

    async def run():
        async with db.transaction() as outer:
            async with db.acquire() as conn:
                assert conn is outer
            with pytest.raises(RuntimeError):
                async with db.transaction() as inner:
                    assert inner is outer
                    raise RuntimeError("item failed")
        async with db.acquire() as after:
            return outer, after

    outer, after = asyncio.run(run())
    assert outer.events == ["open@0", "open@1", "rollback@1", "commit@0"]
    assert after is not outer
    assert len(pool.acquired) == 2


def test_concurrent_transactions_use_separate_connections():
    db = _pool_backed(FakePool(shared=False))

    async def one():
        async with db.transaction() as conn:
            await asyncio.sleep(0)
            async with db.acquire() as again:
                return conn, again

    async def run():
        return await asyncio.gather(one(), one())

    (first, first_again), (second, second_again) = asyncio.run(run())
    assert first is first_again
    assert second is second_again
    assert first is not second


def test_uninitialized_pool_raises():
    db = DatabasePool("postgresql://quiz@localhost/quizbank")
    with pytest.raises(RuntimeError):
        db.pool


# ============================================================
# Repository
# ============================================================

def test_lost_category_race_resolves_to_winner():
    pool = FakePool()
    repo = AsyncPGItemRepository(_pool_backed(pool))
    winner = Category(name="Math", is_private=True, created_by="alice")
    conn = pool.shared
    conn.rows = [None, winner.model_dump()]
    conn.execute_error = _unique_violation("ux_categories_name_lower")

    resolved = asyncio.run(TaxonomyResolver(repo).resolve_category("math", True, "alice", False))

    assert resolved.id == winner.id
    assert conn.events == ["open@0", "rollback@0"]


def test_create_item_stores_normalized_question():
    pool = FakePool()
    repo = AsyncPGItemRepository(_pool_backed(pool))
    item = Item(category_id=Category(name="Math", created_by="a").id,
                question="  What IS\u001f 2+2? ", correct_answer="4",
                fuzzy_signature="00000000000000AB", fuzzy_bucket=0, created_by="alice")

    asyncio.run(repo.create_item(item))
    sql, args = pool.shared.executed[-1]
    assert "normalized_question" in sql
    assert normalize_text(item.question) in args


def test_candidate_lookup_compares_normalized_column():
    pool = FakePool()
    repo = AsyncPGItemRepository(_pool_backed(pool))
    category_id = Category(name="Math", created_by="a").id

    assert asyncio.run(repo.find_duplicate_candidates(category_id, 7, " What  IS 2+2?")) == []
    sql, args = pool.shared.executed[-1]
    assert "normalized_question = $3" in sql
    assert args == (category_id, 7, "what is 2+2?")


# ============================================================
# Startup
# ============================================================

@pytest.fixture
def fake_create_pool(monkeypatch):
    calls = []
    pool = FakePool()

    async def create_pool(dsn, **kwargs):
        calls.append((dsn, kwargs))
        return pool

    monkeypatch.setattr(asyncpg, "create_pool", create_pool)
    return pool, calls


def test_open_repository_applies_settings_and_schema(fake_create_pool):
    pool, calls = fake_create_pool
    settings = Settings(db_command_timeout=12.5, db_pool_min=1, db_pool_max=3)

    db, repo = asyncio.run(open_repository(settings))

    dsn, kwargs = calls[0]
    assert dsn == settings.asyncpg_dsn
    assert kwargs["command_timeout"] == 12.5
    assert (kwargs["min_size"], kwargs["max_size"]) == (1, 3)
    assert "CREATE TABLE IF NOT EXISTS items" in pool.shared.executed[0][0]
    assert repo.db is db


def test_cli_database_import_creates_schema_first(fake_create_pool, tmp_path, capsys):
    pool, calls = fake_create_pool
    path = tmp_path / "items.json"
    path.write_text(json.dumps({
        "isPrivate": True,
        "items": [{"category": "Math", "question": "What is 2+2?", "correctAnswer": "4"}],
    }), encoding="utf-8")

    code = asyncio.run(_main([str(path), "--database", "--user", "alice"]))

    assert code == 0
    statements = [sql for sql, _ in pool.shared.executed]
    assert "CREATE TABLE IF NOT EXISTS items" in statements[0]
    assert any("INSERT INTO items" in sql for sql in statements)
    assert "command_timeout" in calls[0][1]
    assert pool.closed
    assert json.loads(capsys.readouterr().out)["createdCount"] == 1
