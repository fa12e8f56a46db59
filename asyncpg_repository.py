"""
asyncpg_repository.py — Production PostgreSQL repository implementation.

Implements the ItemRepository interface using an asyncpg connection pool.
Uniqueness of category/keyword names is enforced by unique indexes on
lower(name); nested transactions map onto savepoints so a rejected insert can
be retried as a lookup without aborting the surrounding batch.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Optional
from uuid import UUID

import asyncpg

from config import Settings
from errors import PersistenceError, UniqueViolation
from models import AuditEntry, Category, Item, Keyword
from repository import ItemRepository
from simhash import normalize_text

logger = logging.getLogger(__name__)

# Errors that mean "the store failed", as opposed to a constraint we expect
_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS categories (
    id          UUID PRIMARY KEY,
    name        VARCHAR(100) NOT NULL,
    is_private  BOOLEAN NOT NULL DEFAULT FALSE,
    created_by  VARCHAR(100) NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);
-- One name per category across global and private rows
CREATE UNIQUE INDEX IF NOT EXISTS ux_categories_name_lower ON categories (lower(name));

CREATE TABLE IF NOT EXISTS keywords (
    id          UUID PRIMARY KEY,
    name        VARCHAR(30) NOT NULL,
    is_private  BOOLEAN NOT NULL DEFAULT FALSE,
    created_by  VARCHAR(100) NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_keywords_name_lower ON keywords (lower(name));

CREATE TABLE IF NOT EXISTS items (
    id                UUID PRIMARY KEY,
    category_id       UUID REFERENCES categories (id) ON DELETE SET NULL,
    is_private        BOOLEAN NOT NULL DEFAULT FALSE,
    question          VARCHAR(1000) NOT NULL,
    correct_answer    VARCHAR(500) NOT NULL,
    incorrect_answers JSONB NOT NULL DEFAULT '[]'::jsonb
        CHECK (jsonb_array_length(incorrect_answers) BETWEEN 0 AND 4),
    explanation       VARCHAR(2000) NOT NULL DEFAULT '',
    source            VARCHAR(50),
    -- simhash.normalize_text(question), written by the application
    normalized_question TEXT NOT NULL,
    fuzzy_signature   CHAR(16) NOT NULL,
    fuzzy_bucket      SMALLINT NOT NULL,
    created_by        VARCHAR(100) NOT NULL,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS ix_items_category_bucket ON items (category_id, fuzzy_bucket);
CREATE INDEX IF NOT EXISTS ix_items_category_question ON items (category_id, normalized_question);
CREATE INDEX IF NOT EXISTS ix_items_private_owner ON items (is_private, created_by);

CREATE TABLE IF NOT EXISTS item_keywords (
    item_id     UUID NOT NULL REFERENCES items (id) ON DELETE CASCADE,
    keyword_id  UUID NOT NULL REFERENCES keywords (id) ON DELETE RESTRICT,
    added_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT ux_item_keywords_pair PRIMARY KEY (item_id, keyword_id)
);

CREATE TABLE IF NOT EXISTS category_keywords (
    category_id UUID NOT NULL REFERENCES categories (id) ON DELETE CASCADE,
    keyword_id  UUID NOT NULL REFERENCES keywords (id) ON DELETE RESTRICT,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT ux_category_keywords_pair PRIMARY KEY (category_id, keyword_id)
);

CREATE TABLE IF NOT EXISTS audit_log (
    id          UUID PRIMARY KEY,
    action      VARCHAR(50) NOT NULL,
    user_id     VARCHAR(100),
    entity_id   UUID,
    metadata    JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


@asynccontextmanager
async def translate_errors(operation: str):
    """Map asyncpg failures onto the ingestion error taxonomy."""
    try:
        yield
    except asyncpg.UniqueViolationError as e:
        raise UniqueViolation(
            f"{operation}: {e}", constraint=getattr(e, "constraint_name", None)) from e
    except _STORE_ERRORS as e:
        raise PersistenceError(f"{operation} failed: {e}") from e


# ── Connection Pool Manager ──────────────────────────────────────────────────

class DatabasePool:
    """Manages asyncpg connection pool lifecycle.

    The connection holding the current task's transaction is tracked in a
    context variable; ``acquire`` and nested ``transaction`` calls reuse it.
    """

    def __init__(
        self,
        dsn: str,
        min_size: int = 5,
        max_size: int = 20,
        command_timeout: float = 30,
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self._pool: Optional[asyncpg.Pool] = None
        self._tx_conn: ContextVar[Optional[asyncpg.Connection]] = ContextVar(
            f"tx_conn_{id(self)}", default=None)

    async def initialize(self) -> None:
        """Create connection pool and install the JSONB codec."""
        self._pool = await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=self.command_timeout,
            init=self._init_connection,
        )
        logger.info(
            "Database pool initialized (min=%d, max=%d)", self.min_size, self.max_size
        )

    async def _init_connection(self, conn: asyncpg.Connection) -> None:
        """Per-connection setup: JSONB <-> Python objects."""
        await conn.set_type_codec(
            "jsonb",
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        return self._pool

    @asynccontextmanager
    async def acquire(self):
        conn = self._tx_conn.get()
        if conn is not None:
            yield conn
            return
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self):
        conn = self._tx_conn.get()
        if conn is not None:
            # Nested: asyncpg issues SAVEPOINT / ROLLBACK TO SAVEPOINT
            async with conn.transaction():
                yield conn
            return
        async with self.pool.acquire() as conn:
            token = self._tx_conn.set(conn)
            try:
                async with conn.transaction():
                    yield conn
            finally:
                self._tx_conn.reset(token)

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            logger.info("Database pool closed")


# ── Item Repository ──────────────────────────────────────────────────────────

class AsyncPGItemRepository(ItemRepository):
    """
    Production repository implementing the ItemRepository interface.

    Methods match the interface defined in repository.py:
    - transaction() -> async context manager (savepoint when nested)
    - find_category_by_name(name) / create_category(category)
    - find_keyword_by_name(name) / create_keyword(keyword)
    - find_duplicate_candidates(category_id, bucket, question) -> list[Item]
    - create_item(item) -> Item
    - add_item_keywords(item_id, keyword_ids) -> None
    - ensure_category_keywords(category_id, keyword_ids) -> None
    - add_audit_entry(entry) -> None
    """

    supports_transactions = True

    def __init__(self, db: DatabasePool):
        self.db = db

    async def create_schema(self) -> None:
        async with translate_errors("create schema"):
            async with self.db.acquire() as conn:
                await conn.execute(SCHEMA_SQL)
        logger.info("Database schema ensured")

    @asynccontextmanager
    async def transaction(self):
        async with translate_errors("transaction"):
            async with self.db.transaction():
                yield

    # ── Categories & Keywords ────────────────────────────────────────────

    async def find_category_by_name(self, name: str) -> Optional[Category]:
        async with translate_errors("find category"):
            async with self.db.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT * FROM categories WHERE lower(name) = lower($1)", name.strip()
                )
        return Category(**dict(row)) if row else None

    async def create_category(self, category: Category) -> Category:
        async with translate_errors("create category"):
            async with self.db.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO categories (id, name, is_private, created_by, created_at)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    category.id,
                    category.name,
                    category.is_private,
                    category.created_by,
                    category.created_at,
                )
        return category

    async def find_keyword_by_name(self, name: str) -> Optional[Keyword]:
        async with translate_errors("find keyword"):
            async with self.db.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT * FROM keywords WHERE lower(name) = lower($1)", name.strip()
                )
        return Keyword(**dict(row)) if row else None

    async def create_keyword(self, keyword: Keyword) -> Keyword:
        async with translate_errors("create keyword"):
            async with self.db.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO keywords (id, name, is_private, created_by, created_at)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    keyword.id,
                    keyword.name,
                    keyword.is_private,
                    keyword.created_by,
                    keyword.created_at,
                )
        return keyword

    # ── Items ────────────────────────────────────────────────────────────

    async def find_duplicate_candidates(
        self, category_id: UUID, bucket: int, question: str
    ) -> list[Item]:
        async with translate_errors("find duplicate candidates"):
            async with self.db.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT * FROM items
                    WHERE category_id = $1
                      AND (fuzzy_bucket = $2 OR normalized_question = $3)
                    """,
                    category_id,
                    bucket,
                    normalize_text(question),
                )
        return [Item(**dict(r)) for r in rows]

    async def create_item(self, item: Item) -> Item:
        async with translate_errors("create item"):
            async with self.db.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO items (id, category_id, is_private, question, correct_answer,
                                       incorrect_answers, explanation, source, normalized_question,
                                       fuzzy_signature, fuzzy_bucket, created_by, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                    """,
                    item.id,
                    item.category_id,
                    item.is_private,
                    item.question,
                    item.correct_answer,
                    item.incorrect_answers,
                    item.explanation,
                    item.source,
                    normalize_text(item.question),
                    item.fuzzy_signature,
                    item.fuzzy_bucket,
                    item.created_by,
                    item.created_at,
                )
        logger.debug("Created item %s (bucket=%d)", item.id, item.fuzzy_bucket)
        return item

    async def add_item_keywords(self, item_id: UUID, keyword_ids: list[UUID]) -> None:
        if not keyword_ids:
            return
        async with translate_errors("add item keywords"):
            async with self.db.acquire() as conn:
                await conn.executemany(
                    "INSERT INTO item_keywords (item_id, keyword_id) VALUES ($1, $2)",
                    [(item_id, kid) for kid in keyword_ids],
                )

    async def ensure_category_keywords(
        self, category_id: UUID, keyword_ids: list[UUID]
    ) -> None:
        if not keyword_ids:
            return
        async with translate_errors("ensure category keywords"):
            async with self.db.acquire() as conn:
                await conn.executemany(
                    """
                    INSERT INTO category_keywords (category_id, keyword_id)
                    VALUES ($1, $2)
                    ON CONFLICT (category_id, keyword_id) DO NOTHING
                    """,
                    [(category_id, kid) for kid in keyword_ids],
                )

    # ── Audit ────────────────────────────────────────────────────────────

    async def add_audit_entry(self, entry: AuditEntry) -> None:
        async with translate_errors("add audit entry"):
            async with self.db.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO audit_log (id, action, user_id, entity_id, metadata, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    entry.id,
                    entry.action.value,
                    entry.user_id,
                    entry.entity_id,
                    entry.metadata,
                    entry.created_at,
                )

    # ── Health Check ─────────────────────────────────────────────────────

    async def health_check(self) -> dict:
        try:
            async with self.db.acquire() as conn:
                version = await conn.fetchval("SELECT version()")
                items = await conn.fetchval("SELECT COUNT(*) FROM items")
                pool = self.db.pool
                return {
                    "status": "healthy",
                    "backend": "postgres",
                    "postgres_version": version,
                    "items": items,
                    "pool_size": pool.get_size(),
                    "pool_free": pool.get_idle_size(),
                    "pool_used": pool.get_size() - pool.get_idle_size(),
                }
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}


# ── Startup ──────────────────────────────────────────────────────────────────

async def open_repository(settings: Settings) -> tuple[DatabasePool, AsyncPGItemRepository]:
    """Create the pool from settings and ensure the schema. Caller closes the pool."""
    db = DatabasePool(
        settings.asyncpg_dsn,
        min_size=settings.db_pool_min,
        max_size=settings.db_pool_max,
        command_timeout=settings.db_command_timeout,
    )
    await db.initialize()
    repo = AsyncPGItemRepository(db)
    try:
        await repo.create_schema()
    except PersistenceError:
        await db.close()
        raise
    return db, repo
