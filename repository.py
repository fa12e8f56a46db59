"""
Quiz Item Ingestion — Repository Layer

Abstract store interface used by the resolver and the orchestrator, plus an
in-memory implementation that enforces the same unique constraints as the
PostgreSQL schema (see asyncpg_repository.py).
"""
from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Callable, Optional
from uuid import UUID

from errors import UniqueViolation
from models import (
    AuditEntry, Category, CategoryKeyword, Item, ItemKeyword, Keyword, name_key,
)
from simhash import normalize_text

logger = logging.getLogger(__name__)


# ============================================================
# Database Abstraction Layer (Repository Pattern)
# ============================================================

class ItemRepository:
    """
    Abstract DB access. In production, backed by asyncpg.
    Implementations raise UniqueViolation when a unique index rejects an
    insert and PersistenceError for every other store failure.
    """

    # Stores without multi-statement transactions commit every write on its own
    supports_transactions: bool = True

    def transaction(self):
        """Async context manager; nested use opens a savepoint."""
        raise NotImplementedError

    async def find_category_by_name(self, name: str) -> Optional[Category]:
        raise NotImplementedError

    async def create_category(self, category: Category) -> Category:
        raise NotImplementedError

    async def find_keyword_by_name(self, name: str) -> Optional[Keyword]:
        raise NotImplementedError

    async def create_keyword(self, keyword: Keyword) -> Keyword:
        raise NotImplementedError

    async def find_duplicate_candidates(
        self, category_id: UUID, bucket: int, question: str
    ) -> list[Item]:
        """Items in the category sharing the bucket or the normalized question."""
        raise NotImplementedError

    async def create_item(self, item: Item) -> Item:
        raise NotImplementedError

    async def add_item_keywords(self, item_id: UUID, keyword_ids: list[UUID]) -> None:
        raise NotImplementedError

    async def ensure_category_keywords(
        self, category_id: UUID, keyword_ids: list[UUID]
    ) -> None:
        """Insert the missing (category, keyword) pairs; existing pairs are left alone."""
        raise NotImplementedError

    async def add_audit_entry(self, entry: AuditEntry) -> None:
        raise NotImplementedError

    async def health_check(self) -> dict:
        raise NotImplementedError


# ============================================================
# In-Memory Repository (for testing / local dev)
# ============================================================

class InMemoryRepository(ItemRepository):
    """In-memory implementation for testing without a database.

    Writes are visible immediately (no isolation); a failing transaction
    undoes its own writes in reverse order. Nested transactions behave like
    savepoints.
    """

    def __init__(self, supports_transactions: bool = True):
        self.supports_transactions = supports_transactions
        self.categories: dict[UUID, Category] = {}
        self.keywords: dict[UUID, Keyword] = {}
        self.items: dict[UUID, Item] = {}
        self.item_keywords: list[ItemKeyword] = []
        self.category_keywords: list[CategoryKeyword] = []
        self.audit_entries: list[AuditEntry] = []
        self.commits = 0
        self.rollbacks = 0
        self._category_index: dict[str, UUID] = {}
        self._keyword_index: dict[str, UUID] = {}
        self._item_keyword_pairs: set[tuple[UUID, UUID]] = set()
        self._category_keyword_pairs: set[tuple[UUID, UUID]] = set()
        self._journal: ContextVar[Optional[list[Callable[[], Any]]]] = ContextVar(
            f'inmemory_journal_{id(self)}', default=None)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if not self.supports_transactions:
            raise NotImplementedError('This store does not support transactions')
        parent = self._journal.get()
        journal: list[Callable[[], Any]] = []
        token = self._journal.set(journal)
        try:
            yield
        except BaseException:
            for undo in reversed(journal):
                undo()
            if parent is None:
                self.rollbacks += 1
            raise
        else:
            if parent is not None:
                parent.extend(journal)
            else:
                self.commits += 1
        finally:
            self._journal.reset(token)

    def _record(self, undo: Callable[[], Any]) -> None:
        journal = self._journal.get()
        if journal is not None:
            journal.append(undo)

    # ----------------------------------------------------------
    # Categories & Keywords
    # ----------------------------------------------------------

    async def find_category_by_name(self, name: str) -> Optional[Category]:
        cid = self._category_index.get(name_key(name))
        return self.categories.get(cid) if cid else None

    async def create_category(self, category: Category) -> Category:
        key = category.key
        if key in self._category_index:
            raise UniqueViolation(
                f'Category name already exists: {category.name}',
                constraint='ux_categories_name_lower')
        self.categories[category.id] = category
        self._category_index[key] = category.id

        def undo():
            self.categories.pop(category.id, None)
            self._category_index.pop(key, None)
        self._record(undo)
        return category

    async def find_keyword_by_name(self, name: str) -> Optional[Keyword]:
        kid = self._keyword_index.get(name_key(name))
        return self.keywords.get(kid) if kid else None

    async def create_keyword(self, keyword: Keyword) -> Keyword:
        key = keyword.key
        if key in self._keyword_index:
            raise UniqueViolation(
                f'Keyword name already exists: {keyword.name}',
                constraint='ux_keywords_name_lower')
        self.keywords[keyword.id] = keyword
        self._keyword_index[key] = keyword.id

        def undo():
            self.keywords.pop(keyword.id, None)
            self._keyword_index.pop(key, None)
        self._record(undo)
        return keyword

    # ----------------------------------------------------------
    # Items
    # ----------------------------------------------------------

    async def find_duplicate_candidates(
        self, category_id: UUID, bucket: int, question: str
    ) -> list[Item]:
        wanted = normalize_text(question)
        return [
            item for item in self.items.values()
            if item.category_id == category_id and (
                item.fuzzy_bucket == bucket
                or normalize_text(item.question) == wanted
            )
        ]

    async def create_item(self, item: Item) -> Item:
        if item.id in self.items:
            raise UniqueViolation(f'Item already exists: {item.id}', constraint='pk_items')
        self.items[item.id] = item
        self._record(lambda: self.items.pop(item.id, None))
        return item

    async def add_item_keywords(self, item_id: UUID, keyword_ids: list[UUID]) -> None:
        for kid in keyword_ids:
            pair = (item_id, kid)
            if pair in self._item_keyword_pairs:
                raise UniqueViolation(
                    f'Item {item_id} already has keyword {kid}',
                    constraint='ux_item_keywords_pair')
            link = ItemKeyword(item_id=item_id, keyword_id=kid)
            self._item_keyword_pairs.add(pair)
            self.item_keywords.append(link)

            def undo(pair=pair, link=link):
                self._item_keyword_pairs.discard(pair)
                self.item_keywords.remove(link)
            self._record(undo)

    async def ensure_category_keywords(
        self, category_id: UUID, keyword_ids: list[UUID]
    ) -> None:
        for kid in keyword_ids:
            pair = (category_id, kid)
            if pair in self._category_keyword_pairs:
                continue
            link = CategoryKeyword(category_id=category_id, keyword_id=kid)
            self._category_keyword_pairs.add(pair)
            self.category_keywords.append(link)

            def undo(pair=pair, link=link):
                self._category_keyword_pairs.discard(pair)
                self.category_keywords.remove(link)
            self._record(undo)

    # ----------------------------------------------------------
    # Audit & Health
    # ----------------------------------------------------------

    async def add_audit_entry(self, entry: AuditEntry) -> None:
        self.audit_entries.append(entry)

    async def health_check(self) -> dict:
        return {
            'status': 'healthy',
            'backend': 'memory',
            'items': len(self.items),
            'categories': len(self.categories),
            'keywords': len(self.keywords),
        }
