"""
Quiz Item Ingestion — Taxonomy Resolver

Resolve-or-create for categories and keywords.

Namespace policy (one table per kind, unique on lower(name)):
  - global request, name held by a global entity   → reuse it
  - global request, name held by a private entity  → ConflictError
  - private request, name held by a global entity  → reuse the global entity
  - private request, name held privately by caller → reuse it
  - private request, name held privately by other  → ConflictError
  - name absent                                    → create, owned by caller

Creation is optimistic: two writers may both see "absent"; the unique index
rejects the loser, which re-reads and applies the policy to the winner's row.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from errors import ConflictError, PersistenceError, UniqueViolation, ValidationError
from models import Category, Keyword, TaxonomyKind
from repository import ItemRepository

logger = logging.getLogger(__name__)

TaxonomyEntity = Union[Category, Keyword]

# Attempts at lookup-then-create before giving up on a name
MAX_RESOLVE_ATTEMPTS = 2


@dataclass
class _KindOps:
    label: str
    max_length: int
    admin_only_global: bool
    find: Callable[[str], Awaitable[Optional[TaxonomyEntity]]]
    create: Callable[[TaxonomyEntity], Awaitable[TaxonomyEntity]]
    model: type


class TaxonomyResolver:
    """Race-safe resolve-or-create over an ItemRepository."""

    def __init__(
        self,
        repo: ItemRepository,
        category_max_length: int = 100,
        keyword_max_length: int = 30,
    ):
        self.repo = repo
        self._ops = {
            TaxonomyKind.CATEGORY: _KindOps(
                label='Category',
                max_length=category_max_length,
                admin_only_global=True,
                find=repo.find_category_by_name,
                create=repo.create_category,
                model=Category,
            ),
            TaxonomyKind.KEYWORD: _KindOps(
                label='Keyword',
                max_length=keyword_max_length,
                admin_only_global=False,
                find=repo.find_keyword_by_name,
                create=repo.create_keyword,
                model=Keyword,
            ),
        }

    # ----------------------------------------------------------
    # Public API
    # ----------------------------------------------------------

    async def resolve_category(
        self, name: str, is_private: bool, requester_id: str, is_admin: bool
    ) -> Category:
        return await self.resolve_or_create(
            TaxonomyKind.CATEGORY, name, is_private, requester_id, is_admin)

    async def resolve_keyword(
        self, name: str, is_private: bool, requester_id: str
    ) -> Keyword:
        return await self.resolve_or_create(
            TaxonomyKind.KEYWORD, name, is_private, requester_id, is_admin=False)

    async def resolve_or_create(
        self,
        kind: TaxonomyKind,
        name: str,
        is_private: bool,
        requester_id: str,
        is_admin: bool,
    ) -> TaxonomyEntity:
        """
        Returns the canonical entity for ``name``.

        Raises:
            ValidationError: empty/too long name, or non-admin asking for a
                global category.
            ConflictError: the name is claimed in an incompatible namespace.
            PersistenceError: store failure other than the uniqueness race.
        """
        ops = self._ops[kind]
        trimmed = (name or '').strip()
        if not trimmed:
            raise ValidationError(
                f'{ops.label} name cannot be empty', code=f'{ops.label}.InvalidName')
        if len(trimmed) > ops.max_length:
            raise ValidationError(
                f'{ops.label} name must not exceed {ops.max_length} characters',
                code=f'{ops.label}.InvalidName')
        if not is_private and ops.admin_only_global and not is_admin:
            raise ValidationError(
                f'Only administrators can create or use global {ops.label.lower()} names',
                code=f'{ops.label}.AdminOnly')

        for attempt in range(1, MAX_RESOLVE_ATTEMPTS + 1):
            existing = await ops.find(trimmed)
            if existing is not None:
                return self._apply_policy(ops, existing, trimmed, is_private, requester_id)

            candidate = ops.model(
                name=trimmed, is_private=is_private, created_by=requester_id)
            try:
                # Savepoint: a rejected insert must not poison the outer transaction
                if self.repo.supports_transactions:
                    async with self.repo.transaction():
                        created = await ops.create(candidate)
                else:
                    created = await ops.create(candidate)
            except UniqueViolation:
                logger.info(
                    f"{ops.label} '{trimmed}' created concurrently; "
                    f"retrying as lookup (attempt {attempt})")
                continue

            logger.info(
                f"Created {'private' if is_private else 'global'} "
                f"{ops.label.lower()}: {trimmed} (owner={requester_id})")
            return created

        raise PersistenceError(
            f"{ops.label} '{trimmed}' was rejected as a duplicate but could not be read back",
            code=f'{ops.label}.ResolveFailed')

    # ----------------------------------------------------------
    # Namespace Policy
    # ----------------------------------------------------------

    @staticmethod
    def _apply_policy(
        ops: _KindOps,
        existing: TaxonomyEntity,
        name: str,
        is_private: bool,
        requester_id: str,
    ) -> TaxonomyEntity:
        if not is_private:
            if existing.is_private:
                raise ConflictError(
                    f"{ops.label} name '{name}' is already used by a private {ops.label.lower()}",
                    code=f'{ops.label}.NameConflict')
            return existing

        if not existing.is_private:
            return existing
        if existing.created_by != requester_id:
            raise ConflictError(
                f"{ops.label} name '{name}' is already used by another user",
                code=f'{ops.label}.NameConflict')
        return existing
