import asyncio

import pytest

from errors import ConflictError, PersistenceError, ValidationError
from models import Category, Keyword
from repository import InMemoryRepository
from taxonomy_resolver import TaxonomyResolver


class RacingRepository(InMemoryRepository):
    """A concurrent writer commits ``winner`` right after our first lookup."""

    def __init__(self, winner, **kwargs):
        super().__init__(**kwargs)
        self.winner = winner
        self.lookups = 0

    async def find_category_by_name(self, name):
        self.lookups += 1
        if self.lookups == 1:
            await super().create_category(self.winner)
            return None
        return await super().find_category_by_name(name)


class YieldingRepository(InMemoryRepository):
    async def find_category_by_name(self, name):
        found = await super().find_category_by_name(name)
        await asyncio.sleep(0)
        return found


class BrokenRepository(InMemoryRepository):
    async def create_keyword(self, keyword):
        raise PersistenceError("connection reset")


def test_empty_name_is_rejected(repo):
    resolver = TaxonomyResolver(repo)
    with pytest.raises(ValidationError) as exc:
        asyncio.run(resolver.resolve_category("   ", True, "alice", False))
    assert exc.value.code == "Category.InvalidName"


def test_name_too_long_is_rejected(repo):
    resolver = TaxonomyResolver(repo, keyword_max_length=5)
    with pytest.raises(ValidationError) as exc:
        asyncio.run(resolver.resolve_keyword("toolong", True, "alice"))
    assert exc.value.code == "Keyword.InvalidName"


def test_global_category_requires_admin(repo):
    resolver = TaxonomyResolver(repo)
    with pytest.raises(ValidationError) as exc:
        asyncio.run(resolver.resolve_category("Math", False, "alice", False))
    assert exc.value.code == "Category.AdminOnly"
    assert not repo.categories


def test_global_keyword_needs_no_admin(repo):
    resolver = TaxonomyResolver(repo)
    keyword = asyncio.run(resolver.resolve_keyword("algebra", False, "alice"))
    assert not keyword.is_private
    assert keyword.created_by == "alice"


def test_resolve_is_idempotent_and_case_insensitive(repo):
    resolver = TaxonomyResolver(repo)

    async def run():
        first = await resolver.resolve_category("Math", True, "alice", False)
        second = await resolver.resolve_category("  mATH ", True, "alice", False)
        return first, second

    first, second = asyncio.run(run())
    assert first.id == second.id
    assert first.name == "Math"
    assert len(repo.categories) == 1


def test_private_request_reuses_global(repo):
    resolver = TaxonomyResolver(repo)

    async def run():
        shared = await resolver.resolve_category("Science", False, "admin", True)
        mine = await resolver.resolve_category("science", True, "alice", False)
        return shared, mine

    shared, mine = asyncio.run(run())
    assert mine.id == shared.id
    assert not mine.is_private


def test_global_request_conflicts_with_private(repo):
    resolver = TaxonomyResolver(repo)
    asyncio.run(resolver.resolve_category("Secret", True, "alice", False))
    with pytest.raises(ConflictError) as exc:
        asyncio.run(resolver.resolve_category("Secret", False, "admin", True))
    assert exc.value.code == "Category.NameConflict"


def test_private_name_of_another_user_conflicts(repo):
    resolver = TaxonomyResolver(repo)
    asyncio.run(resolver.resolve_keyword("mine", True, "alice"))
    with pytest.raises(ConflictError) as exc:
        asyncio.run(resolver.resolve_keyword("MINE", True, "bob"))
    assert exc.value.code == "Keyword.NameConflict"


def test_lost_race_returns_winner():
    winner = Category(name="Math", is_private=True, created_by="alice")
    repo = RacingRepository(winner)
    resolver = TaxonomyResolver(repo)

    resolved = asyncio.run(resolver.resolve_category("math", True, "alice", False))
    assert resolved.id == winner.id
    assert len(repo.categories) == 1
    assert repo.lookups == 2


def test_lost_race_without_transactions_returns_winner():
    winner = Category(name="Math", is_private=False, created_by="admin")
    repo = RacingRepository(winner, supports_transactions=False)
    resolver = TaxonomyResolver(repo)

    resolved = asyncio.run(resolver.resolve_category("Math", True, "alice", False))
    assert resolved.id == winner.id


def test_lost_race_against_other_owner_conflicts():
    winner = Category(name="Math", is_private=True, created_by="bob")
    repo = RacingRepository(winner)
    resolver = TaxonomyResolver(repo)

    with pytest.raises(ConflictError):
        asyncio.run(resolver.resolve_category("Math", True, "alice", False))


def test_concurrent_resolvers_converge_on_one_row():
    repo = YieldingRepository()
    resolver = TaxonomyResolver(repo)

    async def run():
        return await asyncio.gather(
            resolver.resolve_category("Physics", True, "alice", False),
            resolver.resolve_category("physics", True, "alice", False),
        )

    first, second = asyncio.run(run())
    assert first.id == second.id
    assert len(repo.categories) == 1
    assert repo.rollbacks == 1


def test_store_failure_propagates():
    resolver = TaxonomyResolver(BrokenRepository())
    with pytest.raises(PersistenceError):
        asyncio.run(resolver.resolve_keyword("algebra", True, "alice"))


def test_resolve_or_create_dispatches_on_kind(repo):
    from models import TaxonomyKind

    resolver = TaxonomyResolver(repo)
    keyword = asyncio.run(resolver.resolve_or_create(
        TaxonomyKind.KEYWORD, "calculus", True, "alice", False))
    assert isinstance(keyword, Keyword)
    assert list(repo.keywords) == [keyword.id]
