import pytest

from models import Category, Item, ItemRequest, KeywordRequest
from repository import InMemoryRepository
from simhash import bucket, format_signature


@pytest.fixture
def repo():
    return InMemoryRepository()


def make_request(question, category="Math", answer="4", incorrect=None, keywords=None, **extra):
    return ItemRequest(
        category=category,
        question=question,
        correct_answer=answer,
        incorrect_answers=incorrect if incorrect is not None else ["1", "2", "3"],
        keywords=[KeywordRequest(name=k) for k in keywords] if keywords else None,
        **extra,
    )


def make_item(category: Category, question: str, signature: int, created_by="seed"):
    return Item(
        category_id=category.id,
        question=question,
        correct_answer="x",
        fuzzy_signature=format_signature(signature),
        fuzzy_bucket=bucket(signature),
        created_by=created_by,
    )
