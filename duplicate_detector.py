"""
Quiz Item Ingestion — Duplicate Detector

Flags a candidate item as a near-duplicate of something already persisted in
the same category, or of an item accepted earlier in the same batch.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Iterable, Optional
from uuid import UUID

from models import Item
from repository import ItemRepository
from simhash import hamming_distance, normalize_text, parse_signature

logger = logging.getLogger(__name__)

DEFAULT_HAMMING_THRESHOLD = 3


@dataclass
class DuplicateMatch:
    """Which existing item a candidate collided with, and how."""
    matched_question: str
    matched_item_id: Optional[UUID]
    distance: int
    exact_text: bool
    in_batch: bool


def match_candidate(
    question: str,
    signature: int,
    candidate: Item,
    threshold: int = DEFAULT_HAMMING_THRESHOLD,
) -> Optional[tuple[int, bool]]:
    """Return (distance, exact_text) if ``candidate`` is a duplicate, else None."""
    distance = hamming_distance(signature, parse_signature(candidate.fuzzy_signature))
    exact = normalize_text(question) == normalize_text(candidate.question)
    if exact or distance <= threshold:
        return distance, exact
    return None


class DuplicateDetector:
    def __init__(
        self,
        repo: ItemRepository,
        threshold: int = DEFAULT_HAMMING_THRESHOLD,
    ):
        self.repo = repo
        self.threshold = threshold

    async def find_duplicate(
        self,
        category_id: UUID,
        question: str,
        signature: int,
        bucket: int,
        accepted_in_batch: Iterable[Item] = (),
    ) -> Optional[DuplicateMatch]:
        """
        Check items already accepted in this batch (same category, any bucket),
        then persisted items (same category, same bucket or same question).

        Batch items come first: inside the batch transaction they are also
        visible to the store query.
        """
        accepted_ids = set()
        for candidate in accepted_in_batch:
            if candidate.category_id != category_id:
                continue
            accepted_ids.add(candidate.id)
            hit = match_candidate(question, signature, candidate, self.threshold)
            if hit:
                return DuplicateMatch(
                    matched_question=candidate.question,
                    matched_item_id=candidate.id,
                    distance=hit[0],
                    exact_text=hit[1],
                    in_batch=True,
                )

        persisted = await self.repo.find_duplicate_candidates(category_id, bucket, question)
        for candidate in persisted:
            if candidate.id in accepted_ids:
                continue
            hit = match_candidate(question, signature, candidate, self.threshold)
            if hit:
                return DuplicateMatch(
                    matched_question=candidate.question,
                    matched_item_id=candidate.id,
                    distance=hit[0],
                    exact_text=hit[1],
                    in_batch=False,
                )
        return None

    async def is_duplicate(
        self,
        category_id: UUID,
        question: str,
        signature: int,
        bucket: int,
        accepted_in_batch: Iterable[Item] = (),
    ) -> tuple[bool, Optional[str]]:
        match = await self.find_duplicate(
            category_id, question, signature, bucket, accepted_in_batch)
        if match is None:
            return False, None
        return True, match.matched_question
