"""
Quiz Item Ingestion — Bulk Ingestion Orchestrator

Bridges a bulk request → database writes.
Responsibilities:
  1. Per-item shape validation
  2. Category / keyword resolve-or-create (TaxonomyResolver)
  3. SimHash fingerprint + fuzzy bucket per item
  4. Near-duplicate detection against the store and the current batch
  5. Staged inserts of items and their keyword associations
  6. Transaction boundaries (one per batch, one savepoint per item)
  7. Report aggregation with index-attributed errors
  8. Best-effort audit record per batch
"""
from __future__ import annotations
import argparse
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from audit import AuditSink, LoggingAuditSink
from duplicate_detector import DEFAULT_HAMMING_THRESHOLD, DuplicateDetector, DuplicateMatch
from errors import IngestionCancelled, PersistenceError, TaxonomyError, ValidationError
from models import (
    AddItemRequest, AuditAction, BatchFailure, BulkIngestReport, BulkIngestRequest,
    Item, ItemError, ItemRequest, ItemStatus, KeywordRequest, name_key,
)
from repository import InMemoryRepository, ItemRepository
from simhash import fingerprint, format_signature
from taxonomy_resolver import TaxonomyResolver

logger = logging.getLogger(__name__)

# ============================================================
# Configuration
# ============================================================

@dataclass
class IngestionConfig:
    """Tunable parameters for ingestion behavior."""
    # Max Hamming distance (of 64 bits) still treated as a near-duplicate
    hamming_threshold: int = DEFAULT_HAMMING_THRESHOLD

    # Field limits (match the column sizes in asyncpg_repository.SCHEMA_SQL)
    max_question_length: int = 1000
    max_answer_length: int = 500
    max_incorrect_answers: int = 4
    max_explanation_length: int = 2000
    max_source_length: int = 50
    max_keywords_per_item: int = 50
    max_category_length: int = 100
    max_keyword_length: int = 30

    # Emit one audit record per successful batch that created items
    audit_enabled: bool = True


DEFAULT_CONFIG = IngestionConfig()

BULK_CREATE_FAILED = 'Items.BulkCreateFailed'
BULK_CREATE_CANCELLED = 'Items.BulkCreateCancelled'

# ============================================================
# Item Validation
# ============================================================

def validate_item(req: ItemRequest, config: IngestionConfig = DEFAULT_CONFIG) -> None:
    """Raise ValidationError listing every shape problem of one item."""
    problems: list[str] = []

    if not (req.question or '').strip():
        problems.append('Question is required')
    elif len(req.question) > config.max_question_length:
        problems.append(f'Question must not exceed {config.max_question_length} characters')

    if not (req.correct_answer or '').strip():
        problems.append('CorrectAnswer is required')
    elif len(req.correct_answer) > config.max_answer_length:
        problems.append(f'CorrectAnswer must not exceed {config.max_answer_length} characters')

    if len(req.incorrect_answers) > config.max_incorrect_answers:
        problems.append(
            f'IncorrectAnswers must have between 0 and {config.max_incorrect_answers} answers')
    if any(len(a) > config.max_answer_length for a in req.incorrect_answers):
        problems.append(
            f'Each incorrect answer must not exceed {config.max_answer_length} characters')

    if req.explanation and len(req.explanation) > config.max_explanation_length:
        problems.append(
            f'Explanation must not exceed {config.max_explanation_length} characters')
    if req.source and len(req.source) > config.max_source_length:
        problems.append(f'Source must not exceed {config.max_source_length} characters')
    if req.keywords and len(req.keywords) > config.max_keywords_per_item:
        problems.append(
            f'Cannot assign more than {config.max_keywords_per_item} keywords to an item')

    if problems:
        raise ValidationError('; '.join(problems), code='Item.Invalid')


def unique_keywords(keywords: Optional[list[KeywordRequest]]) -> list[KeywordRequest]:
    """Drop repeated keyword names (case-insensitive), keeping the first."""
    seen: set[str] = set()
    result = []
    for kw in keywords or []:
        key = name_key(kw.name)
        if key in seen:
            continue
        seen.add(key)
        result.append(kw)
    return result

# ============================================================
# Outcomes
# ============================================================

@dataclass
class ItemOutcome:
    """Result of one item: created, duplicate, or failed (never raised)."""
    index: int
    question: str
    status: ItemStatus
    item: Optional[Item] = None
    message: Optional[str] = None
    duplicate_of: Optional[DuplicateMatch] = None

    @classmethod
    def created(cls, index: int, item: Item, message: Optional[str] = None) -> ItemOutcome:
        return cls(index=index, question=item.question, status=ItemStatus.CREATED,
                   item=item, message=message)

    @classmethod
    def duplicate(cls, index: int, question: str, match: DuplicateMatch) -> ItemOutcome:
        return cls(index=index, question=question, status=ItemStatus.DUPLICATE,
                   duplicate_of=match)

    @classmethod
    def failed(cls, index: int, question: str, message: str) -> ItemOutcome:
        return cls(index=index, question=question, status=ItemStatus.FAILED, message=message)


@dataclass
class IngestionOutcome:
    """Either a report (batch ran to completion) or a batch-level failure."""
    report: Optional[BulkIngestReport] = None
    failure: Optional[BatchFailure] = None
    items: list[ItemOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.failure is None


def build_report(total: int, outcomes: list[ItemOutcome]) -> BulkIngestReport:
    report = BulkIngestReport(total_requested=total)
    for outcome in outcomes:
        if outcome.status is ItemStatus.CREATED:
            report.created_count += 1
            report.created_item_ids.append(outcome.item.id)
        elif outcome.status is ItemStatus.DUPLICATE:
            report.duplicate_count += 1
            report.duplicate_questions.append(outcome.question)
        else:
            report.failed_count += 1
            report.errors.append(ItemError(
                index=outcome.index,
                question=outcome.question,
                message=outcome.message or 'Unknown error',
            ))
    return report

# ============================================================
# Main Ingestion Orchestrator
# ============================================================

class BulkIngestionOrchestrator:
    """
    Drives the per-item pipeline for a batch:
      validate → resolve taxonomy → fingerprint → duplicate check → stage insert
    Items run sequentially so item i sees items 0..i-1 of the same batch.
    """

    def __init__(
        self,
        repo: ItemRepository,
        config: IngestionConfig = DEFAULT_CONFIG,
        audit: Optional[AuditSink] = None,
    ):
        self.repo = repo
        self.config = config
        self.audit = audit or LoggingAuditSink()
        self.resolver = TaxonomyResolver(
            repo,
            category_max_length=config.max_category_length,
            keyword_max_length=config.max_keyword_length,
        )
        self.detector = DuplicateDetector(repo, threshold=config.hamming_threshold)

    # ----------------------------------------------------------
    # Public API
    # ----------------------------------------------------------

    async def ingest(
        self,
        requester_id: str,
        is_admin: bool,
        request: BulkIngestRequest,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> IngestionOutcome:
        """
        Ingest a batch of items.

        Args:
            requester_id: owner of created items and taxonomy entries
            is_admin: whether the requester may use global categories
            request: items plus the batch-wide visibility flag
            cancel_event: checked between items; when set the batch is
                          rolled back and a cancellation failure returned

        Returns:
            IngestionOutcome with a report, or a batch-level failure when the
            store failed mid-transaction or the batch was cancelled.
        """
        total = len(request.items)
        logger.info(
            f"[ingest] user={requester_id} admin={is_admin} items={total} "
            f"private={request.is_private} transactional={self.repo.supports_transactions}")

        outcomes: list[ItemOutcome] = []
        try:
            if self.repo.supports_transactions:
                async with self.repo.transaction():
                    await self._ingest_items(
                        requester_id, is_admin, request, outcomes, cancel_event)
            else:
                await self._ingest_items(
                    requester_id, is_admin, request, outcomes, cancel_event)
        except IngestionCancelled as e:
            persisted = 0 if self.repo.supports_transactions else sum(
                1 for o in outcomes if o.status is ItemStatus.CREATED)
            logger.warning(f"[ingest] user={requester_id} cancelled: {e} (persisted={persisted})")
            return IngestionOutcome(
                failure=BatchFailure(
                    code=BULK_CREATE_CANCELLED,
                    message=f'{e}; {persisted} items were persisted before cancellation',
                ),
                items=outcomes,
            )
        except PersistenceError as e:
            # Only reachable in transactional mode; everything was rolled back
            logger.exception(f"[ingest] user={requester_id} batch rolled back")
            return IngestionOutcome(
                failure=BatchFailure(
                    code=BULK_CREATE_FAILED, message=f'Failed to create items: {e}'),
                items=outcomes,
            )

        report = build_report(total, outcomes)
        logger.info(
            f"[ingest] user={requester_id} requested={report.total_requested} "
            f"created={report.created_count} duplicates={report.duplicate_count} "
            f"failed={report.failed_count}")

        if report.created_count and self.config.audit_enabled:
            await self._emit_audit(requester_id, request, report)

        return IngestionOutcome(report=report, items=outcomes)

    async def ingest_one(
        self,
        requester_id: str,
        is_admin: bool,
        request: AddItemRequest,
    ) -> tuple[ItemOutcome, Optional[BatchFailure]]:
        """Convenience: ingest one item through the same pipeline."""
        batch = BulkIngestRequest(is_private=request.is_private, items=[request])
        outcome = await self.ingest(requester_id, is_admin, batch)
        if outcome.failure is not None:
            failed = ItemOutcome.failed(0, request.question, outcome.failure.message)
            return failed, outcome.failure
        return outcome.items[0], None

    # ----------------------------------------------------------
    # Internal Pipeline
    # ----------------------------------------------------------

    async def _ingest_items(
        self,
        requester_id: str,
        is_admin: bool,
        request: BulkIngestRequest,
        outcomes: list[ItemOutcome],
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        accepted: list[Item] = []
        total = len(request.items)

        for index, item_req in enumerate(request.items):
            if cancel_event is not None and cancel_event.is_set():
                raise IngestionCancelled(f'Cancelled after {index} of {total} items')

            outcome = await self._process_item(
                index, item_req, requester_id, is_admin, request.is_private, accepted)
            outcomes.append(outcome)

            if outcome.status is ItemStatus.CREATED:
                accepted.append(outcome.item)
            elif outcome.status is ItemStatus.DUPLICATE:
                logger.info(
                    f"Duplicate skipped at index {index}: {item_req.question!r} "
                    f"(matches {outcome.duplicate_of.matched_question!r}, "
                    f"distance={outcome.duplicate_of.distance})")
            else:
                logger.warning(f"Item {index} failed: {outcome.message}")

    async def _process_item(
        self,
        index: int,
        item_req: ItemRequest,
        requester_id: str,
        is_admin: bool,
        is_private: bool,
        accepted: list[Item],
    ) -> ItemOutcome:
        """Run one item; validation/conflict errors become a failed outcome."""
        if self.repo.supports_transactions:
            try:
                # Savepoint: a failed item leaves no taxonomy rows behind
                async with self.repo.transaction():
                    return await self._stage_item(
                        index, item_req, requester_id, is_admin, is_private, accepted)
            except TaxonomyError as e:
                return ItemOutcome.failed(index, item_req.question, str(e))

        try:
            return await self._stage_item(
                index, item_req, requester_id, is_admin, is_private, accepted)
        except TaxonomyError as e:
            return ItemOutcome.failed(index, item_req.question, str(e))
        except PersistenceError as e:
            # No batch transaction to roll back: earlier items stay committed
            logger.error(f"Item {index} could not be persisted: {e}")
            return ItemOutcome.failed(index, item_req.question, f'Failed to persist item: {e}')

    async def _stage_item(
        self,
        index: int,
        item_req: ItemRequest,
        requester_id: str,
        is_admin: bool,
        is_private: bool,
        accepted: list[Item],
    ) -> ItemOutcome:
        # --- Step 1: Shape validation ---
        validate_item(item_req, self.config)

        # --- Step 2: Resolve category & keywords ---
        category = await self.resolver.resolve_category(
            item_req.category, is_private, requester_id, is_admin)

        keyword_ids = []
        for kw in unique_keywords(item_req.keywords):
            keyword = await self.resolver.resolve_keyword(kw.name, kw.is_private, requester_id)
            if keyword.id not in keyword_ids:
                keyword_ids.append(keyword.id)

        # --- Step 3: Fingerprint ---
        signature, bucket = fingerprint(item_req.fingerprint_text())

        # --- Step 4: Duplicate check (store + this batch) ---
        match = await self.detector.find_duplicate(
            category.id, item_req.question, signature, bucket, accepted)
        if match is not None:
            return ItemOutcome.duplicate(index, item_req.question, match)

        # --- Step 5: Stage insert ---
        item = Item(
            category_id=category.id,
            is_private=is_private,
            question=item_req.question,
            correct_answer=item_req.correct_answer,
            incorrect_answers=list(item_req.incorrect_answers),
            explanation=item_req.explanation or '',
            source=item_req.source,
            fuzzy_signature=format_signature(signature),
            fuzzy_bucket=bucket,
            created_by=requester_id,
        )
        item = await self.repo.create_item(item)
        if keyword_ids:
            try:
                await self.repo.add_item_keywords(item.id, keyword_ids)
                await self.repo.ensure_category_keywords(category.id, keyword_ids)
            except PersistenceError as e:
                if self.repo.supports_transactions:
                    raise
                # The item row is already committed, so it counts as created
                logger.warning(f"Item {index} ({item.id}) created without keyword links: {e}")
                return ItemOutcome.created(
                    index, item, message=f'Keyword links were not saved: {e}')

        return ItemOutcome.created(index, item)

    # ----------------------------------------------------------
    # Audit
    # ----------------------------------------------------------

    async def _emit_audit(
        self, requester_id: str, request: BulkIngestRequest, report: BulkIngestReport
    ) -> None:
        try:
            await self.audit.log(
                AuditAction.ITEMS_BULK_CREATED,
                user_id=requester_id,
                metadata={
                    'total_requested': str(report.total_requested),
                    'created': str(report.created_count),
                    'duplicates': str(report.duplicate_count),
                    'failed': str(report.failed_count),
                    'is_private': str(request.is_private).lower(),
                },
            )
        except Exception:
            logger.exception("Audit sink raised; ignoring")

# ============================================================
# JSON Import / CLI Entry Point
# ============================================================

async def ingest_json_file(
    path: str | Path,
    requester_id: str,
    is_admin: bool = False,
    repo: Optional[ItemRepository] = None,
    config: Optional[IngestionConfig] = None,
    audit: Optional[AuditSink] = None,
) -> IngestionOutcome:
    """
    Ingest a BulkIngestRequest stored as a JSON document.
    Convenience function for seeding and offline imports.
    """
    if repo is None:
        repo = InMemoryRepository()
    request = BulkIngestRequest.model_validate_json(Path(path).read_text(encoding='utf-8'))
    orchestrator = BulkIngestionOrchestrator(repo, config or DEFAULT_CONFIG, audit)
    logger.info(f"Ingesting {len(request.items)} items from {path}")
    return await orchestrator.ingest(requester_id, is_admin, request)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ingestion_orchestrator', description='Bulk-import quiz items from JSON')
    parser.add_argument('path', help='JSON file holding {"isPrivate": ..., "items": [...]}')
    parser.add_argument('--user', default='cli', help='Requester id recorded as owner')
    parser.add_argument('--admin', action='store_true', help='Allow global categories')
    parser.add_argument('--database', action='store_true',
                        help='Write to PostgreSQL (DATABASE_URL) instead of memory')
    return parser


async def _main(argv: Optional[list[str]] = None) -> int:
    from config import get_settings
    from logging_config import configure_logging

    args = build_arg_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)
    config = IngestionConfig(hamming_threshold=settings.duplicate_hamming_threshold)

    if not args.database:
        outcome = await ingest_json_file(args.path, args.user, args.admin, config=config)
    else:
        from asyncpg_repository import open_repository
        from audit import RepositoryAuditSink

        db, repo = await open_repository(settings)
        try:
            outcome = await ingest_json_file(
                args.path, args.user, args.admin, repo=repo, config=config,
                audit=RepositoryAuditSink(repo))
        finally:
            await db.close()

    if outcome.failure is not None:
        print(outcome.failure.model_dump_json(by_alias=True, indent=2))
        return 1
    print(outcome.report.model_dump_json(by_alias=True, indent=2))
    return 0


if __name__ == '__main__':
    raise SystemExit(asyncio.run(_main()))
