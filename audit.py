"""
Quiz Item Ingestion — Audit Sink

Best-effort audit trail. A failing sink is logged and otherwise ignored:
auditing must never turn a successful ingestion into a failed one.
"""
from __future__ import annotations
import logging
from typing import Optional
from uuid import UUID

from models import AuditAction, AuditEntry
from repository import ItemRepository

logger = logging.getLogger(__name__)


class AuditSink:
    """Interface: ``log`` must never raise."""

    async def log(
        self,
        action: AuditAction,
        user_id: Optional[str] = None,
        entity_id: Optional[UUID] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> None:
        raise NotImplementedError


class LoggingAuditSink(AuditSink):
    """Writes audit records to the application log only."""

    async def log(self, action, user_id=None, entity_id=None, metadata=None) -> None:
        logger.info(
            f"[audit] action={action.value} user={user_id} entity={entity_id} "
            f"metadata={metadata or {}}")


class RepositoryAuditSink(AuditSink):
    """Persists audit records through the repository (audit table)."""

    def __init__(self, repo: ItemRepository):
        self.repo = repo

    async def log(self, action, user_id=None, entity_id=None, metadata=None) -> None:
        try:
            entry = AuditEntry(
                action=action,
                user_id=user_id,
                entity_id=entity_id,
                metadata={k: str(v) for k, v in (metadata or {}).items()},
            )
            await self.repo.add_audit_entry(entry)
        except Exception:
            logger.exception(f"Failed to log audit entry for action {action.value}")
