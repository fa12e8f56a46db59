import asyncio
import logging
from uuid import uuid4

from audit import LoggingAuditSink, RepositoryAuditSink
from models import AuditAction


class BrokenAuditRepository:
    async def add_audit_entry(self, entry):
        raise RuntimeError("audit table missing")


def test_repository_sink_persists_entry(repo):
    entity = uuid4()
    sink = RepositoryAuditSink(repo)
    asyncio.run(sink.log(AuditAction.ITEMS_BULK_CREATED, user_id="alice",
                         entity_id=entity, metadata={"created": 3}))

    entry = repo.audit_entries[0]
    assert entry.action is AuditAction.ITEMS_BULK_CREATED
    assert entry.user_id == "alice"
    assert entry.entity_id == entity
    assert entry.metadata == {"created": "3"}


def test_repository_sink_swallows_failures(caplog):
    sink = RepositoryAuditSink(BrokenAuditRepository())
    with caplog.at_level(logging.ERROR, logger="audit"):
        asyncio.run(sink.log(AuditAction.ITEM_CREATED, user_id="alice"))
    assert "Failed to log audit entry" in caplog.text


def test_logging_sink_writes_record(caplog):
    with caplog.at_level(logging.INFO, logger="audit"):
        asyncio.run(LoggingAuditSink().log(AuditAction.ITEM_CREATED, user_id="bob"))
    assert "action=item_created" in caplog.text
    assert "user=bob" in caplog.text
