"""
Quiz Item Ingestion — Core Pydantic Models
"""
from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def name_key(name: str) -> str:
    """Case-insensitive lookup key for category/keyword names."""
    return name.strip().lower()

# ============================================================
# Enums
# ============================================================

class AuditAction(str, Enum):
    ITEM_CREATED = "item_created"
    ITEMS_BULK_CREATED = "items_bulk_created"
    CATEGORY_CREATED = "category_created"
    KEYWORD_CREATED = "keyword_created"

class ItemStatus(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    FAILED = "failed"

class TaxonomyKind(str, Enum):
    CATEGORY = "category"
    KEYWORD = "keyword"

# ============================================================
# Core Domain Models
# ============================================================

class TaxonomyEntity(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    name: str
    is_private: bool = False
    created_by: str
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> str:
        return name_key(self.name)

class Category(TaxonomyEntity):
    pass

class Keyword(TaxonomyEntity):
    pass

class Item(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    category_id: UUID
    is_private: bool = False
    question: str
    correct_answer: str
    incorrect_answers: list[str] = Field(default_factory=list, max_length=4)
    explanation: str = ""
    source: Optional[str] = None
    fuzzy_signature: str   # 16 hex digits of the 64-bit SimHash
    fuzzy_bucket: int      # top 8 bits (0..255)
    created_by: str
    created_at: datetime = Field(default_factory=_utcnow)

class ItemKeyword(BaseModel):
    item_id: UUID
    keyword_id: UUID
    added_at: datetime = Field(default_factory=_utcnow)

class CategoryKeyword(BaseModel):
    category_id: UUID
    keyword_id: UUID
    created_at: datetime = Field(default_factory=_utcnow)

class AuditEntry(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    action: AuditAction
    user_id: Optional[str] = None
    entity_id: Optional[UUID] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

# ============================================================
# API Request / Response Models
# ============================================================

class _ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python; both accepted on input."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class KeywordRequest(_ApiModel):
    name: str
    is_private: bool = False

class ItemRequest(_ApiModel):
    category: str
    question: str
    correct_answer: str
    incorrect_answers: list[str] = Field(default_factory=list)
    explanation: Optional[str] = None
    source: Optional[str] = None
    keywords: Optional[list[KeywordRequest]] = None

    def fingerprint_text(self) -> str:
        """Text the SimHash is computed over: question, correct, incorrect answers."""
        return " ".join([self.question, self.correct_answer, *self.incorrect_answers])

class BulkIngestRequest(_ApiModel):
    is_private: bool = False
    items: list[ItemRequest] = Field(default_factory=list)

class AddItemRequest(ItemRequest):
    is_private: bool = False

class ItemError(_ApiModel):
    index: int
    question: str
    message: str

class BulkIngestReport(_ApiModel):
    total_requested: int = 0
    created_count: int = 0
    duplicate_count: int = 0
    failed_count: int = 0
    duplicate_questions: list[str] = Field(default_factory=list)
    errors: list[ItemError] = Field(default_factory=list)
    created_item_ids: list[UUID] = Field(default_factory=list)

class BatchFailure(_ApiModel):
    code: str
    message: str

class AddItemResponse(_ApiModel):
    status: ItemStatus
    item_id: Optional[UUID] = None
    message: Optional[str] = None

class HealthResponse(BaseModel):
    status: str
    components: dict[str, dict]
    version: str
    uptime_seconds: int
