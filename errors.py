"""
Quiz Item Ingestion — Error Taxonomy

Validation and conflict errors are per-item outcomes; persistence errors and
cancellation abort the batch. Duplicates are not errors at all.
"""
from __future__ import annotations

from typing import Optional


class IngestionError(Exception):
    """Base for everything raised by the ingestion core."""

    code: str = "Ingestion.Error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def __str__(self) -> str:
        return self.message


class TaxonomyError(IngestionError):
    """Category/keyword resolution failed for one item."""


class ValidationError(TaxonomyError):
    code = "Validation"


class ConflictError(TaxonomyError):
    code = "Conflict"


class PersistenceError(IngestionError):
    """Unexpected store failure (not the expected uniqueness race)."""

    code = "Persistence"


class UniqueViolation(PersistenceError):
    """Store rejected an insert because of a unique index."""

    code = "Persistence.UniqueViolation"

    def __init__(self, message: str, constraint: Optional[str] = None):
        super().__init__(message)
        self.constraint = constraint


class IngestionCancelled(IngestionError):
    code = "Cancelled"
