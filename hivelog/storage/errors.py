from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class RowCountMismatch(Exception):
    """A scoped write affected more rows than the single one it targets.

    Raised inside the transaction so the write is rolled back.
    """

    def __init__(self, table: str, affected: int):
        super().__init__(f"{table}: scoped write affected {affected} rows")
        self.table = table
        self.affected = affected


__all__ = ["ConstraintViolation", "RowCountMismatch"]
