from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StaleWriteError(Exception):
    """Raised when a compare-and-swap update sees a newer version than expected."""

    def __init__(self, record_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"stale write for {record_id}: expected v{expected_version}, found v{actual_version}"
        )
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version


__all__ = ["ConstraintViolation", "StaleWriteError"]
