from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CacheUnavailable(Exception):
    """Raised when the coordination store cannot complete an operation in time."""

    def __init__(self, operation: str, error: Optional[BaseException] = None):
        super().__init__(f"cache operation '{operation}' failed")
        self.operation = operation
        self.error = error


__all__ = ["ConstraintViolation", "CacheUnavailable"]
