from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class UnknownField(ValueError):
    """Raised when update_user is asked to change a field it does not own."""


__all__ = ["ConstraintViolation", "UnknownField"]
