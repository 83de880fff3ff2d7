from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a write would break ownership or uniqueness rules."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when a backing store (Redis, Postgres) cannot be reached."""


__all__ = ["ConstraintViolation", "StoreUnavailable"]
