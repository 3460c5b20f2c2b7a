from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for persistence failures surfaced by a store backend."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """A uniqueness or foreign-key constraint rejected the write."""


class StoreUnavailable(StoreError):
    """The backing database could not be reached or the statement failed."""


__all__ = ["StoreError", "ConstraintViolation", "StoreUnavailable"]
