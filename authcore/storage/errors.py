from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for failures raised by account and credential stores."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """A uniqueness or foreign-key constraint rejected the write.

    ``detail["field"]`` names the offending column when the store knows it
    (``email``, ``provider_subject_id``, ``token_value``, ``account_id``).
    """

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class StoreUnavailable(StoreError):
    """The backing database could not be reached or aborted the operation."""


__all__ = ["StoreError", "ConstraintViolation", "StoreUnavailable"]
