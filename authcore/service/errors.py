from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    validation_error (400), unauthorized (401), not_found (404), conflict (409).
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class FailureKind(str, Enum):
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_MISMATCH = "TOKEN_MISMATCH"
    NOT_FOUND = "NOT_FOUND"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    MALFORMED = "MALFORMED"
    TOKEN_FORMAT_UNSUPPORTED = "TOKEN_FORMAT_UNSUPPORTED"
    TOKEN_CLAIMS_EMPTY = "TOKEN_CLAIMS_EMPTY"
    STORE_CONFLICT = "STORE_CONFLICT"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"


_AUTHENTICATION_KINDS = frozenset(
    {
        FailureKind.INVALID_TOKEN,
        FailureKind.TOKEN_REVOKED,
        FailureKind.TOKEN_EXPIRED,
        FailureKind.TOKEN_MISMATCH,
        FailureKind.SIGNATURE_INVALID,
        FailureKind.MALFORMED,
        FailureKind.TOKEN_FORMAT_UNSUPPORTED,
        FailureKind.TOKEN_CLAIMS_EMPTY,
    }
)

# Clients only ever see this for token failures; the kind goes to the log
GENERIC_AUTH_MESSAGE = "invalid or expired session"


@dataclass(frozen=True)
class AuthFailure:
    """Expected failure returned (not raised) by the auth core."""

    kind: FailureKind
    message: str = ""
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_authentication_failure(self) -> bool:
        return self.kind in _AUTHENTICATION_KINDS

    def to_service_error(self) -> ServiceError:
        if self.is_authentication_failure:
            return AuthenticationError(GENERIC_AUTH_MESSAGE)
        if self.kind == FailureKind.NOT_FOUND:
            return NotFoundError(self.message or "account not found")
        if self.kind == FailureKind.STORE_CONFLICT:
            return ConflictError(
                self.message or "identity conflicts with an existing account",
                detail=self.detail,
            )
        return ValidationError(
            self.message or "missing required field", detail=self.detail
        )


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "FailureKind",
    "AuthFailure",
    "GENERIC_AUTH_MESSAGE",
]
