from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from datetime import timedelta
from typing import Any, Optional, Union

from authcore.logging import get_logger
from authcore.service.clock import Clock, SystemClock
from authcore.service.errors import AuthFailure, FailureKind
from authcore.storage.models import AccessClaims

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _decode_json_segment(segment: str) -> Optional[dict[str, Any]]:
    try:
        value = json.loads(_decode_segment(segment))
    except (binascii.Error, ValueError):
        # UnicodeDecodeError and JSONDecodeError are both ValueErrors
        return None
    return value if isinstance(value, dict) else None


class AccessTokenCodec:
    """Signs and verifies short-lived HS256 access tokens.

    Tokens carry ``sub`` (account id), ``email``, ``iat`` and ``exp``. The
    codec holds no mutable state after construction and never touches a
    store, so one instance is shared across request handlers.
    """

    def __init__(
        self,
        secret: str,
        access_ttl_ms: int,
        clock: Optional[Clock] = None,
        *,
        leeway_seconds: int = 0,
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._secret = secret.encode("utf-8")
        self.access_ttl_ms = access_ttl_ms
        self.clock = clock or SystemClock()
        self.leeway_seconds = leeway_seconds

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode("utf-8"), hashlib.sha256)
        return _encode_segment(digest.digest())

    def issue(self, account_id: str, email: str) -> str:
        now = self.clock.now()
        payload = {
            "sub": account_id,
            "email": email,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(milliseconds=self.access_ttl_ms)).timestamp()),
        }
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: Optional[str]) -> Union[AccessClaims, AuthFailure]:
        result = self._check(token)
        if isinstance(result, AuthFailure):
            logger.info("access_token_rejected", kind=result.kind.value)
        return result

    def _check(self, token: Optional[str]) -> Union[AccessClaims, AuthFailure]:
        if not token or not token.strip():
            return AuthFailure(FailureKind.TOKEN_CLAIMS_EMPTY, "token is empty")

        parts = token.strip().split(".")
        if len(parts) != 3:
            return AuthFailure(FailureKind.MALFORMED, "token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        header = _decode_json_segment(header_b64)
        if header is None:
            return AuthFailure(FailureKind.MALFORMED, "token header is not valid JSON")
        if header.get("alg") != "HS256" or header.get("typ", "JWT") != "JWT":
            return AuthFailure(
                FailureKind.TOKEN_FORMAT_UNSUPPORTED,
                "unsupported token format",
                {"alg": header.get("alg")},
            )

        payload = _decode_json_segment(payload_b64)
        if payload is None:
            return AuthFailure(FailureKind.MALFORMED, "token payload is not valid JSON")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode("utf-8"), sig_b64.encode("utf-8")):
            return AuthFailure(FailureKind.SIGNATURE_INVALID, "signature mismatch")

        sub = payload.get("sub")
        email = payload.get("email")
        exp = payload.get("exp")
        iat = payload.get("iat", 0)
        if not isinstance(sub, str) or not sub or not isinstance(email, str):
            return AuthFailure(FailureKind.TOKEN_CLAIMS_EMPTY, "subject claims missing")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return AuthFailure(FailureKind.TOKEN_CLAIMS_EMPTY, "exp claim missing")
        if isinstance(iat, bool) or not isinstance(iat, (int, float)):
            iat = 0

        if self.clock.now().timestamp() >= exp + self.leeway_seconds:
            return AuthFailure(FailureKind.TOKEN_EXPIRED, "token expired")

        return AccessClaims(
            account_id=sub, email=email, issued_at=int(iat), expires_at=int(exp)
        )
