from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Mapping, Optional, Protocol, Union
from urllib.parse import urlencode

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.clock import Clock, SystemClock
from authcore.service.errors import AuthFailure, FailureKind
from authcore.service.federation import (
    PROFILE_EXTRACTORS,
    IdentityReconciler,
    KakaoProfileExtractor,
)
from authcore.service.tokens import AccessTokenCodec
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    Account,
    AccountView,
    Provider,
    RefreshCredential,
    Role,
    TokenPair,
)

logger = get_logger(__name__)


class AccountStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_provider(
        self, provider: Provider, provider_subject_id: str
    ) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def save_account(self, account: Account) -> Account: ...


class CredentialStore(Protocol):
    def get_refresh_credential(self, token_value: str) -> Optional[RefreshCredential]: ...

    def save_refresh_credential(
        self, credential: RefreshCredential
    ) -> RefreshCredential: ...

    def compare_and_revoke(self, credential_id: str) -> bool: ...

    def rotate_refresh_credential(
        self, old_credential_id: str, new_credential: RefreshCredential
    ) -> bool: ...

    def revoke_account_credentials(self, account_id: str) -> int: ...


class AuthStore(AccountStore, CredentialStore, Protocol):
    """A single backend serving both accounts and refresh credentials."""


@dataclass(frozen=True)
class AuthContext:
    account_id: str
    email: str
    role: Role


@dataclass(frozen=True)
class FederationResult:
    account: AccountView
    tokens: TokenPair
    redirect_url: str


class AuthService:
    """Token lifecycle for federated accounts.

    Issues an access token plus a refresh credential after federation,
    rotates refresh credentials on use and revokes them on logout. A refresh
    credential is ACTIVE until it is either rotated (its successor is issued in
    the same atomic store call) or revoked; both states are terminal, so a
    replayed refresh token is always rejected.

    Expected failures are returned as :class:`AuthFailure` values, never raised.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        codec: Optional[AccessTokenCodec] = None,
        reconciler: Optional[IdentityReconciler] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.codec = codec or AccessTokenCodec(
            settings.jwt_secret,
            settings.access_token_ttl_ms,
            self.clock,
            leeway_seconds=settings.clock_skew_leeway_seconds,
        )
        if reconciler is None:
            extractors = dict(PROFILE_EXTRACTORS)
            extractors[Provider.KAKAO] = KakaoProfileExtractor(
                allow_missing_email=settings.kakao_allow_missing_email
            )
            reconciler = IdentityReconciler(store, clock=self.clock, extractors=extractors)
        self.reconciler = reconciler
        self.logger = logger

    @property
    def _refresh_ttl(self) -> timedelta:
        return timedelta(milliseconds=self.settings.refresh_token_ttl_ms)

    def issue_pair(self, account: Account) -> Union[TokenPair, AuthFailure]:
        now = self.clock.now()
        credential = RefreshCredential.issue(account.id, self._refresh_ttl, now)
        try:
            self.store.save_refresh_credential(credential)
        except ConstraintViolation as exc:
            return self._store_conflict(exc, account_id=account.id)
        access_token = self.codec.issue(account.id, account.email)
        self.logger.info(
            "token_pair_issued", account_id=account.id, credential_id=credential.id
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=credential.token_value,
            expires_in=self.settings.access_token_ttl_ms,
        )

    def rotate(self, presented_refresh_token: str) -> Union[TokenPair, AuthFailure]:
        """Exchange a refresh token for a new pair; the presented one is spent."""
        credential = (
            self.store.get_refresh_credential(presented_refresh_token)
            if presented_refresh_token
            else None
        )
        if credential is None:
            return self._reject(FailureKind.INVALID_TOKEN, "refresh token not recognised")
        if credential.revoked:
            return self._reject(
                FailureKind.TOKEN_REVOKED,
                "refresh token already used or revoked",
                credential_id=credential.id,
            )

        now = self.clock.now()
        if credential.is_expired(now):
            # expired credentials are revoked on first sight
            self.store.compare_and_revoke(credential.id)
            return self._reject(
                FailureKind.TOKEN_EXPIRED,
                "refresh token expired",
                credential_id=credential.id,
            )

        account = self.store.get_account(credential.account_id)
        if account is None:
            return self._reject(
                FailureKind.NOT_FOUND,
                "account not found",
                credential_id=credential.id,
            )

        successor = RefreshCredential.issue(account.id, self._refresh_ttl, now)
        try:
            rotated = self.store.rotate_refresh_credential(credential.id, successor)
        except ConstraintViolation as exc:
            return self._store_conflict(
                exc, account_id=account.id, credential_id=credential.id
            )
        if not rotated:
            return self._reject(
                FailureKind.TOKEN_REVOKED,
                "refresh token already used or revoked",
                credential_id=credential.id,
            )

        self.logger.info(
            "refresh_token_rotated",
            account_id=account.id,
            credential_id=credential.id,
            successor_id=successor.id,
        )
        return TokenPair(
            access_token=self.codec.issue(account.id, account.email),
            refresh_token=successor.token_value,
            expires_in=self.settings.access_token_ttl_ms,
        )

    def revoke(
        self, account_id: str, presented_refresh_token: str
    ) -> Union[RefreshCredential, AuthFailure]:
        """Logout: revoke the caller's own refresh credential.

        Revoking an already revoked credential of the same account succeeds.
        """
        credential = (
            self.store.get_refresh_credential(presented_refresh_token)
            if presented_refresh_token
            else None
        )
        if credential is None:
            return self._reject(FailureKind.INVALID_TOKEN, "refresh token not recognised")
        if credential.account_id != account_id:
            return self._reject(
                FailureKind.TOKEN_MISMATCH,
                "refresh token belongs to another account",
                account_id=account_id,
                credential_id=credential.id,
            )
        if self.store.compare_and_revoke(credential.id):
            self.logger.info(
                "refresh_token_revoked", account_id=account_id, credential_id=credential.id
            )
        return credential.revoked_copy()

    def revoke_all(self, account_id: str) -> int:
        count = self.store.revoke_account_credentials(account_id)
        self.logger.info("refresh_tokens_revoked_all", account_id=account_id, count=count)
        return count

    def current_user(self, account_id: str) -> Union[AccountView, AuthFailure]:
        account = self.store.get_account(account_id)
        if account is None:
            return AuthFailure(FailureKind.NOT_FOUND, "account not found")
        return AccountView.from_account(account)

    def reconcile(
        self, provider: Union[Provider, str], attributes: Mapping[str, Any]
    ) -> Union[Account, AuthFailure]:
        return self.reconciler.reconcile(provider, attributes)

    def complete_federation(
        self, provider: Union[Provider, str], attributes: Mapping[str, Any]
    ) -> Union[FederationResult, AuthFailure]:
        """Reconcile a verified provider identity and sign the account in.

        ``redirect_url`` points the browser at the frontend callback with both
        tokens in the query string.
        """
        account = self.reconciler.reconcile(provider, attributes)
        if isinstance(account, AuthFailure):
            return account
        tokens = self.issue_pair(account)
        if isinstance(tokens, AuthFailure):
            return tokens
        query = urlencode(
            {"accessToken": tokens.access_token, "refreshToken": tokens.refresh_token}
        )
        return FederationResult(
            account=AccountView.from_account(account),
            tokens=tokens,
            redirect_url=f"{self.settings.frontend_url}/auth/callback?{query}",
        )

    def authenticate(
        self, authorization_header: Optional[str]
    ) -> Union[AuthContext, AuthFailure]:
        token = self._extract_bearer(authorization_header)
        if token is None:
            return AuthFailure(FailureKind.TOKEN_CLAIMS_EMPTY, "bearer token required")
        claims = self.codec.verify(token)
        if isinstance(claims, AuthFailure):
            return claims
        account = self.store.get_account(claims.account_id)
        if account is None:
            return self._reject(
                FailureKind.NOT_FOUND, "account not found", account_id=claims.account_id
            )
        return AuthContext(account_id=account.id, email=account.email, role=account.role)

    def set_account_role(
        self, account_id: str, role: Union[Role, str]
    ) -> Union[AccountView, AuthFailure]:
        """Change an account's role and revoke its refresh credentials.

        Access tokens already issued stay valid until they expire; the next
        refresh forces a fresh federation under the new role.
        """
        try:
            new_role = Role(role.upper() if isinstance(role, str) else role)
        except ValueError:
            return AuthFailure(
                FailureKind.MISSING_REQUIRED_FIELD, "unknown role", {"field": "role"}
            )
        account = self.store.get_account(account_id)
        if account is None:
            return AuthFailure(FailureKind.NOT_FOUND, "account not found")
        try:
            updated = self.store.save_account(account.with_role(new_role, self.clock.now()))
        except ConstraintViolation as exc:
            return self._store_conflict(exc, account_id=account_id)
        revoked = self.store.revoke_account_credentials(account_id)
        self.logger.info(
            "account_role_updated",
            account_id=account_id,
            role=new_role.value,
            refresh_tokens_revoked=revoked,
        )
        return AccountView.from_account(updated)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def _reject(self, kind: FailureKind, message: str, **context: Any) -> AuthFailure:
        self.logger.info("auth_rejected", kind=kind.value, **context)
        return AuthFailure(kind, message)

    def _store_conflict(self, exc: ConstraintViolation, **context: Any) -> AuthFailure:
        self.logger.warning(
            "auth_store_conflict", field=exc.field, error=exc.message, **context
        )
        return AuthFailure(
            FailureKind.STORE_CONFLICT,
            exc.message,
            {"field": exc.field} if exc.field else {},
        )
