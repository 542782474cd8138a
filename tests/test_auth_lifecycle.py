"""Tests for the token lifecycle engine.

Covers pair issuance, single-use rotation, lazy revocation of expired refresh
tokens, logout ownership checks, bearer authentication, federation completion
and role changes.
"""

import threading
from urllib.parse import parse_qs, urlparse

import pytest

from authcore.config import Settings
from authcore.service.auth import AuthContext, AuthService, FederationResult
from authcore.service.errors import AuthFailure, FailureKind
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Account, AccountView, Provider, Role, TokenPair

from conftest import TEST_SECRET


@pytest.fixture
def account(auth_service, google_attributes):
    return auth_service.reconcile(Provider.GOOGLE, google_attributes)


@pytest.fixture
def other_account(auth_service):
    return auth_service.reconcile(
        Provider.KAKAO, {"id": 99, "kakao_account": {"email": "b@x.com"}}
    )


class TestIssuePair:
    def test_expires_in_matches_access_ttl(self, memory_store, clock, account):
        """A one-hour access TTL is reported as 3600000 ms."""
        settings = Settings(jwt_secret=TEST_SECRET, access_token_ttl_ms=3600000)
        service = AuthService(memory_store, settings, clock=clock)

        pair = service.issue_pair(account)

        assert pair.expires_in == 3600000
        assert pair.token_type == "bearer"

    def test_refresh_credential_persisted(self, auth_service, memory_store, clock, account):
        pair = auth_service.issue_pair(account)

        credential = memory_store.get_refresh_credential(pair.refresh_token)
        assert credential.account_id == account.id
        assert credential.revoked is False
        assert (credential.expires_at - clock.now()).total_seconds() == 24 * 60 * 60

    def test_access_token_verifies_to_account(self, auth_service, account):
        pair = auth_service.issue_pair(account)

        claims = auth_service.codec.verify(pair.access_token)

        assert claims.account_id == account.id
        assert claims.email == account.email

    def test_each_pair_has_a_distinct_refresh_token(self, auth_service, account):
        first = auth_service.issue_pair(account)
        second = auth_service.issue_pair(account)

        assert first.refresh_token != second.refresh_token


class TestRotate:
    def test_rotation_is_single_use(self, auth_service, account):
        """A refresh token rotates once; its successor works and a replay does not."""
        t1 = auth_service.issue_pair(account).refresh_token

        rotated = auth_service.rotate(t1)

        assert isinstance(rotated, TokenPair)
        t2 = rotated.refresh_token
        assert t2 != t1
        replay = auth_service.rotate(t1)
        assert isinstance(replay, AuthFailure)
        assert replay.kind == FailureKind.TOKEN_REVOKED
        assert isinstance(auth_service.rotate(t2), TokenPair)

    def test_rotated_pair_belongs_to_same_account(self, auth_service, memory_store, account):
        pair = auth_service.rotate(auth_service.issue_pair(account).refresh_token)

        assert memory_store.get_refresh_credential(pair.refresh_token).account_id == account.id
        assert auth_service.codec.verify(pair.access_token).account_id == account.id

    def test_unknown_token(self, auth_service):
        assert auth_service.rotate("does-not-exist").kind == FailureKind.INVALID_TOKEN
        assert auth_service.rotate("").kind == FailureKind.INVALID_TOKEN

    def test_expired_token_is_revoked_on_first_sight(self, auth_service, memory_store, clock, account):
        token = auth_service.issue_pair(account).refresh_token
        clock.advance(days=1, seconds=1)

        result = auth_service.rotate(token)

        assert result.kind == FailureKind.TOKEN_EXPIRED
        assert memory_store.get_refresh_credential(token).revoked is True
        assert auth_service.rotate(token).kind == FailureKind.TOKEN_REVOKED

    def test_token_valid_at_exact_expiry_instant(self, auth_service, clock, account):
        token = auth_service.issue_pair(account).refresh_token
        clock.advance(days=1)

        assert isinstance(auth_service.rotate(token), TokenPair)

    def test_revoked_token(self, auth_service, account):
        token = auth_service.issue_pair(account).refresh_token
        auth_service.revoke(account.id, token)

        assert auth_service.rotate(token).kind == FailureKind.TOKEN_REVOKED

    def test_missing_account(self, auth_service, memory_store, account):
        token = auth_service.issue_pair(account).refresh_token
        del memory_store.accounts[account.id]

        result = auth_service.rotate(token)

        assert result.kind == FailureKind.NOT_FOUND
        assert memory_store.get_refresh_credential(token).revoked is False

    def test_concurrent_rotation_has_one_winner(self, auth_service, account):
        token = auth_service.issue_pair(account).refresh_token
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            outcome = auth_service.rotate(token)
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        winners = [r for r in results if isinstance(r, TokenPair)]
        losers = [r for r in results if isinstance(r, AuthFailure)]
        assert len(winners) == 1
        assert len(losers) == 7
        assert {r.kind for r in losers} == {FailureKind.TOKEN_REVOKED}


class TestRevoke:
    def test_owner_mismatch_leaves_token_active(self, auth_service, memory_store, account, other_account):
        """Only the owning account can revoke a refresh token."""
        token_b = auth_service.issue_pair(other_account).refresh_token

        mismatch = auth_service.revoke(account.id, token_b)

        assert mismatch.kind == FailureKind.TOKEN_MISMATCH
        assert memory_store.get_refresh_credential(token_b).revoked is False

        revoked = auth_service.revoke(other_account.id, token_b)

        assert revoked.revoked is True
        assert memory_store.get_refresh_credential(token_b).revoked is True

    def test_unknown_token(self, auth_service, account):
        assert auth_service.revoke(account.id, "nope").kind == FailureKind.INVALID_TOKEN

    def test_logout_is_idempotent(self, auth_service, account):
        token = auth_service.issue_pair(account).refresh_token

        auth_service.revoke(account.id, token)
        again = auth_service.revoke(account.id, token)

        assert not isinstance(again, AuthFailure)
        assert again.revoked is True

    def test_revoke_all(self, auth_service, memory_store, account, other_account):
        tokens = [auth_service.issue_pair(account).refresh_token for _ in range(3)]
        auth_service.revoke(account.id, tokens[0])
        untouched = auth_service.issue_pair(other_account).refresh_token

        assert auth_service.revoke_all(account.id) == 2
        assert all(memory_store.get_refresh_credential(t).revoked for t in tokens)
        assert memory_store.get_refresh_credential(untouched).revoked is False
        assert auth_service.revoke_all(account.id) == 0


class TestCurrentUser:
    def test_returns_view(self, auth_service, account):
        view = auth_service.current_user(account.id)

        assert isinstance(view, AccountView)
        assert view.id == account.id
        assert view.display_name == "Ann"
        assert view.role == Role.USER

    def test_missing_account(self, auth_service):
        result = auth_service.current_user("missing")

        assert result.kind == FailureKind.NOT_FOUND
        assert result.to_service_error().status_code == 404


class TestAuthenticate:
    def test_bearer_token(self, auth_service, account):
        pair = auth_service.issue_pair(account)

        ctx = auth_service.authenticate(f"Bearer {pair.access_token}")

        assert ctx == AuthContext(account_id=account.id, email=account.email, role=Role.USER)

    def test_scheme_is_case_insensitive(self, auth_service, account):
        pair = auth_service.issue_pair(account)

        assert isinstance(auth_service.authenticate(f"bearer {pair.access_token}"), AuthContext)

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Bearer   ", "Basic dXNlcjpwYXNz"])
    def test_missing_or_foreign_scheme(self, auth_service, header):
        result = auth_service.authenticate(header)

        assert result.kind == FailureKind.TOKEN_CLAIMS_EMPTY

    def test_expired_access_token(self, auth_service, clock, account):
        pair = auth_service.issue_pair(account)
        clock.advance(minutes=15)

        assert auth_service.authenticate(f"Bearer {pair.access_token}").kind == FailureKind.TOKEN_EXPIRED

    def test_account_gone(self, auth_service, memory_store, account):
        pair = auth_service.issue_pair(account)
        del memory_store.accounts[account.id]

        assert auth_service.authenticate(f"Bearer {pair.access_token}").kind == FailureKind.NOT_FOUND


class TestCompleteFederation:
    def test_redirect_carries_encoded_tokens(self, auth_service, memory_store, google_attributes):
        result = auth_service.complete_federation("GOOGLE", google_attributes)

        assert isinstance(result, FederationResult)
        parsed = urlparse(result.redirect_url)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://app.example.com/auth/callback"
        query = parse_qs(parsed.query)
        assert query["accessToken"] == [result.tokens.access_token]
        assert query["refreshToken"] == [result.tokens.refresh_token]
        assert result.account.email == "a@x.com"
        assert memory_store.get_refresh_credential(result.tokens.refresh_token) is not None

    def test_failure_issues_nothing(self, auth_service, memory_store):
        result = auth_service.complete_federation(Provider.GOOGLE, {"sub": "g1"})

        assert result.kind == FailureKind.MISSING_REQUIRED_FIELD
        assert memory_store.refresh_credentials == {}

    def test_kakao_missing_email_setting(self, memory_store, clock):
        settings = Settings(jwt_secret=TEST_SECRET, kakao_allow_missing_email=True)
        service = AuthService(memory_store, settings, clock=clock)

        result = service.complete_federation(Provider.KAKAO, {"id": 5})

        assert isinstance(result, FederationResult)
        assert result.account.email == ""
        ctx = service.authenticate(f"Bearer {result.tokens.access_token}")
        assert ctx.account_id == result.account.id


class TestSetAccountRole:
    def test_promotion_revokes_refresh_tokens(self, auth_service, memory_store, account):
        token = auth_service.issue_pair(account).refresh_token

        view = auth_service.set_account_role(account.id, Role.ADMIN)

        assert view.role == Role.ADMIN
        assert memory_store.get_account(account.id).role == Role.ADMIN
        assert auth_service.rotate(token).kind == FailureKind.TOKEN_REVOKED

    def test_role_name_accepted(self, auth_service, account):
        assert auth_service.set_account_role(account.id, "admin").role == Role.ADMIN

    def test_unknown_role(self, auth_service, account):
        result = auth_service.set_account_role(account.id, "owner")

        assert result.kind == FailureKind.MISSING_REQUIRED_FIELD
        assert result.to_service_error().status_code == 400

    def test_missing_account(self, auth_service):
        assert auth_service.set_account_role("missing", Role.ADMIN).kind == FailureKind.NOT_FOUND


class TestStoreConflicts:
    def test_issue_pair_for_unsaved_account(self, auth_service, memory_store):
        stray = Account.new(
            email="ghost@x.com",
            display_name="Ghost",
            provider=Provider.GOOGLE,
            provider_subject_id="g-ghost",
        )

        result = auth_service.issue_pair(stray)

        assert isinstance(result, AuthFailure)
        assert result.kind == FailureKind.STORE_CONFLICT
        assert result.detail == {"field": "account_id"}
        assert result.to_service_error().status_code == 409
        assert memory_store.refresh_credentials == {}

    def test_rotation_conflict_keeps_token_active(self, auth_service, memory_store, account, monkeypatch):
        token = auth_service.issue_pair(account).refresh_token

        def conflicting_rotate(old_credential_id, new_credential):
            raise ConstraintViolation(
                "refresh token value already exists", {"field": "token_value"}
            )

        monkeypatch.setattr(memory_store, "rotate_refresh_credential", conflicting_rotate)

        result = auth_service.rotate(token)

        assert result.kind == FailureKind.STORE_CONFLICT
        assert result.detail == {"field": "token_value"}
        assert memory_store.get_refresh_credential(token).revoked is False

    def test_complete_federation_surfaces_issue_conflict(self, auth_service, memory_store, google_attributes, monkeypatch):
        def conflicting_save(credential):
            raise ConstraintViolation(
                "refresh token value already exists", {"field": "token_value"}
            )

        monkeypatch.setattr(memory_store, "save_refresh_credential", conflicting_save)

        result = auth_service.complete_federation(Provider.GOOGLE, google_attributes)

        assert isinstance(result, AuthFailure)
        assert result.kind == FailureKind.STORE_CONFLICT
