from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation, StoreError
from authcore.storage.models import Account, Provider, RefreshCredential, Role


class MemoryStore:
    """In-memory account and refresh credential store.

    Satisfies both the account store and the credential store contracts.
    When ``fs_root`` is given, every write snapshots the full state to
    ``<fs_root>/state/memory_store.json`` and the snapshot is reloaded on
    construction, so a development server keeps its accounts across restarts.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.refresh_credentials: Dict[str, RefreshCredential] = {}
        # token value -> credential id
        self._token_index: Dict[str, str] = {}
        # RLock so store methods can call each other while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    # accounts
    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_provider(
        self, provider: Provider, provider_subject_id: str
    ) -> Optional[Account]:
        with self._data_lock:
            return next(
                (
                    a
                    for a in self.accounts.values()
                    if a.provider == provider
                    and a.provider_subject_id == provider_subject_id
                ),
                None,
            )

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return next((a for a in self.accounts.values() if a.email == email), None)

    def save_account(self, account: Account) -> Account:
        with self._data_lock:
            for existing in self.accounts.values():
                if existing.id == account.id:
                    continue
                if existing.email == account.email:
                    raise ConstraintViolation(
                        "email already exists", {"field": "email"}
                    )
                if (
                    existing.provider == account.provider
                    and existing.provider_subject_id == account.provider_subject_id
                ):
                    raise ConstraintViolation(
                        "provider identity already linked",
                        {"field": "provider_subject_id", "provider": account.provider.value},
                    )
            self.accounts[account.id] = account
            self._persist_state()
            return account

    # refresh credentials
    def get_refresh_credential(self, token_value: str) -> Optional[RefreshCredential]:
        with self._data_lock:
            credential_id = self._token_index.get(token_value)
            if credential_id is None:
                return None
            return self.refresh_credentials.get(credential_id)

    def list_refresh_credentials(self, account_id: str) -> List[RefreshCredential]:
        with self._data_lock:
            results = [
                c for c in self.refresh_credentials.values() if c.account_id == account_id
            ]
            return sorted(results, key=lambda c: c.created_at)

    def _insert_credential(self, credential: RefreshCredential) -> None:
        if credential.account_id not in self.accounts:
            raise ConstraintViolation(
                "account does not exist", {"field": "account_id"}
            )
        owner_id = self._token_index.get(credential.token_value)
        if owner_id is not None and owner_id != credential.id:
            raise ConstraintViolation(
                "refresh token value already exists", {"field": "token_value"}
            )
        self.refresh_credentials[credential.id] = credential
        self._token_index[credential.token_value] = credential.id

    def save_refresh_credential(self, credential: RefreshCredential) -> RefreshCredential:
        with self._data_lock:
            existing = self.refresh_credentials.get(credential.id)
            if existing is not None and existing.revoked and not credential.revoked:
                raise StoreError(
                    "revoked refresh credential cannot be reactivated",
                    {"credential_id": credential.id},
                )
            self._insert_credential(credential)
            self._persist_state()
            return credential

    def compare_and_revoke(self, credential_id: str) -> bool:
        """Flip ``revoked`` to True; False when it was already revoked or unknown."""
        with self._data_lock:
            current = self.refresh_credentials.get(credential_id)
            if current is None or current.revoked:
                return False
            self.refresh_credentials[credential_id] = current.revoked_copy()
            self._persist_state()
            return True

    def rotate_refresh_credential(
        self, old_credential_id: str, new_credential: RefreshCredential
    ) -> bool:
        """Revoke the old credential and insert its successor as one unit."""
        with self._data_lock:
            current = self.refresh_credentials.get(old_credential_id)
            if current is None or current.revoked:
                return False
            self._insert_credential(new_credential)
            self.refresh_credentials[old_credential_id] = current.revoked_copy()
            self._persist_state()
            return True

    def revoke_account_credentials(self, account_id: str) -> int:
        with self._data_lock:
            active = [
                c
                for c in self.refresh_credentials.values()
                if c.account_id == account_id and not c.revoked
            ]
            for credential in active:
                self.refresh_credentials[credential.id] = credential.revoked_copy()
            if active:
                self._persist_state()
            return len(active)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "refresh_credentials": [
                self._serialize_credential(c) for c in self.refresh_credentials.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.refresh_credentials = {
            c["id"]: self._deserialize_credential(c)
            for c in data.get("refresh_credentials", [])
        }
        self._token_index = {
            c.token_value: c.id for c in self.refresh_credentials.values()
        }
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            refresh_credentials=len(self.refresh_credentials),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "display_name": account.display_name,
            "avatar_url": account.avatar_url,
            "provider": account.provider.value,
            "provider_subject_id": account.provider_subject_id,
            "role": account.role.value,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            display_name=data.get("display_name") or "Unknown",
            avatar_url=data.get("avatar_url"),
            provider=Provider(data["provider"]),
            provider_subject_id=str(data["provider_subject_id"]),
            role=Role(data.get("role", Role.USER.value)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )

    def _serialize_credential(self, credential: RefreshCredential) -> dict:
        return {
            "id": credential.id,
            "account_id": credential.account_id,
            "token_value": credential.token_value,
            "expires_at": self._serialize_datetime(credential.expires_at),
            "revoked": credential.revoked,
            "created_at": self._serialize_datetime(credential.created_at),
        }

    def _deserialize_credential(self, data: dict) -> RefreshCredential:
        return RefreshCredential(
            id=str(data["id"]),
            account_id=str(data["account_id"]),
            token_value=data["token_value"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
