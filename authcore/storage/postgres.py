from __future__ import annotations

from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation, StoreError, StoreUnavailable
from authcore.storage.models import Account, Provider, RefreshCredential, Role

# constraint name -> offending field, used to label UniqueViolation errors
_CONSTRAINT_FIELDS = {
    "account_email_key": "email",
    "account_provider_subject_key": "provider_subject_id",
    "refresh_credential_token_value_key": "token_value",
    "refresh_credential_account_id_fkey": "account_id",
}

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        display_name TEXT NOT NULL,
        avatar_url TEXT,
        provider TEXT NOT NULL,
        provider_subject_id TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'USER',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT account_email_key UNIQUE (email),
        CONSTRAINT account_provider_subject_key UNIQUE (provider, provider_subject_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_credential (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        token_value TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT refresh_credential_token_value_key UNIQUE (token_value),
        CONSTRAINT refresh_credential_account_id_fkey
            FOREIGN KEY (account_id) REFERENCES account (id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_credential_account_idx ON refresh_credential (account_id)",
)


def _violation(exc: errors.IntegrityError) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None)
    field = _CONSTRAINT_FIELDS.get(constraint or "")
    detail: dict[str, Any] = {"constraint": constraint}
    if field:
        detail["field"] = field
    if isinstance(exc, errors.ForeignKeyViolation):
        return ConstraintViolation("account does not exist", detail)
    return ConstraintViolation(f"{field or 'constraint'} violates uniqueness", detail)


class PostgresStore:
    """Postgres-backed account and refresh credential store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        """Create the ``account`` and ``refresh_credential`` tables if missing."""

        try:
            with self._connect() as conn:
                for statement in _SCHEMA:
                    conn.execute(statement)
        except errors.OperationalError as exc:
            raise StoreUnavailable(f"postgres unavailable: {exc}") from exc

    @staticmethod
    def _account_from_row(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            display_name=row["display_name"],
            avatar_url=row.get("avatar_url"),
            provider=Provider(row["provider"]),
            provider_subject_id=row["provider_subject_id"],
            role=Role(row.get("role") or Role.USER.value),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    @staticmethod
    def _credential_from_row(row: dict) -> RefreshCredential:
        return RefreshCredential(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            token_value=row["token_value"],
            expires_at=row["expires_at"],
            revoked=bool(row["revoked"]),
            created_at=row["created_at"],
        )

    # accounts
    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_provider(
        self, provider: Provider, provider_subject_id: str
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE provider = %s AND provider_subject_id = %s",
                (provider.value, provider_subject_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (email,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def save_account(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (
                        id, email, display_name, avatar_url, provider,
                        provider_subject_id, role, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        email = EXCLUDED.email,
                        display_name = EXCLUDED.display_name,
                        avatar_url = EXCLUDED.avatar_url,
                        role = EXCLUDED.role,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (
                        account.id,
                        account.email,
                        account.display_name,
                        account.avatar_url,
                        account.provider.value,
                        account.provider_subject_id,
                        account.role.value,
                        account.created_at,
                        account.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _violation(exc) from exc
        return account

    # refresh credentials
    def get_refresh_credential(self, token_value: str) -> Optional[RefreshCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_credential WHERE token_value = %s",
                (token_value,),
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def list_refresh_credentials(self, account_id: str) -> List[RefreshCredential]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_credential WHERE account_id = %s ORDER BY created_at",
                (account_id,),
            ).fetchall()
        return [self._credential_from_row(r) for r in rows]

    def _insert_credential(self, conn, credential: RefreshCredential) -> None:
        conn.execute(
            """
            INSERT INTO refresh_credential (id, account_id, token_value, expires_at, revoked, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET revoked = refresh_credential.revoked OR EXCLUDED.revoked
            """,
            (
                credential.id,
                credential.account_id,
                credential.token_value,
                credential.expires_at,
                credential.revoked,
                credential.created_at,
            ),
        )

    def save_refresh_credential(self, credential: RefreshCredential) -> RefreshCredential:
        try:
            with self._connect() as conn:
                self._insert_credential(conn, credential)
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            raise _violation(exc) from exc
        return credential

    def compare_and_revoke(self, credential_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_credential SET revoked = TRUE WHERE id = %s AND revoked = FALSE",
                (credential_id,),
            )
            return result.rowcount == 1

    def rotate_refresh_credential(
        self, old_credential_id: str, new_credential: RefreshCredential
    ) -> bool:
        """Revoke the old credential and insert its successor in one transaction.

        Returns False, with nothing written, when another caller revoked the
        old credential first.
        """
        try:
            with self._connect() as conn, conn.transaction():
                result = conn.execute(
                    "UPDATE refresh_credential SET revoked = TRUE WHERE id = %s AND revoked = FALSE",
                    (old_credential_id,),
                )
                if result.rowcount != 1:
                    return False
                self._insert_credential(conn, new_credential)
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            raise _violation(exc) from exc
        except errors.SerializationFailure as exc:
            raise StoreError("rotation aborted by concurrent update") from exc
        return True

    def revoke_account_credentials(self, account_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_credential SET revoked = TRUE WHERE account_id = %s AND revoked = FALSE",
                (account_id,),
            )
            revoked = result.rowcount
        self.logger.info("refresh_credentials_revoked", account_id=account_id, count=revoked)
        return revoked
