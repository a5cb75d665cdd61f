from __future__ import annotations

import contextlib
import uuid
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from psycopg import Connection, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from idkeeper.logging import get_logger
from idkeeper.storage.errors import ConstraintViolation
from idkeeper.storage.models import (
    DEFAULT_AUTH_PROVIDERS,
    Admin,
    AuthProvider,
    CodeKind,
    RevocationEntry,
    UserIdentity,
    VerificationCode,
    utcnow,
)

# Connection bound to the transaction() block running in the current context
_tx_conn: ContextVar[Optional[Connection]] = ContextVar("idkeeper_pg_tx", default=None)

_IDENTITY_SELECT = """
    SELECT u.id, u.name, u.created_at, u.updated_at,
           e.email, e.is_verified,
           c.password_hash,
           ap.name AS provider
    FROM app_user u
    JOIN user_email e ON e.user_id = u.id
    LEFT JOIN user_password c ON c.user_id = u.id
    LEFT JOIN user_auth_provider l ON l.user_id = u.id
    LEFT JOIN auth_provider ap ON ap.id = l.auth_provider_id
"""


class PostgresStore:
    """Postgres-backed credential store."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()
        self._ensure_default_auth_providers()

    def _connect(self):
        active = _tx_conn.get()
        if active is not None:
            return contextlib.nullcontext(active)
        return self.pool.connection()

    @contextlib.contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        """Run every store call in the block on one connection and commit once.

        Nested blocks become savepoints of the outer transaction.
        """
        active = _tx_conn.get()
        if active is not None:
            with active.transaction():
                yield self
            return
        with self.pool.connection() as conn:
            token = _tx_conn.set(conn)
            try:
                with conn.transaction():
                    yield self
            finally:
                _tx_conn.reset(token)

    def _verify_required_schema(self) -> None:
        """Ensure the credential tables exist before serving requests."""

        required_tables = [
            "app_user",
            "user_email",
            "user_password",
            "auth_provider",
            "user_auth_provider",
            "verification_code",
            "token_revocation",
            "admin_account",
            "app_setting",
        ]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def _ensure_default_auth_providers(self) -> None:
        with self._connect() as conn:
            for name in DEFAULT_AUTH_PROVIDERS:
                conn.execute(
                    "INSERT INTO auth_provider (name) VALUES (%s) ON CONFLICT (name) DO NOTHING",
                    (name,),
                )

    @staticmethod
    def _identity_from_row(row: dict) -> UserIdentity:
        return UserIdentity(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            verified=bool(row.get("is_verified")),
            provider=row.get("provider"),
            password_hash=row.get("password_hash"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _provider_from_row(row: dict) -> AuthProvider:
        return AuthProvider(
            id=int(row["id"]),
            name=row["name"],
            client_id=row.get("client_id"),
            client_secret=row.get("client_secret"),
            redirect_uri=row.get("redirect_uri"),
            active=bool(row.get("active")),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def _fetch_identity(self, conn, user_id: str) -> Optional[UserIdentity]:
        row = conn.execute(_IDENTITY_SELECT + " WHERE u.id = %s", (user_id,)).fetchone()
        return self._identity_from_row(row) if row else None

    def _insert_user(self, conn, name: str, email: str, *, verified: bool) -> str:
        user_id = str(uuid.uuid4())
        conn.execute(
            "INSERT INTO app_user (id, name) VALUES (%s, %s)",
            (user_id, name),
        )
        try:
            conn.execute(
                "INSERT INTO user_email (user_id, email, is_verified) VALUES (%s, %s, %s)",
                (user_id, email, verified),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user_id

    # users
    def create_standard_user(
        self, name: str, email: str, password_hash: str
    ) -> UserIdentity:
        with self.transaction(), self._connect() as conn:
            user_id = self._insert_user(conn, name, email, verified=False)
            conn.execute(
                "INSERT INTO user_password (user_id, password_hash) VALUES (%s, %s)",
                (user_id, password_hash),
            )
            return self._fetch_identity(conn, user_id)

    def create_external_user(
        self, name: str, email: str, provider: str, provider_uid: str
    ) -> UserIdentity:
        with self.transaction(), self._connect() as conn:
            provider_row = conn.execute(
                "SELECT id FROM auth_provider WHERE name = %s", (provider,)
            ).fetchone()
            if not provider_row:
                raise ConstraintViolation(
                    "auth provider does not exist", {"field": "provider", "provider": provider}
                )
            user_id = self._insert_user(conn, name, email, verified=True)
            try:
                conn.execute(
                    """
                    INSERT INTO user_auth_provider (user_id, auth_provider_id, provider_uid)
                    VALUES (%s, %s, %s)
                    """,
                    (user_id, provider_row["id"], provider_uid),
                )
            except errors.UniqueViolation:
                raise ConstraintViolation(
                    "provider identity already linked", {"field": "provider_link"}
                )
            return self._fetch_identity(conn, user_id)

    def get_standard_user_by_email(self, email: str) -> Optional[UserIdentity]:
        with self._connect() as conn:
            row = conn.execute(
                _IDENTITY_SELECT
                + " WHERE e.email = %s AND c.password_hash IS NOT NULL",
                (email,),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def get_external_user(self, provider: str, email: str) -> Optional[UserIdentity]:
        with self._connect() as conn:
            row = conn.execute(
                _IDENTITY_SELECT + " WHERE e.email = %s AND ap.name = %s",
                (email, provider),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def get_user_identity(self, user_id: str) -> Optional[UserIdentity]:
        with self._connect() as conn:
            return self._fetch_identity(conn, user_id)

    def list_users(self, limit: int = 100) -> List[UserIdentity]:
        with self._connect() as conn:
            rows = conn.execute(
                _IDENTITY_SELECT + " ORDER BY u.created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._identity_from_row(row) for row in rows]

    def mark_email_verified(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE user_email SET is_verified = TRUE WHERE user_id = %s RETURNING user_id",
                (user_id,),
            ).fetchone()
            if row:
                conn.execute(
                    "UPDATE app_user SET updated_at = now() WHERE id = %s", (user_id,)
                )
        return row is not None

    def save_password(self, user_id: str, password_hash: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_password (user_id, password_hash, updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        updated_at = now()
                    """,
                    (user_id, password_hash),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    # single-use codes
    def add_verification_code(
        self, user_id: str, kind: CodeKind, code_hash: str, created_at: datetime
    ) -> VerificationCode:
        kind = CodeKind(kind)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO verification_code (user_id, kind, code_hash, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (user_id, kind.value, code_hash, created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("code already exists", {"field": "code"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for code", {"user_id": user_id})
        return VerificationCode(
            user_id=user_id, kind=kind, code_hash=code_hash, created_at=created_at
        )

    def get_verification_code(
        self, kind: CodeKind, code_hash: str
    ) -> Optional[VerificationCode]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM verification_code WHERE kind = %s AND code_hash = %s",
                (CodeKind(kind).value, code_hash),
            ).fetchone()
        if not row:
            return None
        return VerificationCode(
            user_id=str(row["user_id"]),
            kind=CodeKind(row["kind"]),
            code_hash=row["code_hash"],
            created_at=row["created_at"],
        )

    def delete_verification_code(self, kind: CodeKind, code_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM verification_code WHERE kind = %s AND code_hash = %s",
                (CodeKind(kind).value, code_hash),
            )
        return cur.rowcount > 0

    def delete_user_codes(self, user_id: str, kind: CodeKind) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM verification_code WHERE user_id = %s AND kind = %s",
                (user_id, CodeKind(kind).value),
            )
        return cur.rowcount

    def purge_codes_before(self, kind: CodeKind, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM verification_code WHERE kind = %s AND created_at < %s",
                (CodeKind(kind).value, cutoff),
            )
        return cur.rowcount

    # revocation ledger
    def add_revocation(self, user_id: str, jti: str) -> RevocationEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO token_revocation (user_id, jti)
                VALUES (%s, %s)
                ON CONFLICT (user_id, jti) DO NOTHING
                """,
                (user_id, jti),
            )
            row = conn.execute(
                "SELECT created_at FROM token_revocation WHERE user_id = %s AND jti = %s",
                (user_id, jti),
            ).fetchone()
        created_at = row["created_at"] if row else utcnow()
        return RevocationEntry(user_id=user_id, jti=jti, created_at=created_at)

    def is_token_revoked(self, user_id: str, jti: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM token_revocation WHERE user_id = %s AND jti = %s",
                (user_id, jti),
            ).fetchone()
        return row is not None

    # auth providers
    def list_auth_providers(self) -> List[AuthProvider]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM auth_provider ORDER BY id").fetchall()
        return [self._provider_from_row(row) for row in rows]

    def get_auth_provider(self, provider_id: int) -> Optional[AuthProvider]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_provider WHERE id = %s", (provider_id,)
            ).fetchone()
        return self._provider_from_row(row) if row else None

    def get_auth_provider_by_name(self, name: str) -> Optional[AuthProvider]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_provider WHERE name = %s", (name,)
            ).fetchone()
        return self._provider_from_row(row) if row else None

    def update_auth_provider_credentials(
        self,
        provider_id: int,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
    ) -> Optional[AuthProvider]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_provider
                SET client_id = %s, client_secret = %s, redirect_uri = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (client_id, client_secret, redirect_uri, provider_id),
            ).fetchone()
        return self._provider_from_row(row) if row else None

    def set_auth_provider_active(
        self, provider_id: int, active: bool
    ) -> Optional[AuthProvider]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_provider SET active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (active, provider_id),
            ).fetchone()
        return self._provider_from_row(row) if row else None

    # settings
    def get_setting(self, name: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM app_setting WHERE name = %s", (name,)
            ).fetchone()
        return row["value"] if row else None

    def set_setting(self, name: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO app_setting (name, value, updated_at)
                VALUES (%s, %s, now())
                ON CONFLICT (name) DO UPDATE SET value = EXCLUDED.value, updated_at = now()
                """,
                (name, value),
            )

    # admins
    def create_admin(self, email: str, password_hash: str) -> Admin:
        admin_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO admin_account (id, email, password_hash)
                    VALUES (%s, %s, %s)
                    RETURNING created_at
                    """,
                    (admin_id, email, password_hash),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("admin already exists", {"field": "admin_email"})
        return Admin(
            id=admin_id,
            email=email,
            password_hash=password_hash,
            created_at=row["created_at"] if row else utcnow(),
        )

    def get_admin_by_email(self, email: str) -> Optional[Admin]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_account WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return Admin(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            created_at=row.get("created_at") or utcnow(),
        )

    def close(self) -> None:
        self.pool.close()

