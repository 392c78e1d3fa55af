from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tokengate.logging import get_logger
from tokengate.storage.errors import ConstraintViolation, StoreUnavailable
from tokengate.storage.models import (
    ExternalIdentity,
    RefreshToken,
    User,
    normalize_email,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_lower_idx ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS user_external_identity (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        subject TEXT NOT NULL,
        linked_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (provider, subject),
        UNIQUE (user_id, provider)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token_hash TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        replaced_by TEXT
    )
    """,
    # At most one unrevoked refresh token per user
    """
    CREATE UNIQUE INDEX IF NOT EXISTS refresh_token_one_active_idx
        ON refresh_token (user_id) WHERE revoked_at IS NULL
    """,
)


class PostgresStore:
    """Postgres-backed credential store."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        """Borrow a pooled connection; commits on success, rolls back on error."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("credential store unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict, identity_rows: List[dict]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            external_identities=[
                ExternalIdentity(
                    provider=ident["provider"],
                    subject=ident["subject"],
                    linked_at=ident["linked_at"],
                )
                for ident in identity_rows
            ],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_refresh_token(row: dict) -> RefreshToken:
        return RefreshToken(
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            replaced_by=row.get("replaced_by"),
        )

    def _load_user(self, conn: Any, where: str, params: tuple) -> Optional[User]:
        row = conn.execute(
            f"SELECT u.* FROM app_user u {where}", params
        ).fetchone()
        if not row:
            return None
        identity_rows = conn.execute(
            "SELECT provider, subject, linked_at FROM user_external_identity WHERE user_id = %s ORDER BY linked_at",
            (row["id"],),
        ).fetchall()
        return self._row_to_user(row, identity_rows)

    @staticmethod
    def _lock_user(conn: Any, user_id: str) -> bool:
        """Row-lock the user so refresh-token writes for one account serialize."""
        row = conn.execute(
            "SELECT id FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
        ).fetchone()
        return row is not None

    @staticmethod
    def _install_refresh_token(conn: Any, record: RefreshToken) -> None:
        conn.execute(
            """
            UPDATE refresh_token SET revoked_at = %s, replaced_by = %s
            WHERE user_id = %s AND revoked_at IS NULL
            """,
            (record.issued_at, record.token_hash, record.user_id),
        )
        conn.execute(
            """
            INSERT INTO refresh_token (token_hash, user_id, issued_at, expires_at)
            VALUES (%s, %s, %s, %s)
            """,
            (record.token_hash, record.user_id, record.issued_at, record.expires_at),
        )

    # users
    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        identity: Optional[ExternalIdentity] = None,
        refresh_token: Optional[RefreshToken] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized = normalize_email(email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash)
                    VALUES (%s, %s, %s)
                    RETURNING created_at
                    """,
                    (user_id, normalized, password_hash),
                ).fetchone()
                identities: List[ExternalIdentity] = []
                if identity:
                    conn.execute(
                        """
                        INSERT INTO user_external_identity (user_id, provider, subject, linked_at)
                        VALUES (%s, %s, %s, %s)
                        """,
                        (user_id, identity.provider, identity.subject, identity.linked_at),
                    )
                    identities.append(identity)
                if refresh_token:
                    self._install_refresh_token(
                        conn,
                        RefreshToken(
                            token_hash=refresh_token.token_hash,
                            user_id=user_id,
                            issued_at=refresh_token.issued_at,
                            expires_at=refresh_token.expires_at,
                        ),
                    )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            if "email" in constraint:
                raise ConstraintViolation("email already exists", {"field": "email"})
            raise ConstraintViolation("external identity already linked", {"constraint": constraint})
        return User(
            id=user_id,
            email=normalized,
            password_hash=password_hash,
            external_identities=identities,
            created_at=row["created_at"],
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            return self._load_user(conn, "WHERE u.id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            return self._load_user(
                conn, "WHERE lower(u.email) = %s", (normalize_email(email),)
            )

    def get_user_by_external_identity(
        self, provider: str, subject: str
    ) -> Optional[User]:
        with self._connect() as conn:
            return self._load_user(
                conn,
                "JOIN user_external_identity i ON i.user_id = u.id WHERE i.provider = %s AND i.subject = %s",
                (provider, subject),
            )

    def link_external_identity(
        self,
        user_id: str,
        identity: ExternalIdentity,
        *,
        refresh_token: Optional[RefreshToken] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                if not self._lock_user(conn, user_id):
                    raise ConstraintViolation("user not found", {"user_id": user_id})
                conn.execute(
                    """
                    INSERT INTO user_external_identity (user_id, provider, subject, linked_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (provider, subject) DO NOTHING
                    """,
                    (user_id, identity.provider, identity.subject, identity.linked_at),
                )
                owner = conn.execute(
                    "SELECT user_id FROM user_external_identity WHERE provider = %s AND subject = %s",
                    (identity.provider, identity.subject),
                ).fetchone()
                if not owner or str(owner["user_id"]) != user_id:
                    raise ConstraintViolation(
                        "external identity already linked", {"provider": identity.provider}
                    )
                if refresh_token:
                    self._install_refresh_token(
                        conn,
                        RefreshToken(
                            token_hash=refresh_token.token_hash,
                            user_id=user_id,
                            issued_at=refresh_token.issued_at,
                            expires_at=refresh_token.expires_at,
                        ),
                    )
                user = self._load_user(conn, "WHERE u.id = %s", (user_id,))
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "provider already linked with another subject",
                {"provider": identity.provider},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        if user is None:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return user

    # refresh tokens
    def replace_refresh_token(self, user_id: str, record: RefreshToken) -> None:
        try:
            with self._connect() as conn:
                if not self._lock_user(conn, user_id):
                    raise ConstraintViolation("user not found", {"user_id": user_id})
                self._install_refresh_token(
                    conn,
                    RefreshToken(
                        token_hash=record.token_hash,
                        user_id=user_id,
                        issued_at=record.issued_at,
                        expires_at=record.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        except errors.UniqueViolation as exc:
            raise self._refresh_token_conflict(exc, user_id)

    def rotate_refresh_token(
        self,
        token_hash: str,
        *,
        new_token_hash: str,
        issued_at: datetime,
        expires_at: datetime,
        now: datetime,
    ) -> Optional[RefreshToken]:
        """Conditional update guarded by "still active"; only one caller wins.

        The owner's user row is locked before the token row, the same order
        login and linking use, so concurrent writers queue instead of racing
        on the one-active-token index.
        """
        try:
            with self._connect() as conn:
                current = conn.execute(
                    "SELECT user_id FROM refresh_token WHERE token_hash = %s",
                    (token_hash,),
                ).fetchone()
                if not current or not self._lock_user(conn, current["user_id"]):
                    return None
                row = conn.execute(
                    """
                    UPDATE refresh_token SET revoked_at = %s, replaced_by = %s
                    WHERE token_hash = %s AND revoked_at IS NULL AND expires_at > %s
                    RETURNING user_id
                    """,
                    (now, new_token_hash, token_hash, now),
                ).fetchone()
                if not row:
                    return None
                successor = RefreshToken(
                    token_hash=new_token_hash,
                    user_id=str(row["user_id"]),
                    issued_at=issued_at,
                    expires_at=expires_at,
                )
                self._install_refresh_token(conn, successor)
        except errors.UniqueViolation as exc:
            raise self._refresh_token_conflict(exc)
        return successor

    def _refresh_token_conflict(
        self, exc: errors.UniqueViolation, user_id: Optional[str] = None
    ) -> ConstraintViolation:
        constraint = getattr(exc.diag, "constraint_name", None) or ""
        self.logger.warning(
            "refresh_token_install_conflict", user_id=user_id, constraint=constraint
        )
        return ConstraintViolation(
            "refresh token already installed", {"constraint": constraint}
        )

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def list_active_refresh_tokens(self, user_id: str, now: datetime) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (user_id, now),
            ).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]
