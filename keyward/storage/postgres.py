from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from keyward.logging import get_logger
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import (
    AdminGrant,
    AdminScale,
    AuthProvider,
    User,
    UserUpdate,
    new_user_id,
)

_CONSTRAINT_FIELDS = {
    "app_user_username_key": "username",
    "app_user_email_key": "email",
    "app_user_phone_key": "phone",
    "admin_grant_pkey": "admin_grant",
    "admin_grant_user_id_fkey": "user_id",
    "external_identity_pkey": "external_identity",
    "external_identity_user_provider_key": "external_identity",
}

# Columns a partial update may touch; anything else never reaches SQL
_UPDATABLE_COLUMNS = frozenset(UserUpdate.FIELDS)

_SCHEMA = (
    """
    DO $$
    BEGIN
        CREATE TYPE admin_scale AS ENUM ('minor', 'major');
    EXCEPTION
        WHEN duplicate_object THEN NULL;
    END
    $$
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT,
        phone TEXT,
        password_hash TEXT NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        phone_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_user_username_key UNIQUE (username),
        CONSTRAINT app_user_email_key UNIQUE (email),
        CONSTRAINT app_user_phone_key UNIQUE (phone)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_grant (
        user_id UUID NOT NULL,
        scale admin_scale NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT admin_grant_pkey PRIMARY KEY (user_id),
        CONSTRAINT admin_grant_user_id_fkey FOREIGN KEY (user_id) REFERENCES app_user (id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS external_identity (
        provider TEXT NOT NULL,
        external_id TEXT NOT NULL,
        user_id UUID NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT external_identity_pkey PRIMARY KEY (provider, external_id),
        CONSTRAINT external_identity_user_provider_key UNIQUE (user_id, provider),
        CONSTRAINT external_identity_user_id_fkey FOREIGN KEY (user_id) REFERENCES app_user (id)
    )
    """,
)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _violation(exc: errors.IntegrityError, fallback: str) -> ConstraintViolation:
    diag = getattr(exc, "diag", None)
    constraint = getattr(diag, "constraint_name", None) if diag else None
    field = _CONSTRAINT_FIELDS.get(constraint or "")
    detail: Dict[str, Any] = {"constraint": constraint}
    if field:
        detail["field"] = field
        return ConstraintViolation(f"{field} already exists", detail)
    return ConstraintViolation(fallback, detail)


class PostgresStore:
    """Postgres-backed credential store for users and admin grants."""

    def __init__(
        self,
        dsn: str,
        *,
        statement_timeout_seconds: float = 3.0,
        min_size: int = 2,
        max_size: int = 10,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        timeout_ms = max(1, int(statement_timeout_seconds * 1000))
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=statement_timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={timeout_ms}",
            },
        )
        if ensure_schema:
            self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create the user and admin grant tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            password_hash=row["password_hash"],
            email=row.get("email"),
            phone=row.get("phone"),
            email_verified=bool(row.get("email_verified", False)),
            phone_verified=bool(row.get("phone_verified", False)),
            is_deleted=bool(row.get("is_deleted", False)),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_grant(row: Dict[str, Any]) -> AdminGrant:
        return AdminGrant(
            user_id=str(row["user_id"]),
            username=row["username"],
            scale=AdminScale(row["scale"]),
            created_at=row["created_at"],
        )

    # users
    def create_user(
        self,
        username: str,
        password_hash: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        email_verified: bool = False,
        phone_verified: bool = False,
    ) -> User:
        user_id = new_user_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, phone, password_hash, email_verified, phone_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        username,
                        email,
                        phone,
                        password_hash,
                        email_verified,
                        phone_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _violation(exc, "user already exists") from exc
        return self._row_to_user(row)

    def _get_user_where(self, column: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {column} = %s", (value,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        return self._get_user_where("id", user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._get_user_where("username", username)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._get_user_where("email", email)

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        return self._get_user_where("phone", phone)

    def update_user(self, user_id: str, update: UserUpdate) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        changes = {k: v for k, v in update.changes().items() if k in _UPDATABLE_COLUMNS}
        if not changes:
            return self.get_user(user_id)
        assignments = ", ".join(f"{column} = %s" for column in changes)
        params = list(changes.values()) + [user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _violation(exc, "user already exists") from exc
        return self._row_to_user(row) if row else None

    def soft_delete_user(self, user_id: str) -> Optional[User]:
        return self.update_user(
            user_id,
            UserUpdate(
                email=None,
                phone=None,
                email_verified=False,
                phone_verified=False,
                is_deleted=True,
            ),
        )

    # external identities
    def get_user_by_external_id(self, provider: AuthProvider, external_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT u.* FROM external_identity e JOIN app_user u ON u.id = e.user_id
                WHERE e.provider = %s AND e.external_id = %s
                """,
                (provider.value, external_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def has_external_identity(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM external_identity WHERE user_id = %s LIMIT 1", (user_id,)
            ).fetchone()
        return row is not None

    def add_external_user(
        self,
        username: str,
        password_hash: str,
        *,
        provider: AuthProvider,
        external_id: str,
    ) -> User:
        """Insert the user and its provider link in a single transaction."""
        user_id = new_user_id()
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, password_hash)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, username, password_hash),
                ).fetchone()
                conn.execute(
                    "INSERT INTO external_identity (provider, external_id, user_id) VALUES (%s, %s, %s)",
                    (provider.value, external_id, user_id),
                )
        except errors.UniqueViolation as exc:
            raise _violation(exc, "external identity rejected") from exc
        return self._row_to_user(row)

    # admin grants
    def get_admin_grant(self, user_id: str) -> Optional[AdminGrant]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT g.user_id, u.username, g.scale, g.created_at
                FROM admin_grant g JOIN app_user u ON u.id = g.user_id
                WHERE g.user_id = %s
                """,
                (user_id,),
            ).fetchone()
        return self._row_to_grant(row) if row else None

    def save_admin_grant(self, user_id: str, scale: AdminScale) -> AdminGrant:
        if not _is_uuid(user_id):
            raise ConstraintViolation("admin grant references unknown user", {"field": "user_id"})
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    WITH inserted AS (
                        INSERT INTO admin_grant (user_id, scale) VALUES (%s, %s)
                        RETURNING user_id, scale, created_at
                    )
                    SELECT i.user_id, u.username, i.scale, i.created_at
                    FROM inserted i JOIN app_user u ON u.id = i.user_id
                    """,
                    (user_id, scale.value),
                ).fetchone()
        except errors.IntegrityError as exc:
            raise _violation(exc, "admin grant rejected") from exc
        return self._row_to_grant(row)

    def delete_admin_grant(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM admin_grant WHERE user_id = %s", (user_id,))
            return cur.rowcount > 0

    def list_admin_grants(
        self,
        *,
        scale: Optional[AdminScale] = None,
        username: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[AdminGrant], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if scale is not None:
            clauses.append("g.scale = %s")
            params.append(scale.value)
        if username:
            clauses.append("u.username ILIKE %s")
            params.append(f"%{username}%")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM admin_grant g JOIN app_user u ON u.id = g.user_id {where}",
                params,
            ).fetchone()
            rows = conn.execute(
                f"""
                SELECT g.user_id, u.username, g.scale, g.created_at
                FROM admin_grant g JOIN app_user u ON u.id = g.user_id
                {where}
                ORDER BY g.created_at
                LIMIT %s OFFSET %s
                """,
                params + [limit, offset],
            ).fetchall()
        total = int(total_row["total"]) if total_row else 0
        return [self._row_to_grant(row) for row in rows], total
