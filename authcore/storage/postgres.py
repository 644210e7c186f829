from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    Provider,
    RefreshSession,
    User,
    UserStatus,
    hash_token,
    normalize_email,
)

_USER_COLUMNS = (
    "id, email, provider, password_hash, provider_id, status, email_verified, "
    "created_at, updated_at, last_login_at, deleted_at"
)
_SESSION_COLUMNS = (
    "id, user_id, token_hash, token_id, expires_at, created_at, device_info, "
    "ip_address, is_active, last_used_at"
)

# Constraint name -> field reported on ConstraintViolation
_CONSTRAINT_FIELDS = {
    "app_user_email_live_key": "email",
    "app_user_provider_identity_key": "provider_id",
    "app_user_pkey": "user_id",
    "refresh_session_token_hash_key": "token",
    "refresh_session_user_id_fkey": "user_id",
}

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        provider TEXT NOT NULL DEFAULT 'local',
        password_hash TEXT,
        provider_id TEXT,
        status TEXT NOT NULL DEFAULT 'pending_verification',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_live_key
        ON app_user (email) WHERE deleted_at IS NULL
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS app_user_provider_identity_key
        ON app_user (provider, provider_id)
        WHERE provider_id IS NOT NULL AND deleted_at IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        token_hash TEXT NOT NULL,
        token_id TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        device_info TEXT,
        ip_address TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_used_at TIMESTAMPTZ,
        seq BIGSERIAL,
        CONSTRAINT refresh_session_token_hash_key UNIQUE (token_hash),
        CONSTRAINT refresh_session_user_id_fkey FOREIGN KEY (user_id)
            REFERENCES app_user (id) ON DELETE CASCADE
    )
    """,
    """
    ALTER TABLE refresh_session ADD COLUMN IF NOT EXISTS seq BIGSERIAL
    """,
    """
    CREATE INDEX IF NOT EXISTS refresh_session_user_active_idx
        ON refresh_session (user_id, is_active, created_at)
    """,
)


class PostgresStore:
    """Postgres-backed user and refresh-session store."""

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
        """Create the user and session tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _constraint_violation(exc: errors.IntegrityError, message: str) -> ConstraintViolation:
        diag = getattr(exc, "diag", None)
        name = getattr(diag, "constraint_name", None) if diag is not None else None
        return ConstraintViolation(
            message, {"field": _CONSTRAINT_FIELDS.get(name or ""), "constraint": name}
        )

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            provider=Provider(row.get("provider") or Provider.LOCAL.value),
            password_hash=row.get("password_hash"),
            provider_id=row.get("provider_id"),
            status=UserStatus(row.get("status") or UserStatus.ACTIVE.value),
            email_verified=bool(row.get("email_verified", False)),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
            last_login_at=row.get("last_login_at"),
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _session_from_row(row: dict) -> RefreshSession:
        return RefreshSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            token_id=row["token_id"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            device_info=row.get("device_info"),
            ip_address=row.get("ip_address"),
            is_active=bool(row.get("is_active", True)),
            last_used_at=row.get("last_used_at"),
        )

    @staticmethod
    def _user_params(user: User) -> tuple:
        return (
            user.email,
            user.provider.value,
            user.password_hash,
            user.provider_id,
            user.status.value,
            user.email_verified,
            user.created_at,
            user.updated_at,
            user.last_login_at,
            user.deleted_at,
        )

    # users
    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO app_user ({_USER_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (user.id, *self._user_params(user)),
                )
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc, "user already exists") from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = %s AND deleted_at IS NULL",
                (normalize_email(email),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_provider(self, provider: Provider | str, provider_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_USER_COLUMNS} FROM app_user
                WHERE provider = %s AND provider_id = %s AND deleted_at IS NULL
                """,
                (Provider(provider).value, provider_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                result = conn.execute(
                    """
                    UPDATE app_user
                    SET email = %s, provider = %s, password_hash = %s, provider_id = %s,
                        status = %s, email_verified = %s, created_at = %s, updated_at = %s,
                        last_login_at = %s, deleted_at = %s
                    WHERE id = %s
                    """,
                    (*self._user_params(user), user.id),
                )
                if result.rowcount == 0:
                    raise ConstraintViolation("user does not exist", {"field": "user_id"})
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc, "user identity already exists") from exc
        return user

    def soft_delete_user(self, user_id: str, deleted_at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE app_user SET deleted_at = %s, updated_at = %s
                WHERE id = %s AND deleted_at IS NULL
                """,
                (deleted_at, deleted_at, user_id),
            )
            return result.rowcount > 0

    # refresh sessions
    def create_session(self, session: RefreshSession) -> RefreshSession:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO refresh_session ({_SESSION_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_hash,
                        session.token_id,
                        session.expires_at,
                        session.created_at,
                        session.device_info,
                        session.ip_address,
                        session.is_active,
                        session.last_used_at,
                    ),
                )
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            raise self._constraint_violation(exc, "session could not be stored") from exc
        return session

    def get_session(self, session_id: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM refresh_session WHERE id = %s",
                (session_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_token(self, token: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM refresh_session WHERE token_hash = %s",
                (hash_token(token),),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_active_sessions(self, user_id: str, now: datetime) -> List[RefreshSession]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM refresh_session
                WHERE user_id = %s AND is_active AND expires_at > %s
                ORDER BY created_at DESC, id DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def deactivate_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE refresh_session SET is_active = FALSE WHERE id = %s AND is_active",
                (session_id,),
            )

    def deactivate_if_active(self, session_id: str, now: datetime) -> bool:
        # Single conditional UPDATE; row locking makes exactly one caller win
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_session
                SET is_active = FALSE, last_used_at = %s
                WHERE id = %s AND is_active AND expires_at > %s
                RETURNING id
                """,
                (now, session_id, now),
            ).fetchone()
        return row is not None

    def touch_session(self, session_id: str, used_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE refresh_session SET last_used_at = %s WHERE id = %s",
                (used_at, session_id),
            )

    def deactivate_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_session SET is_active = FALSE WHERE user_id = %s AND is_active",
                (user_id,),
            )
            return result.rowcount

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_session WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def prune_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_session WHERE NOT is_active OR expires_at <= %s",
                (now,),
            )
            return result.rowcount

    def cap_user_sessions(
        self,
        user_id: str,
        max_kept: int,
        now: datetime,
        *,
        device_info: Optional[str] = None,
        keep_session_id: Optional[str] = None,
    ) -> int:
        if max_kept < 1:
            raise ValueError("max_kept must be at least 1")
        params: dict[str, Any] = {
            "user_id": user_id,
            "now": now,
            "device_info": device_info,
            "max_kept": max_kept,
            "keep_id": keep_session_id,
        }
        with self._connect() as conn:
            rows = conn.execute(
                """
                WITH keep AS (
                    SELECT id FROM refresh_session
                    WHERE id = %(keep_id)s::text AND user_id = %(user_id)s
                      AND is_active AND expires_at > %(now)s
                      AND (%(device_info)s::text IS NULL OR device_info = %(device_info)s)
                ),
                ranked AS (
                    SELECT id, created_at,
                           ROW_NUMBER() OVER (ORDER BY created_at DESC, seq DESC) AS rn
                    FROM refresh_session
                    WHERE user_id = %(user_id)s AND is_active AND expires_at > %(now)s
                      AND (%(device_info)s::text IS NULL OR device_info = %(device_info)s)
                      AND id IS DISTINCT FROM %(keep_id)s::text
                )
                UPDATE refresh_session s
                SET is_active = FALSE
                FROM ranked r
                WHERE s.id = r.id
                  AND r.rn > %(max_kept)s - (SELECT COUNT(*) FROM keep)
                  AND NOT EXISTS (
                      SELECT 1 FROM refresh_session k
                      WHERE k.id = %(keep_id)s::text AND r.created_at > k.created_at
                  )
                RETURNING s.id
                """,
                params,
            ).fetchall()
        if rows:
            self.logger.info("sessions_capped", user_id=user_id, evicted=len(rows))
        return len(rows)
