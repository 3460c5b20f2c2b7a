from __future__ import annotations

import contextlib
import uuid
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from agora.logging import get_logger
from agora.storage.errors import ConstraintViolation, StoreUnavailable
from agora.storage.models import (
    Code,
    CodeType,
    Gender,
    Session,
    User,
    UserStatus,
    utcnow,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        profile_id TEXT NOT NULL UNIQUE,
        primary_email TEXT NOT NULL UNIQUE,
        display_name TEXT NOT NULL,
        hashed_password TEXT,
        birthday DATE,
        gender TEXT,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_email (
        email TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        refresh_token_hashed TEXT,
        device_name TEXT,
        user_agent TEXT,
        ip_address TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS one_time_code (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        tokens TEXT[] NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        last_attempt_at TIMESTAMPTZ,
        PRIMARY KEY (user_id, type)
    )
    """,
]

_SESSION_COLUMNS = {
    "revoked",
    "refresh_token_hashed",
    "device_name",
    "user_agent",
    "ip_address",
    "last_login_at",
    "expires_at",
}


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed store for users, sessions and one-time codes."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        # connection of the transaction() block running in this context
        self._tx_conn: ContextVar[Optional[psycopg.Connection]] = ContextVar(
            f"agora_pg_tx_{id(self)}", default=None
        )
        self._ensure_schema()

    def _connect(self):
        conn = self._tx_conn.get()
        if conn is not None:
            return contextlib.nullcontext(conn)
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        try:
            with self._connect() as conn:
                for statement in _SCHEMA:
                    conn.execute(statement)
        except psycopg.OperationalError as exc:
            raise StoreUnavailable("database unreachable", {"error": str(exc)})

    def close(self) -> None:
        self.pool.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        """Bind one pooled connection to the current context until the block exits."""
        if self._tx_conn.get() is not None:
            yield self
            return
        with self.pool.connection() as conn:
            with conn.transaction():
                token = self._tx_conn.set(conn)
                try:
                    yield self
                finally:
                    self._tx_conn.reset(token)

    # users
    def create_user(
        self,
        primary_email: str,
        hashed_password: str,
        display_name: str,
        *,
        profile_id: str,
        birthday=None,
        gender: Optional[Gender] = None,
        status: UserStatus = UserStatus.ACTIVE,
    ) -> User:
        now = utcnow()
        user = User(
            id=str(uuid.uuid4()),
            profile_id=profile_id,
            primary_email=primary_email,
            display_name=display_name,
            hashed_password=hashed_password,
            birthday=birthday,
            gender=gender,
            status=status,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._connect() as conn:
                taken = conn.execute(
                    "SELECT 1 FROM user_email WHERE email = %s", (primary_email,)
                ).fetchone()
                if taken:
                    raise ConstraintViolation(
                        "email already exists", {"field": "primary_email"}
                    )
                conn.execute(
                    """
                    INSERT INTO app_user (id, profile_id, primary_email, display_name, hashed_password,
                                          birthday, gender, status, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.profile_id,
                        user.primary_email,
                        user.display_name,
                        user.hashed_password,
                        user.birthday,
                        user.gender.value if user.gender else None,
                        user.status.value,
                        now,
                        now,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "primary_email"})
        return user

    def _user_from_row(self, row: dict, secondary: List[str]) -> User:
        gender = row.get("gender")
        return User(
            id=str(row["id"]),
            profile_id=row["profile_id"],
            primary_email=row["primary_email"],
            display_name=row["display_name"],
            hashed_password=row.get("hashed_password"),
            secondary_emails=secondary,
            birthday=row.get("birthday"),
            gender=Gender(gender) if gender else None,
            status=UserStatus(row.get("status") or UserStatus.ACTIVE.value),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _load_user(self, conn, where: str, value: Any) -> Optional[User]:
        row = conn.execute(f"SELECT * FROM app_user WHERE {where} = %s", (value,)).fetchone()
        if not row:
            return None
        emails = conn.execute(
            "SELECT email FROM user_email WHERE user_id = %s ORDER BY created_at",
            (row["id"],),
        ).fetchall()
        return self._user_from_row(row, [r["email"] for r in emails])

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            return self._load_user(conn, "id", user_id)

    def get_user_by_primary_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            return self._load_user(conn, "primary_email", email)

    def add_secondary_email(self, user_id: str, email: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                if not conn.execute("SELECT 1 FROM app_user WHERE id = %s", (user_id,)).fetchone():
                    return None
                if conn.execute(
                    "SELECT 1 FROM app_user WHERE primary_email = %s", (email,)
                ).fetchone():
                    raise ConstraintViolation("email already exists", {"field": "email"})
                conn.execute(
                    "INSERT INTO user_email (email, user_id) VALUES (%s, %s)",
                    (email, user_id),
                )
                conn.execute(
                    "UPDATE app_user SET updated_at = now() WHERE id = %s", (user_id,)
                )
                return self._load_user(conn, "id", user_id)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    def update_user_password(
        self, user_id: str, hashed_password: str
    ) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET hashed_password = %s, updated_at = now()
                WHERE id = %s RETURNING id
                """,
                (hashed_password, user_id),
            ).fetchone()
            if not row:
                return None
            return self._load_user(conn, "id", user_id)

    def delete_user(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM app_user WHERE id = %s RETURNING id", (user_id,)
            ).fetchone()
        return bool(row)

    # sessions
    def create_session(
        self,
        user_id: str,
        *,
        ttl_minutes: int,
        refresh_token_hashed: Optional[str] = None,
        device_name: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Session:
        sess = Session.new(
            user_id,
            ttl_minutes=ttl_minutes,
            refresh_token_hashed=refresh_token_hashed,
            device_name=device_name,
            user_agent=user_agent,
            ip_address=ip_address,
            now=now,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, revoked, refresh_token_hashed, device_name,
                                              user_agent, ip_address, created_at, last_login_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.revoked,
                        sess.refresh_token_hashed,
                        sess.device_name,
                        sess.user_agent,
                        sess.ip_address,
                        sess.created_at,
                        sess.last_login_at,
                        sess.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def _session_from_row(self, row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            revoked=bool(row.get("revoked", False)),
            refresh_token_hashed=row.get("refresh_token_hashed"),
            device_name=row.get("device_name"),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
            created_at=row["created_at"],
            last_login_at=row.get("last_login_at") or row["created_at"],
            expires_at=row["expires_at"],
        )

    def get_session(self, session_id: str) -> Optional[Session]:
        if not _is_uuid(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def update_session(self, session_id: str, **fields) -> Optional[Session]:
        unknown = set(fields) - _SESSION_COLUMNS
        if unknown:
            raise ValueError(f"unknown session fields: {sorted(unknown)}")
        if not _is_uuid(session_id):
            return None
        if not fields:
            return self.get_session(session_id)
        names = sorted(fields)
        assignments = ", ".join(f"{name} = %s" for name in names)
        params = [fields[name] for name in names] + [session_id]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE auth_session SET {assignments} WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_session_by_device(
        self, user_id: str, device_name: str, ip_address: str
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND device_name = %s AND ip_address = %s
                ORDER BY created_at DESC LIMIT 1
                """,
                (user_id, device_name, ip_address),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_active_session(self, user_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND NOT revoked
                ORDER BY last_login_at DESC LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_session(self, session_id: str) -> Optional[Session]:
        return self.update_session(
            session_id, revoked=True, refresh_token_hashed=None
        )

    # one-time codes
    def upsert_code(
        self,
        user_id: str,
        code_type: CodeType,
        tokens: List[str],
        *,
        expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> Code:
        code = Code(
            user_id=user_id,
            type=CodeType(code_type),
            tokens=list(tokens),
            created_at=now or utcnow(),
            expires_at=expires_at,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO one_time_code (user_id, type, tokens, created_at, expires_at, last_attempt_at)
                    VALUES (%s, %s, %s, %s, %s, NULL)
                    ON CONFLICT (user_id, type) DO UPDATE
                    SET tokens = EXCLUDED.tokens,
                        created_at = EXCLUDED.created_at,
                        expires_at = EXCLUDED.expires_at,
                        last_attempt_at = NULL
                    """,
                    (user_id, code.type.value, code.tokens, code.created_at, code.expires_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return code

    def _code_from_row(self, row: dict) -> Code:
        return Code(
            user_id=str(row["user_id"]),
            type=CodeType(row["type"]),
            tokens=list(row.get("tokens") or []),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_attempt_at=row.get("last_attempt_at"),
        )

    def get_code(self, user_id: str, code_type: CodeType) -> Optional[Code]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM one_time_code WHERE user_id = %s AND type = %s",
                (user_id, CodeType(code_type).value),
            ).fetchone()
        return self._code_from_row(row) if row else None

    def find_code_by_token(self, token: str, code_type: CodeType) -> List[Code]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM one_time_code WHERE type = %s AND %s = ANY(tokens)",
                (CodeType(code_type).value, token),
            ).fetchall()
        return [self._code_from_row(row) for row in rows]

    def touch_code_attempt(
        self, user_id: str, code_type: CodeType, now: datetime
    ) -> Optional[Code]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE one_time_code SET last_attempt_at = %s
                WHERE user_id = %s AND type = %s RETURNING *
                """,
                (now, user_id, CodeType(code_type).value),
            ).fetchone()
        return self._code_from_row(row) if row else None

    def delete_code(self, user_id: str, code_type: CodeType) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM one_time_code WHERE user_id = %s AND type = %s RETURNING user_id",
                (user_id, CodeType(code_type).value),
            ).fetchone()
        return bool(row)
