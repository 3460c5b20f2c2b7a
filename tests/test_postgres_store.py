import contextlib
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone

import pytest
from psycopg import errors

from agora.logging import get_logger
from agora.storage.errors import ConstraintViolation
from agora.storage.models import CodeType
from agora.storage.postgres import PostgresStore

NOW = datetime(2026, 2, 2, 8, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Records statements and answers them from a queue of canned row lists."""

    def __init__(self, results=None, raises=None):
        self.statements = []
        self.results = list(results or [])
        self.raises = raises
        self.transactions = 0

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.raises is not None:
            raise self.raises
        return FakeCursor(self.results.pop(0) if self.results else [])

    @contextlib.contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.checkouts = 0

    @contextlib.contextmanager
    def connection(self):
        self.checkouts += 1
        yield self.conn


def _store(conn):
    store = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://test"
    store.logger = get_logger(__name__)
    store.pool = FakePool(conn)
    store._tx_conn = ContextVar(f"test_tx_{uuid.uuid4()}", default=None)
    return store


def _session_row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "user_id": uuid.uuid4(),
        "revoked": False,
        "refresh_token_hashed": "hash",
        "device_name": "Chrome on Linux",
        "user_agent": "ua",
        "ip_address": "10.0.0.1",
        "created_at": NOW,
        "last_login_at": NOW,
        "expires_at": NOW,
    }
    row.update(overrides)
    return row


def test_get_user_rejects_non_uuid_without_query():
    conn = FakeConnection()
    store = _store(conn)

    assert store.get_user("not-a-uuid") is None
    assert conn.statements == []


def test_create_user_maps_unique_violation():
    conn = FakeConnection(raises=errors.UniqueViolation("duplicate key"))
    store = _store(conn)

    with pytest.raises(ConstraintViolation):
        store.create_user("nia@example.com", "hash", "Nia", profile_id="1")


def test_create_user_rejects_email_used_as_secondary():
    conn = FakeConnection(results=[[{"?column?": 1}]])
    store = _store(conn)

    with pytest.raises(ConstraintViolation):
        store.create_user("nia@example.com", "hash", "Nia", profile_id="1")
    assert len(conn.statements) == 1


def test_update_session_rejects_unknown_columns():
    store = _store(FakeConnection())

    with pytest.raises(ValueError):
        store.update_session(str(uuid.uuid4()), user_id="x")


def test_revoke_session_clears_hash():
    row = _session_row(revoked=True, refresh_token_hashed=None)
    conn = FakeConnection(results=[[row]])
    store = _store(conn)

    session = store.revoke_session(str(row["id"]))

    sql, params = conn.statements[0]
    assert sql.startswith("UPDATE auth_session SET refresh_token_hashed = %s, revoked = %s")
    assert params[:2] == [None, True]
    assert session.revoked is True
    assert session.id == str(row["id"])


def test_revoke_session_with_malformed_id_is_none():
    conn = FakeConnection(raises=errors.InvalidTextRepresentation("invalid input syntax for type uuid"))
    store = _store(conn)

    assert store.revoke_session("abc") is None
    assert store.update_session("abc", device_name="Safari on iOS") is None
    assert conn.statements == []


def test_code_lookups_with_malformed_user_id():
    conn = FakeConnection(raises=errors.InvalidTextRepresentation("invalid input syntax for type uuid"))
    store = _store(conn)

    assert store.get_code("abc", CodeType.VERIFICATION) is None
    assert store.touch_code_attempt("abc", CodeType.RECOVERY, NOW) is None
    assert store.delete_code("abc", CodeType.VERIFICATION) is False
    assert conn.statements == []


def test_user_writes_with_malformed_id():
    conn = FakeConnection(raises=errors.InvalidTextRepresentation("invalid input syntax for type uuid"))
    store = _store(conn)

    assert store.update_user_password("abc", "hash") is None
    assert store.delete_user("abc") is False
    assert conn.statements == []


def test_find_active_session_orders_by_last_login():
    conn = FakeConnection(results=[[_session_row()]])
    store = _store(conn)

    store.find_active_session(str(uuid.uuid4()))

    sql, _ = conn.statements[0]
    assert "NOT revoked" in sql
    assert "ORDER BY last_login_at DESC" in sql


def test_upsert_code_resets_attempts():
    conn = FakeConnection()
    store = _store(conn)
    user_id = str(uuid.uuid4())

    code = store.upsert_code(user_id, CodeType.RECOVERY, ["123456"], expires_at=NOW, now=NOW)

    sql, params = conn.statements[0]
    assert "ON CONFLICT (user_id, type) DO UPDATE" in sql
    assert "last_attempt_at = NULL" in sql
    assert params == (user_id, "RECOVERY", ["123456"], NOW, NOW)
    assert code.type is CodeType.RECOVERY


def test_upsert_code_maps_missing_user():
    store = _store(FakeConnection(raises=errors.ForeignKeyViolation("fk")))

    with pytest.raises(ConstraintViolation):
        store.upsert_code(str(uuid.uuid4()), CodeType.RECOVERY, ["1"], expires_at=NOW)


def test_find_code_by_token_uses_any():
    user_id = uuid.uuid4()
    row = {
        "user_id": user_id,
        "type": "RECOVERY",
        "tokens": ["654321"],
        "created_at": NOW,
        "expires_at": NOW,
        "last_attempt_at": None,
    }
    conn = FakeConnection(results=[[row]])
    store = _store(conn)

    codes = store.find_code_by_token("654321", CodeType.RECOVERY)

    assert "ANY(tokens)" in conn.statements[0][0]
    assert [c.user_id for c in codes] == [str(user_id)]


def test_transaction_shares_one_connection():
    conn = FakeConnection(results=[[{"id": 1}], [], [{"user_id": 1}]])
    store = _store(conn)

    with store.transaction():
        assert store._tx_conn.get() is conn
        store.delete_code(str(uuid.uuid4()), CodeType.VERIFICATION)

    assert conn.transactions == 1
    assert store.pool.checkouts == 1
    assert store._tx_conn.get() is None
