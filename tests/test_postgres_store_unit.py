import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from authgate.storage.errors import ConstraintViolation
from authgate.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, result=None, error=None):
        self.result = result or FakeResult()
        self.error = error
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        return self.result


def _store(conn=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store.dsn = "postgresql://unit-test"

    @contextmanager
    def _connect():
        yield conn

    store._connect = _connect
    return store


def test_create_user_inserts_and_returns_user():
    conn = FakeConnection()
    user = _store(conn).create_user("alice", "$argon2id$hash", "gAAAA-cipher")

    sql, params = conn.statements[0]
    assert sql.startswith("INSERT INTO app_user")
    assert params[:4] == (user.id, "alice", "$argon2id$hash", "gAAAA-cipher")
    uuid.UUID(user.id)


def test_duplicate_username_becomes_constraint_violation():
    conn = FakeConnection(error=errors.UniqueViolation("duplicate key"))

    with pytest.raises(ConstraintViolation) as excinfo:
        _store(conn).create_user("alice", "hash", "cipher")

    assert excinfo.value.detail == {"field": "username"}


def test_get_user_maps_row():
    user_id = uuid.uuid4()
    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    row = {
        "id": user_id,
        "username": "alice",
        "password_hash": "hash",
        "encrypted_phone": "cipher",
        "created_at": created,
        "updated_at": created,
    }
    conn = FakeConnection(FakeResult(row=row))

    user = _store(conn).get_user(str(user_id))

    assert user.id == str(user_id)
    assert user.encrypted_phone == "cipher"
    assert user.created_at == created


def test_get_user_with_non_uuid_skips_query():
    store = _store(None)
    assert store.get_user("not-a-uuid") is None


def test_get_user_by_username_missing():
    conn = FakeConnection(FakeResult(row=None))
    assert _store(conn).get_user_by_username("ghost") is None
    assert conn.statements[0][1] == ("ghost",)


def test_update_password_reports_rowcount():
    assert _store(FakeConnection(FakeResult(rowcount=1))).update_password("u1", "h") is True
    assert _store(FakeConnection(FakeResult(rowcount=0))).update_password("u1", "h") is False


def test_pool_is_opened_with_bounded_wait(monkeypatch):
    created = {}
    conn = FakeConnection()

    class RecordingPool:
        def __init__(self, dsn, **kwargs):
            created["dsn"] = dsn
            created.update(kwargs)

        @contextmanager
        def connection(self):
            yield conn

    monkeypatch.setattr("authgate.storage.postgres.ConnectionPool", RecordingPool)

    PostgresStore("postgresql://unit-test", pool_timeout=2.5)

    assert created["dsn"] == "postgresql://unit-test"
    assert created["open"] is True
    assert created["timeout"] == 2.5
    assert conn.statements[0][0].startswith("CREATE TABLE IF NOT EXISTS app_user")
