import contextlib
from datetime import datetime, timezone
from pathlib import Path

import pytest
from psycopg import errors

from idkeeper.storage.errors import ConstraintViolation
from idkeeper.storage.models import CodeKind
from idkeeper.storage.postgres import PostgresStore, _tx_conn


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Records statements and replays scripted results in order."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.statements = []
        self.savepoints = 0

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result

    @contextlib.contextmanager
    def transaction(self):
        self.savepoints += 1
        yield


def _store(tmp_path: Path) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store.fs_root = tmp_path
    return store


@pytest.fixture
def bound():
    """Bind a fake connection as the active transaction connection."""
    tokens = []

    def bind(conn):
        tokens.append(_tx_conn.set(conn))
        return conn

    yield bind
    for token in reversed(tokens):
        _tx_conn.reset(token)


def test_identity_from_row(tmp_path):
    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    identity = PostgresStore._identity_from_row(
        {
            "id": "u-1",
            "name": "Alice",
            "email": "alice@example.com",
            "is_verified": True,
            "password_hash": None,
            "provider": "google",
            "created_at": created,
            "updated_at": created,
        }
    )
    assert identity.verified is True
    assert identity.provider == "google"
    assert not identity.is_standard
    assert identity.created_at == created


def test_provider_from_row():
    provider = PostgresStore._provider_from_row(
        {
            "id": 2,
            "name": "github",
            "client_id": "cid",
            "client_secret": "cipher",
            "redirect_uri": "https://x/cb",
            "active": True,
            "updated_at": None,
        }
    )
    assert provider.id == 2
    assert provider.is_configured
    assert provider.active is True


def test_connect_uses_bound_connection(tmp_path, bound):
    """Calls inside transaction() share the bound connection instead of the pool."""
    store = _store(tmp_path)
    conn = bound(FakeConnection())

    with store._connect() as active:
        assert active is conn


def test_nested_transaction_is_savepoint(tmp_path, bound):
    store = _store(tmp_path)
    conn = bound(FakeConnection())

    with store.transaction():
        pass
    assert conn.savepoints == 1


def test_get_setting(tmp_path, bound):
    store = _store(tmp_path)
    bound(FakeConnection([FakeCursor([{"value": "enabled"}]), FakeCursor()]))

    assert store.get_setting("mfa") == "enabled"
    assert store.get_setting("missing") is None


def test_revocation_insert_is_idempotent_sql(tmp_path, bound):
    store = _store(tmp_path)
    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    conn = bound(FakeConnection([FakeCursor(), FakeCursor([{"created_at": created}])]))

    entry = store.add_revocation("u-1", "jti-1")

    assert entry.created_at == created
    assert "ON CONFLICT (user_id, jti) DO NOTHING" in conn.statements[0][0]


def test_code_lookup_uses_digest_and_kind(tmp_path, bound):
    store = _store(tmp_path)
    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    row = {"user_id": "u-1", "kind": "mfa", "code_hash": "digest", "created_at": created}
    conn = bound(FakeConnection([FakeCursor([row])]))

    record = store.get_verification_code(CodeKind.MFA, "digest")

    assert record.kind == CodeKind.MFA
    assert conn.statements[0][1] == ("mfa", "digest")


def test_delete_code_reports_rowcount(tmp_path, bound):
    store = _store(tmp_path)
    bound(FakeConnection([FakeCursor(rowcount=1), FakeCursor(rowcount=0)]))

    assert store.delete_verification_code(CodeKind.MFA, "digest") is True
    assert store.delete_verification_code(CodeKind.MFA, "digest") is False


def test_unique_violation_maps_to_constraint(tmp_path, bound):
    store = _store(tmp_path)
    bound(FakeConnection([errors.UniqueViolation("duplicate key")]))

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_admin("root@example.com", "hash")
    assert exc_info.value.field == "admin_email"


def test_standard_user_email_collision(tmp_path, bound):
    store = _store(tmp_path)
    bound(FakeConnection([FakeCursor(), errors.UniqueViolation("duplicate key")]))

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_standard_user("Alice", "alice@example.com", "hash")
    assert exc_info.value.field == "email"


def test_missing_schema_is_reported(tmp_path, bound):
    store = _store(tmp_path)
    bound(FakeConnection([FakeCursor([{"oid": None}])] * 9))

    with pytest.raises(RuntimeError) as exc_info:
        store._verify_required_schema()
    assert "app_user" in str(exc_info.value)
