"""Unit tests for the Postgres identity store with a fake connection pool."""

from contextlib import contextmanager

import pytest
from argon2 import PasswordHasher, Type

from sessiongate.storage import identity_postgres
from sessiongate.storage.identity_postgres import PostgresIdentityStore
from sessiongate.storage.models import Role

HASHER = PasswordHasher(type=Type.ID)


class FakeResult:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Routes queries by the table they target."""

    def __init__(self, tables, permissions):
        self.tables = tables
        self.permissions = permissions
        self.queries = []

    def execute(self, query, params):
        self.queries.append((query, params))
        if isinstance(query, str):
            return FakeResult(
                [{"permission_key": key} for key in self.permissions.get(params[0], [])]
            )
        table = next(name for name in self.tables if f"Identifier('{name}')" in repr(query))
        rows = self.tables[table]
        if len(params) == 1:
            matches = [row for row in rows if str(row["id"]) == params[0]]
        else:
            login = params[0]
            matches = [
                row
                for row in rows
                if row["username"].lower() == login or row["email"].lower() == login
            ]
        return FakeResult(matches[:1])


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    @contextmanager
    def connection(self):
        yield self.conn

    def close(self):
        self.closed = True


@pytest.fixture
def conn():
    tables = {
        "super_admin_account": [],
        "admin_account": [],
        "staff_account": [
            {
                "id": 3,
                "name": "Sam Staff",
                "username": "sam",
                "email": "sam@example.com",
                "is_active": True,
                "password_hash": HASHER.hash("staff-pass"),
            }
        ],
        "app_user": [
            {
                "id": 42,
                "name": "Ada Reader",
                "username": "Ada",
                "email": "ada@example.com",
                "is_active": True,
                "password_hash": HASHER.hash("user-pass"),
            }
        ],
    }
    return FakeConnection(tables, {"3": ["books:write", "fines:read"]})


@pytest.fixture
def store(monkeypatch, conn):
    monkeypatch.setattr(identity_postgres, "ConnectionPool", lambda *a, **kw: FakePool(conn))
    return PostgresIdentityStore("postgresql://unused")


class TestGetIdentity:
    def test_user_lookup(self, store):
        identity = store.get_identity(Role.USER, "42")

        assert identity.id == "42"
        assert identity.role is Role.USER
        assert identity.username == "Ada"
        assert identity.permissions == frozenset()

    def test_staff_permissions_loaded(self, store):
        identity = store.get_identity(Role.STAFF, "3")

        assert identity.permissions == frozenset({"books:write", "fines:read"})

    def test_lookup_is_scoped_to_role_table(self, store):
        assert store.get_identity(Role.ADMIN, "42") is None


class TestAuthenticate:
    def test_username_is_case_insensitive(self, store):
        identity = store.authenticate(" ADA ", "user-pass")

        assert identity is not None
        assert identity.id == "42"

    def test_email_login(self, store):
        assert store.authenticate("sam@example.com", "staff-pass").role is Role.STAFF

    def test_wrong_password(self, store):
        assert store.authenticate("ada", "nope") is None

    def test_unknown_user_searches_every_table(self, store, conn):
        assert store.authenticate("nobody", "user-pass") is None

        assert len(conn.queries) == len(identity_postgres.ROLE_TABLES)


def test_close_releases_pool(store):
    store.close()

    assert store.pool.closed is True
