from contextlib import contextmanager

import pytest
from fastapi import HTTPException

from luminila.app.routers import users as users_router
from luminila.app.routers.users import RoleIn, RoleUpdate, UserActiveIn, UserIn, UserRolesIn


class _DummyCursor:
    def __init__(self, rows=(), all_rows=()):
        self._rows = list(rows)
        self._all_rows = list(all_rows)
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        return self._all_rows.pop(0) if self._all_rows else []


class _DummyConn:
    def __init__(self, cur):
        self.cur = cur

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    @contextmanager
    def transaction(self):
        yield

    def cursor(self):
        return self.cur


@pytest.fixture
def fake_db(monkeypatch):
    def _install(rows=(), all_rows=()):
        cur = _DummyCursor(rows, all_rows)
        monkeypatch.setattr(users_router, "get_conn", lambda: _DummyConn(cur))
        monkeypatch.setattr(users_router, "set_company_context", lambda conn, company_id: None)
        monkeypatch.setattr(users_router, "write_audit", lambda *a, **k: None)
        return cur

    return _install


ADMIN = {"user_id": "u1"}
OWNER_ROLE = {"id": "r1", "name": "Owner", "is_system": True}
STAFF_ROLE = {"id": "r2", "name": "Counter staff", "is_system": False}


def _sql(cur, fragment):
    return [p for sql, p in cur.executed if fragment in sql]


def test_system_role_cannot_be_renamed(fake_db):
    fake_db([OWNER_ROLE])
    with pytest.raises(HTTPException) as exc_info:
        users_router.update_role("r1", RoleUpdate(name="Boss"), company_id="c1", user=ADMIN)
    assert exc_info.value.status_code == 400


def test_system_role_permissions_are_fixed(fake_db):
    cur = fake_db([OWNER_ROLE])
    with pytest.raises(HTTPException):
        users_router.update_role("r1", RoleUpdate(permission_codes=["sales:read"]), company_id="c1", user=ADMIN)
    assert _sql(cur, "DELETE FROM role_permissions") == []


def test_system_role_description_is_editable(fake_db):
    cur = fake_db([OWNER_ROLE])
    assert users_router.update_role("r1", RoleUpdate(description="Shop owner"), company_id="c1", user=ADMIN) == {"ok": True}
    assert _sql(cur, "UPDATE roles") == [["Shop owner", "c1", "r1"]]


def test_role_permissions_are_replaced(fake_db):
    cur = fake_db([STAFF_ROLE], all_rows=[[{"id": 7, "code": "sales:read"}, {"id": 9, "code": "sales:write"}]])
    users_router.update_role(
        "r2", RoleUpdate(permission_codes=["Sales:Write", "sales:read", "sales:read"]), company_id="c1", user=ADMIN
    )
    assert _sql(cur, "SELECT id, code FROM permissions") == [(["sales:read", "sales:write"],)]
    assert _sql(cur, "DELETE FROM role_permissions") == [("r2",)]
    assert _sql(cur, "INSERT INTO role_permissions") == [("r2", 7), ("r2", 9)]


def test_unknown_permission_rejected(fake_db):
    fake_db([{"id": "r3"}], all_rows=[[{"id": 7, "code": "sales:read"}]])
    with pytest.raises(HTTPException) as exc_info:
        users_router.create_role(RoleIn(name="Cashier", permission_codes=["sales:read", "vault:open"]), company_id="c1", user=ADMIN)
    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == "unknown permission: vault:open"


def test_duplicate_role_name_conflicts(fake_db):
    fake_db([None])
    with pytest.raises(HTTPException) as exc_info:
        users_router.create_role(RoleIn(name="Cashier"), company_id="c1", user=ADMIN)
    assert exc_info.value.status_code == 409


def test_system_role_cannot_be_deleted(fake_db):
    fake_db([OWNER_ROLE])
    with pytest.raises(HTTPException) as exc_info:
        users_router.delete_role("r1", company_id="c1", user=ADMIN)
    assert exc_info.value.detail == "system roles cannot be deleted"


def test_assigned_role_cannot_be_deleted(fake_db):
    cur = fake_db([STAFF_ROLE, {"n": 3}])
    with pytest.raises(HTTPException) as exc_info:
        users_router.delete_role("r2", company_id="c1", user=ADMIN)
    assert exc_info.value.status_code == 409
    assert exc_info.value.detail == "role is assigned to 3 user(s)"
    assert _sql(cur, "DELETE FROM roles") == []


def test_missing_role_is_404(fake_db):
    fake_db([None])
    with pytest.raises(HTTPException) as exc_info:
        users_router.delete_role("r9", company_id="c1", user=ADMIN)
    assert exc_info.value.status_code == 404


def test_roles_from_another_store_are_refused(fake_db):
    cur = fake_db([{"id": "u2"}], all_rows=[[]])
    with pytest.raises(HTTPException) as exc_info:
        users_router.set_user_roles("u2", UserRolesIn(role_ids=["r-other"]), company_id="c1", user=ADMIN)
    assert exc_info.value.status_code == 404
    assert _sql(cur, "DELETE FROM user_roles") == []


def test_set_roles_keeps_an_active_owner(fake_db):
    # The owner-holder check finds nobody after the change.
    fake_db([{"id": "u2"}, None], all_rows=[[{"id": "r2"}]])
    with pytest.raises(HTTPException) as exc_info:
        users_router.set_user_roles("u2", UserRolesIn(role_ids=["r2"]), company_id="c1", user=ADMIN)
    assert exc_info.value.detail == "the store must keep at least one active owner"


def test_set_roles_replaces_membership(fake_db):
    cur = fake_db([{"id": "u2"}, {"?column?": 1}], all_rows=[[{"id": "r2"}, {"id": "r1"}]])
    out = users_router.set_user_roles("u2", UserRolesIn(role_ids=["r2", "r1", "r2"]), company_id="c1", user=ADMIN)
    assert out == {"ok": True, "role_ids": ["r1", "r2"]}
    assert _sql(cur, "INSERT INTO user_roles") == [("u2", "c1", "r1"), ("u2", "c1", "r2")]


def test_cannot_deactivate_yourself(fake_db):
    cur = fake_db()
    with pytest.raises(HTTPException) as exc_info:
        users_router.set_user_active("u1", UserActiveIn(is_active=False), company_id="c1", user=ADMIN)
    assert exc_info.value.status_code == 400
    assert cur.executed == []


def test_deactivation_revokes_sessions(fake_db):
    cur = fake_db([{"?column?": 1}, {"?column?": 1}])
    out = users_router.set_user_active("u2", UserActiveIn(is_active=False), company_id="c1", user=ADMIN)
    assert out == {"ok": True, "is_active": False}
    assert _sql(cur, "UPDATE users SET is_active") == [(False, "u2")]
    assert _sql(cur, "UPDATE auth_sessions") == [("u2",)]


def test_reactivation_keeps_sessions_alone(fake_db):
    cur = fake_db([{"?column?": 1}])
    users_router.set_user_active("u2", UserActiveIn(is_active=True), company_id="c1", user=ADMIN)
    assert _sql(cur, "UPDATE auth_sessions") == []


def test_last_owner_cannot_be_deactivated(fake_db):
    fake_db([{"?column?": 1}, None])
    with pytest.raises(HTTPException) as exc_info:
        users_router.set_user_active("u2", UserActiveIn(is_active=False), company_id="c1", user=ADMIN)
    assert exc_info.value.detail == "the store must keep at least one active owner"


def test_non_member_is_404(fake_db):
    fake_db([None])
    with pytest.raises(HTTPException) as exc_info:
        users_router.set_user_active("u9", UserActiveIn(is_active=True), company_id="c1", user=ADMIN)
    assert exc_info.value.status_code == 404


def test_create_user_with_taken_email(fake_db, monkeypatch):
    monkeypatch.setattr(users_router, "hash_password", lambda p: "hashed")
    fake_db([None], all_rows=[[{"id": "r2"}]])
    with pytest.raises(HTTPException) as exc_info:
        users_router.create_user(
            UserIn(email="Asha@Luminila.in", password="s3cret-pass", role_ids=["r2"]), company_id="c1", user=ADMIN
        )
    assert exc_info.value.status_code == 409


def test_create_user_lowercases_email_and_assigns_roles(fake_db, monkeypatch):
    monkeypatch.setattr(users_router, "hash_password", lambda p: "hashed")
    cur = fake_db([{"id": "u5"}], all_rows=[[{"id": "r2"}]])
    out = users_router.create_user(
        UserIn(email="Asha@Luminila.in", password="s3cret-pass", full_name="Asha", role_ids=["r2"]), company_id="c1", user=ADMIN
    )
    assert out == {"id": "u5"}
    assert _sql(cur, "INSERT INTO users")[0] == ("asha@luminila.in", "Asha", None, "hashed")
    assert _sql(cur, "INSERT INTO user_roles") == [("u5", "c1", "r2")]


def test_create_user_needs_a_role(fake_db):
    fake_db()
    with pytest.raises(HTTPException) as exc_info:
        users_router.create_user(UserIn(email="a@b.in", password="s3cret-pass"), company_id="c1", user=ADMIN)
    assert exc_info.value.detail == "at least one role is required"
