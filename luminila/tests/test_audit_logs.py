from datetime import date

import pytest
from fastapi import HTTPException

from luminila.app.routers import audit as audit_router
from luminila.app.routers.audit import _parse_uuid_optional, permission_for_entity


class _DummyCursor:
    def __init__(self):
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchall(self):
        return []


class _DummyConn:
    def __init__(self):
        self.cur = _DummyCursor()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self.cur


@pytest.mark.parametrize(
    "entity_type,permission",
    [
        ("sales_order", "orders:read"),
        ("sales", "sales:read"),
        ("invoice", "sales:read"),
        ("purchase_order", "purchases:read"),
        ("goods_receipt", "purchases:read"),
        ("product", "inventory:read"),
        ("stock_movement", "inventory:read"),
        ("customer", "customers:read"),
        ("vendors", "vendors:read"),
        ("expense", "expenses:read"),
        ("loyalty_account", "loyalty:read"),
        ("role", "users:read"),
        ("user", "users:read"),
        ("sync_run", "audit:read"),
        (None, "audit:read"),
    ],
)
def test_permission_for_entity(entity_type, permission):
    assert permission_for_entity(entity_type) == permission


def test_parse_uuid_optional():
    assert _parse_uuid_optional("  ", "entity_id") is None
    assert _parse_uuid_optional("A987FBC9-4BED-3078-CF07-9141BA07C9F3", "entity_id") == "a987fbc9-4bed-3078-cf07-9141ba07c9f3"
    with pytest.raises(HTTPException) as exc_info:
        _parse_uuid_optional("not-a-uuid", "user_id")
    assert exc_info.value.detail == "user_id must be a valid UUID"


def test_audit_logs_filters_and_checks_module_permission(monkeypatch):
    conn = _DummyConn()
    checked = []

    def fake_require_permission(code):
        checked.append(code)
        return lambda company_id, user: None

    monkeypatch.setattr(audit_router, "get_conn", lambda: conn)
    monkeypatch.setattr(audit_router, "set_company_context", lambda conn, company_id: None)
    monkeypatch.setattr(audit_router, "require_permission", fake_require_permission)

    out = audit_router.list_audit_logs(
        entity_type="sales",
        entity_id="A987FBC9-4BED-3078-CF07-9141BA07C9F3",
        action_prefix="sale_",
        user_id=None,
        limit=50,
        offset=0,
        company_id="c1",
        user={"user_id": "u1"},
    )
    assert out == {"audit_logs": []}
    assert checked == ["sales:read"]
    sql, params = conn.cur.executed[0]
    assert "l.entity_type = %s" in sql
    assert "l.action LIKE %s" in sql
    assert params == ["c1", "sales", "a987fbc9-4bed-3078-cf07-9141ba07c9f3", "sale_%", 50, 0]


def test_audit_logs_limit_bounds():
    with pytest.raises(HTTPException) as exc_info:
        audit_router.list_audit_logs(limit=0, offset=0, company_id="c1", user={"user_id": "u1"})
    assert exc_info.value.status_code == 400


def test_audit_logs_date_range_is_inclusive(monkeypatch):
    conn = _DummyConn()
    monkeypatch.setattr(audit_router, "get_conn", lambda: conn)
    monkeypatch.setattr(audit_router, "set_company_context", lambda conn, company_id: None)
    monkeypatch.setattr(audit_router, "require_permission", lambda code: (lambda company_id, user: None))

    audit_router.list_audit_logs(
        date_from=date(2024, 3, 1),
        date_to=date(2024, 3, 31),
        limit=20,
        company_id="c1",
        user={"user_id": "u1"},
    )
    _sql, params = conn.cur.executed[0]
    assert params == ["c1", date(2024, 3, 1), date(2024, 4, 1), 20, 0]


def test_audit_logs_rejects_inverted_range():
    with pytest.raises(HTTPException) as exc_info:
        audit_router.list_audit_logs(
            date_from=date(2024, 4, 1), date_to=date(2024, 3, 1), company_id="c1", user={"user_id": "u1"}
        )
    assert exc_info.value.detail == "date_from must be on or before date_to"
