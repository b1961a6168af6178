from contextlib import contextmanager

import pytest
from fastapi import HTTPException

from luminila.app.deps import _codes_granting, _extract_session_token, _parse_company_id
from luminila.app.routers import auth
from luminila.app.routers.loyalty import TierIn, _validate_tiers
from luminila.app.security import hash_password


def test_bearer_token_wins_over_cookie():
    assert _extract_session_token("Bearer abc123 ", "cookie-token") == "abc123"
    assert _extract_session_token("bearer abc123", None) == "abc123"


def test_cookie_token_used_without_header():
    assert _extract_session_token(None, "cookie-token") == "cookie-token"
    assert _extract_session_token("Basic xyz", "cookie-token") == "cookie-token"


def test_missing_token_is_401():
    with pytest.raises(HTTPException) as exc_info:
        _extract_session_token(None, None)
    assert exc_info.value.status_code == 401


def test_tier_validation():
    _validate_tiers([TierIn(name="Bronze", min_points=0, max_points=999), TierIn(name="Silver", min_points=1000)])
    with pytest.raises(HTTPException) as exc_info:
        _validate_tiers([TierIn(name="Gold", min_points=0), TierIn(name="gold ", min_points=10)])
    assert exc_info.value.detail == "tier names must be unique"
    with pytest.raises(HTTPException) as exc_info:
        _validate_tiers([TierIn(name="Gold", min_points=500, max_points=100)])
    assert "max_points below min_points" in str(exc_info.value.detail)
    with pytest.raises(HTTPException):
        _validate_tiers([TierIn(name="  ", min_points=0)])


def test_company_id_header_is_normalised():
    assert _parse_company_id(" 6F9619FF-8B86-D011-B42D-00C04FC964FF ") == "6f9619ff-8b86-d011-b42d-00c04fc964ff"
    with pytest.raises(HTTPException) as exc_info:
        _parse_company_id("store-1")
    assert exc_info.value.status_code == 400


def test_write_permission_grants_read():
    assert _codes_granting("inventory:read") == ["inventory:read", "inventory:write"]
    assert _codes_granting("inventory:write") == ["inventory:write"]
    assert _codes_granting("sync:run") == ["sync:run"]


class _DummyCursor:
    def __init__(self, rows):
        self.rows = list(rows)
        self.executes = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executes.append((sql, params))

    def fetchone(self):
        return self.rows.pop(0) if self.rows else None


class _DummyConn:
    def __init__(self, cursor):
        self._cursor = cursor

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    @contextmanager
    def transaction(self):
        yield

    def cursor(self):
        return self._cursor


def test_change_password_rejects_wrong_current_password(monkeypatch):
    cur = _DummyCursor([{"hashed_password": hash_password("correct-horse")}])
    monkeypatch.setattr(auth, "get_admin_conn", lambda: _DummyConn(cur))
    with pytest.raises(HTTPException) as exc_info:
        auth.change_password(
            auth.ChangePasswordIn(current_password="wrong-horse", new_password="battery-staple"),
            session={"user_id": "u1", "session_id": "s1"},
        )
    assert exc_info.value.detail == "current password is incorrect"
    assert len(cur.executes) == 1


def test_change_password_signs_out_other_sessions(monkeypatch):
    cur = _DummyCursor([{"hashed_password": hash_password("correct-horse")}])
    monkeypatch.setattr(auth, "get_admin_conn", lambda: _DummyConn(cur))
    out = auth.change_password(
        auth.ChangePasswordIn(current_password="correct-horse", new_password="battery-staple"),
        session={"user_id": "u1", "session_id": "s1"},
    )
    assert out == {"ok": True}
    assert len(cur.executes) == 3
    assert cur.executes[2][1] == ("u1", "s1")
