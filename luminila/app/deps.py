from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_conn, set_company_context
from .security import hash_session_token
from datetime import datetime, timezone
from typing import Optional
import uuid


SESSION_COOKIE_NAME = "luminila_session"


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def _parse_company_id(raw: str) -> str:
    try:
        return str(uuid.UUID(str(raw).strip()))
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid company id")


def _codes_granting(code: str) -> list:
    # A module's write permission also grants its read permission.
    module, _, action = code.partition(":")
    if action == "read":
        return [code, f"{module}:write"]
    return [code]


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, u.email, u.full_name, u.is_active AS user_active,
                       s.expires_at, s.is_active, s.active_company_id
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token_hash = %s
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
    if not row or not row["is_active"] or row["expires_at"] < datetime.now(timezone.utc):
        raise HTTPException(status_code=401, detail="invalid token")
    if not row["user_active"]:
        raise HTTPException(status_code=401, detail="user disabled")
    return {
        "session_id": row["session_id"],
        "user_id": row["user_id"],
        "email": row["email"],
        "full_name": row["full_name"],
        "active_company_id": row["active_company_id"],
        "token": token,
    }


def get_current_user(session=Depends(get_session)):
    return {"user_id": session["user_id"], "email": session["email"], "full_name": session["full_name"]}


def get_company_id(
    x_company_id: Optional[str] = Header(None, alias="X-Company-Id"),
    session=Depends(get_session),
) -> str:
    if x_company_id:
        return _parse_company_id(x_company_id)
    if session.get("active_company_id"):
        return str(session["active_company_id"])
    # Single-store installs: a user with exactly one store needs no header.
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT DISTINCT company_id FROM user_roles WHERE user_id = %s LIMIT 2",
                (session["user_id"],),
            )
            rows = cur.fetchall()
    if len(rows) == 1:
        return str(rows[0]["company_id"])
    raise HTTPException(status_code=400, detail="missing company id")


def require_company_access(company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                "SELECT 1 FROM user_roles WHERE user_id = %s AND company_id = %s LIMIT 1",
                (user["user_id"], company_id),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=403, detail="no access to this store")
    return True


def require_permission(code: str):
    granting = _codes_granting(code)

    def _dep(company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
        with get_conn() as conn:
            set_company_context(conn, company_id)
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT 1
                    FROM user_roles ur
                    JOIN role_permissions rp ON rp.role_id = ur.role_id
                    JOIN permissions p ON p.id = rp.permission_id
                    WHERE ur.user_id = %s AND ur.company_id = %s AND p.code = ANY(%s)
                    LIMIT 1
                    """,
                    (user["user_id"], company_id, granting),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=403, detail=f"missing permission: {code}")
        return True
    return _dep
