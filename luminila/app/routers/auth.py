from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from datetime import datetime, timedelta, timezone
import uuid
from ..config import settings
from ..db import get_admin_conn, get_conn, set_company_context
from ..deps import get_session, SESSION_COOKIE_NAME
from ..security import hash_password, verify_password, needs_rehash, hash_session_token, new_session_token

router = APIRouter(prefix="/auth", tags=["auth"])
SESSION_DAYS = 7
MIN_PASSWORD_LENGTH = 8


class LoginIn(BaseModel):
    email: str
    password: str


class SelectCompanyIn(BaseModel):
    company_id: uuid.UUID


class ChangePasswordIn(BaseModel):
    current_password: str
    new_password: str = Field(min_length=MIN_PASSWORD_LENGTH)


def _stores_for_user(cur, user_id) -> list:
    cur.execute(
        """
        SELECT c.id, c.name, c.state_code, array_agg(DISTINCT r.name ORDER BY r.name) AS roles
        FROM user_roles ur
        JOIN companies c ON c.id = ur.company_id
        JOIN roles r ON r.id = ur.role_id
        WHERE ur.user_id = %s
        GROUP BY c.id, c.name, c.state_code
        ORDER BY c.name
        """,
        (user_id,),
    )
    return [
        {"id": str(r["id"]), "name": r["name"], "state_code": r["state_code"], "roles": list(r["roles"] or [])}
        for r in cur.fetchall()
    ]


def _permission_codes(cur, user_id, company_id) -> list:
    cur.execute(
        """
        SELECT DISTINCT p.code
        FROM user_roles ur
        JOIN role_permissions rp ON rp.role_id = ur.role_id
        JOIN permissions p ON p.id = rp.permission_id
        WHERE ur.user_id = %s AND ur.company_id = %s
        ORDER BY p.code
        """,
        (user_id, company_id),
    )
    return [r["code"] for r in cur.fetchall()]


def _session_response(payload: dict, token: str) -> JSONResponse:
    resp = JSONResponse(payload)
    resp.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.env not in {"local", "dev"},
        max_age=SESSION_DAYS * 24 * 60 * 60,
        path="/",
    )
    return resp


@router.post("/login")
def login(data: LoginIn):
    # Memberships span stores, so there is no tenant context yet.
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id, email, full_name, hashed_password, is_active FROM users WHERE lower(email) = lower(%s)",
                (data.email.strip(),),
            )
            user = cur.fetchone()
            # Same answer for unknown, disabled and wrong password.
            if not user or not user["is_active"] or not verify_password(data.password, user["hashed_password"]):
                raise HTTPException(status_code=401, detail="invalid credentials")

            if needs_rehash(user["hashed_password"]):
                cur.execute("UPDATE users SET hashed_password = %s WHERE id = %s", (hash_password(data.password), user["id"]))
            cur.execute("UPDATE users SET last_login_at = now() WHERE id = %s", (user["id"],))

            stores = _stores_for_user(cur, user["id"])
            active_company_id = stores[0]["id"] if stores else None

            token = new_session_token()
            cur.execute(
                """
                INSERT INTO auth_sessions (id, user_id, token_hash, expires_at, active_company_id)
                VALUES (gen_random_uuid(), %s, %s, %s, %s)
                """,
                (
                    user["id"],
                    hash_session_token(token),
                    datetime.now(timezone.utc) + timedelta(days=SESSION_DAYS),
                    active_company_id,
                ),
            )
            permissions = _permission_codes(cur, user["id"], active_company_id) if active_company_id else []

    return _session_response(
        {
            "token": token,
            "user_id": str(user["id"]),
            "full_name": user["full_name"],
            "stores": stores,
            "active_company_id": active_company_id,
            "permissions": permissions,
        },
        token,
    )


@router.get("/me")
def me(session=Depends(get_session)):
    active = str(session["active_company_id"]) if session.get("active_company_id") else None
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            stores = _stores_for_user(cur, session["user_id"])
            permissions = _permission_codes(cur, session["user_id"], active) if active else []
    return {
        "user_id": str(session["user_id"]),
        "email": session["email"],
        "full_name": session.get("full_name"),
        "active_company_id": active,
        "stores": stores,
        "permissions": permissions,
    }


@router.post("/logout")
def logout(session=Depends(get_session)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("UPDATE auth_sessions SET is_active = false WHERE id = %s", (session["session_id"],))
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
    return resp


@router.post("/select-company")
def select_company(data: SelectCompanyIn, session=Depends(get_session)):
    company_id = str(data.company_id)
    with get_conn() as conn:
        with conn.transaction():
            set_company_context(conn, company_id)
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT 1 FROM user_roles WHERE user_id = %s AND company_id = %s LIMIT 1",
                    (session["user_id"], company_id),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=403, detail="no access to this store")
                cur.execute(
                    "UPDATE auth_sessions SET active_company_id = %s WHERE id = %s",
                    (company_id, session["session_id"]),
                )
                permissions = _permission_codes(cur, session["user_id"], company_id)
    return {"ok": True, "active_company_id": company_id, "permissions": permissions}


@router.post("/change-password")
def change_password(data: ChangePasswordIn, session=Depends(get_session)):
    with get_admin_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT hashed_password FROM users WHERE id = %s", (session["user_id"],))
                row = cur.fetchone()
                if not row or not verify_password(data.current_password, row["hashed_password"]):
                    raise HTTPException(status_code=400, detail="current password is incorrect")
                if data.current_password == data.new_password:
                    raise HTTPException(status_code=400, detail="new password must differ from the current one")
                cur.execute(
                    "UPDATE users SET hashed_password = %s WHERE id = %s",
                    (hash_password(data.new_password), session["user_id"]),
                )
                # Sign out every other device.
                cur.execute(
                    "UPDATE auth_sessions SET is_active = false WHERE user_id = %s AND id <> %s",
                    (session["user_id"], session["session_id"]),
                )
    return {"ok": True}
