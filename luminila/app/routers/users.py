from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional
from ..audit_log import write_audit
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_permission
from ..security import hash_password
from .auth import MIN_PASSWORD_LENGTH

router = APIRouter(prefix="/users", tags=["users"])


class UserIn(BaseModel):
    email: str
    password: str = Field(min_length=MIN_PASSWORD_LENGTH)
    full_name: Optional[str] = None
    phone: Optional[str] = None
    role_ids: List[str] = []


class RoleIn(BaseModel):
    name: str
    description: Optional[str] = None
    permission_codes: List[str] = []


class RoleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    # Replaces the role's permission set when given.
    permission_codes: Optional[List[str]] = None


class UserRolesIn(BaseModel):
    role_ids: List[str]


class UserActiveIn(BaseModel):
    is_active: bool


def _clean_codes(codes: list) -> list:
    return sorted({(c or "").strip().lower() for c in codes if (c or "").strip()})


def _permission_ids(cur, codes: list) -> list:
    if not codes:
        return []
    cur.execute("SELECT id, code FROM permissions WHERE code = ANY(%s)", (codes,))
    rows = cur.fetchall()
    unknown = sorted(set(codes) - {r["code"] for r in rows})
    if unknown:
        raise HTTPException(status_code=400, detail=f"unknown permission: {', '.join(unknown)}")
    return [r["id"] for r in rows]


def _set_role_permissions(cur, role_id: str, codes: list) -> None:
    ids = _permission_ids(cur, codes)
    cur.execute("DELETE FROM role_permissions WHERE role_id = %s", (role_id,))
    for pid in ids:
        cur.execute(
            "INSERT INTO role_permissions (role_id, permission_id) VALUES (%s, %s) ON CONFLICT DO NOTHING",
            (role_id, pid),
        )


def _get_role(cur, company_id: str, role_id: str) -> dict:
    cur.execute(
        "SELECT id, name, is_system FROM roles WHERE company_id = %s AND id = %s FOR UPDATE",
        (company_id, role_id),
    )
    role = cur.fetchone()
    if not role:
        raise HTTPException(status_code=404, detail="role not found")
    return role


def _check_roles_belong(cur, company_id: str, role_ids: list) -> None:
    if not role_ids:
        return
    cur.execute("SELECT id FROM roles WHERE company_id = %s AND id = ANY(%s::uuid[])", (company_id, role_ids))
    found = {str(r["id"]) for r in cur.fetchall()}
    missing = sorted(set(role_ids) - found)
    if missing:
        raise HTTPException(status_code=404, detail=f"role not found: {', '.join(missing)}")


def _assert_owner_remains(cur, company_id: str) -> None:
    """Every store keeps at least one active user holding a system role."""
    cur.execute(
        """
        SELECT 1
        FROM user_roles ur
        JOIN roles r ON r.id = ur.role_id
        JOIN users u ON u.id = ur.user_id
        WHERE ur.company_id = %s AND r.is_system = true AND u.is_active = true
        LIMIT 1
        """,
        (company_id,),
    )
    if not cur.fetchone():
        raise HTTPException(status_code=400, detail="the store must keep at least one active owner")


def _require_member(cur, company_id: str, user_id: str) -> None:
    cur.execute("SELECT 1 FROM user_roles WHERE company_id = %s AND user_id = %s LIMIT 1", (company_id, user_id))
    if not cur.fetchone():
        raise HTTPException(status_code=404, detail="user not found")


@router.get("", dependencies=[Depends(require_permission("users:read"))])
def list_users(company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT u.id, u.email, u.full_name, u.phone, u.is_active, u.last_login_at, u.created_at,
                       COALESCE(
                         json_agg(json_build_object('role_id', r.id, 'role_name', r.name) ORDER BY r.name),
                         '[]'::json
                       ) AS roles
                FROM users u
                JOIN user_roles ur ON ur.user_id = u.id
                JOIN roles r ON r.id = ur.role_id
                WHERE ur.company_id = %s
                GROUP BY u.id
                ORDER BY u.full_name NULLS LAST, u.email
                """,
                (company_id,),
            )
            return {"users": cur.fetchall()}


@router.get("/stats", dependencies=[Depends(require_permission("users:read"))])
def user_stats(company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(DISTINCT u.id) AS total_users,
                       COUNT(DISTINCT u.id) FILTER (WHERE u.is_active) AS active_users,
                       (SELECT COUNT(*) FROM roles WHERE company_id = %s) AS total_roles
                FROM user_roles ur
                JOIN users u ON u.id = ur.user_id
                WHERE ur.company_id = %s
                """,
                (company_id, company_id),
            )
            return cur.fetchone()


@router.get("/permissions", dependencies=[Depends(require_permission("users:read"))])
def list_permissions():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT code, description FROM permissions ORDER BY code")
            return {"permissions": cur.fetchall()}


@router.get("/roles", dependencies=[Depends(require_permission("users:read"))])
def list_roles(company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT r.id, r.name, r.description, r.is_system, r.created_at,
                       COALESCE(array_agg(DISTINCT p.code) FILTER (WHERE p.code IS NOT NULL), ARRAY[]::text[]) AS permission_codes,
                       (SELECT COUNT(*) FROM user_roles ur WHERE ur.role_id = r.id)::int AS assigned_users
                FROM roles r
                LEFT JOIN role_permissions rp ON rp.role_id = r.id
                LEFT JOIN permissions p ON p.id = rp.permission_id
                WHERE r.company_id = %s
                GROUP BY r.id
                ORDER BY r.name
                """,
                (company_id,),
            )
            return {"roles": cur.fetchall()}


@router.post("/roles", dependencies=[Depends(require_permission("users:write"))])
def create_role(data: RoleIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    name = (data.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    codes = _clean_codes(data.permission_codes)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO roles (id, company_id, name, description)
                    VALUES (gen_random_uuid(), %s, %s, %s)
                    ON CONFLICT (company_id, name) DO NOTHING
                    RETURNING id
                    """,
                    (company_id, name, (data.description or "").strip() or None),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=409, detail=f"role {name} already exists")
                _set_role_permissions(cur, row["id"], codes)
                write_audit(cur, company_id, user["user_id"], "role_create", "role", row["id"], {"name": name, "permissions": codes})
                return {"id": row["id"]}


@router.patch("/roles/{role_id}", dependencies=[Depends(require_permission("users:write"))])
def update_role(role_id: str, data: RoleUpdate, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    patch = data.model_dump(exclude_unset=True)
    codes = patch.pop("permission_codes", None)
    if "name" in patch:
        patch["name"] = (patch["name"] or "").strip()
        if not patch["name"]:
            raise HTTPException(status_code=400, detail="name is required")
    if not patch and codes is None:
        return {"ok": True}
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                role = _get_role(cur, company_id, role_id)
                if role["is_system"] and ("name" in patch or codes is not None):
                    raise HTTPException(status_code=400, detail="system roles cannot be renamed or re-permissioned")
                if patch:
                    fields = [f"{k} = %s" for k in patch]
                    cur.execute(
                        f"UPDATE roles SET {', '.join(fields)} WHERE company_id = %s AND id = %s",
                        [*patch.values(), company_id, role_id],
                    )
                details = {"fields": sorted(patch)}
                if codes is not None:
                    details["permissions"] = _clean_codes(codes)
                    _set_role_permissions(cur, role_id, details["permissions"])
                write_audit(cur, company_id, user["user_id"], "role_update", "role", role_id, details)
                return {"ok": True}


@router.delete("/roles/{role_id}", dependencies=[Depends(require_permission("users:write"))])
def delete_role(role_id: str, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                role = _get_role(cur, company_id, role_id)
                if role["is_system"]:
                    raise HTTPException(status_code=400, detail="system roles cannot be deleted")
                cur.execute("SELECT COUNT(*)::int AS n FROM user_roles WHERE company_id = %s AND role_id = %s", (company_id, role_id))
                assigned = int(cur.fetchone()["n"])
                if assigned:
                    raise HTTPException(status_code=409, detail=f"role is assigned to {assigned} user(s)")
                cur.execute("DELETE FROM roles WHERE company_id = %s AND id = %s", (company_id, role_id))
                write_audit(cur, company_id, user["user_id"], "role_delete", "role", role_id, {"name": role["name"]})
                return {"ok": True}


@router.post("", dependencies=[Depends(require_permission("users:write"))])
def create_user(data: UserIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    email = (data.email or "").strip().lower()
    if "@" not in email:
        raise HTTPException(status_code=400, detail="a valid email is required")
    if not data.role_ids:
        raise HTTPException(status_code=400, detail="at least one role is required")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                _check_roles_belong(cur, company_id, data.role_ids)
                cur.execute(
                    """
                    INSERT INTO users (id, email, full_name, phone, hashed_password, is_active)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, true)
                    ON CONFLICT (email) DO NOTHING
                    RETURNING id
                    """,
                    (email, (data.full_name or "").strip() or None, (data.phone or "").strip() or None, hash_password(data.password)),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=409, detail="a user with this email already exists")
                for rid in data.role_ids:
                    cur.execute(
                        "INSERT INTO user_roles (user_id, company_id, role_id) VALUES (%s, %s, %s) ON CONFLICT DO NOTHING",
                        (row["id"], company_id, rid),
                    )
                write_audit(cur, company_id, user["user_id"], "user_create", "user", row["id"], {"email": email, "role_ids": data.role_ids})
                return {"id": row["id"]}


@router.put("/{user_id}/roles", dependencies=[Depends(require_permission("users:write"))])
def set_user_roles(user_id: str, data: UserRolesIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    """Replace the user's roles in this store; an empty list removes them from the store."""
    role_ids = sorted(set(data.role_ids))
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM users WHERE id = %s", (user_id,))
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="user not found")
                _check_roles_belong(cur, company_id, role_ids)
                cur.execute("DELETE FROM user_roles WHERE company_id = %s AND user_id = %s", (company_id, user_id))
                for rid in role_ids:
                    cur.execute(
                        "INSERT INTO user_roles (user_id, company_id, role_id) VALUES (%s, %s, %s)",
                        (user_id, company_id, rid),
                    )
                _assert_owner_remains(cur, company_id)
                write_audit(cur, company_id, user["user_id"], "user_roles_set", "user", user_id, {"role_ids": role_ids})
                return {"ok": True, "role_ids": role_ids}


@router.post("/{user_id}/active", dependencies=[Depends(require_permission("users:write"))])
def set_user_active(user_id: str, data: UserActiveIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    if not data.is_active and str(user_id) == str(user["user_id"]):
        raise HTTPException(status_code=400, detail="you cannot deactivate yourself")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                _require_member(cur, company_id, user_id)
                cur.execute(
                    "UPDATE users SET is_active = %s, updated_at = now() WHERE id = %s",
                    (data.is_active, user_id),
                )
                if not data.is_active:
                    cur.execute("UPDATE auth_sessions SET is_active = false WHERE user_id = %s", (user_id,))
                    _assert_owner_remains(cur, company_id)
                write_audit(
                    cur, company_id, user["user_id"], "user_activate" if data.is_active else "user_deactivate", "user", user_id
                )
                return {"ok": True, "is_active": data.is_active}
