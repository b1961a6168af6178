from datetime import date, timedelta
from fastapi import APIRouter, Depends, HTTPException
from typing import Optional
from uuid import UUID

from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_permission

router = APIRouter(prefix="/audit", tags=["audit"])

MAX_PAGE = 500

# Checked in order: `sales_order` must win over `sale`.
ENTITY_PERMISSIONS = (
    ("sales_order", "orders:read"),
    ("sale", "sales:read"),
    ("invoice", "sales:read"),
    ("purchase", "purchases:read"),
    ("goods_receipt", "purchases:read"),
    ("product", "inventory:read"),
    ("stock", "inventory:read"),
    ("customer", "customers:read"),
    ("vendor", "vendors:read"),
    ("expense", "expenses:read"),
    ("loyalty", "loyalty:read"),
    ("role", "users:read"),
    ("user", "users:read"),
)


def permission_for_entity(entity_type: Optional[str]) -> str:
    """
    A per-document timeline only needs read access to the document's module.
    Anything else (including the unfiltered feed) needs audit:read.
    """
    t = (entity_type or "").strip().lower()
    if t:
        for prefix, code in ENTITY_PERMISSIONS:
            if t.startswith(prefix):
                return code
    return "audit:read"


def _parse_uuid_optional(value: Optional[str], field_name: str) -> Optional[str]:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        return str(UUID(raw))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field_name} must be a valid UUID")


@router.get("/logs")
def list_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action_prefix: Optional[str] = None,
    user_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = 200,
    offset: int = 0,
    company_id: str = Depends(get_company_id),
    user=Depends(get_current_user),
):
    if not 0 < limit <= MAX_PAGE:
        raise HTTPException(status_code=400, detail=f"limit must be between 1 and {MAX_PAGE}")
    if offset < 0:
        raise HTTPException(status_code=400, detail="offset must be >= 0")
    if date_from and date_to and date_from > date_to:
        raise HTTPException(status_code=400, detail="date_from must be on or before date_to")

    entity_type = (entity_type or "").strip().lower() or None
    action_prefix = (action_prefix or "").strip() or None
    entity_id = _parse_uuid_optional(entity_id, "entity_id")
    user_id = _parse_uuid_optional(user_id, "user_id")

    require_permission(permission_for_entity(entity_type))(company_id=company_id, user=user)

    where = ["l.company_id = %s"]
    params: list = [company_id]
    if entity_type:
        where.append("l.entity_type = %s")
        params.append(entity_type)
    if entity_id:
        where.append("l.entity_id = %s::uuid")
        params.append(entity_id)
    if user_id:
        where.append("l.user_id = %s::uuid")
        params.append(user_id)
    if action_prefix:
        where.append("l.action LIKE %s")
        params.append(action_prefix + "%")
    if date_from:
        where.append("l.created_at >= %s")
        params.append(date_from)
    if date_to:
        # Inclusive of the whole day.
        where.append("l.created_at < %s")
        params.append(date_to + timedelta(days=1))
    params.extend([limit, offset])

    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT l.id, l.user_id, u.email AS user_email, u.full_name AS user_name,
                       l.action, l.entity_type, l.entity_id, l.details, l.created_at
                FROM audit_logs l
                LEFT JOIN users u ON u.id = l.user_id
                WHERE {" AND ".join(where)}
                ORDER BY l.created_at DESC, l.id DESC
                LIMIT %s OFFSET %s
                """,
                params,
            )
            return {"audit_logs": cur.fetchall()}
