from datetime import date, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..audit_log import write_audit
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_permission
from ..loyalty import get_or_create_account
from ..validation import GSTIN, CustomerType, PhoneNumber, PreferredContact, StateCode

router = APIRouter(prefix="/customers", tags=["customers"])

CUSTOMER_COLUMNS = """
    c.id, c.name, c.phone, c.email, c.address, c.city, c.state, c.state_code, c.pincode,
    c.company_name, c.gstin, c.pan, c.customer_type, c.date_of_birth, c.anniversary,
    c.notes, c.tags, c.preferred_contact, c.opt_in_marketing, c.source,
    COALESCE(la.current_balance, 0) AS loyalty_points, la.tier_name AS loyalty_tier,
    c.total_spent, c.total_orders, c.last_purchase_date, c.created_at, c.updated_at
"""
CUSTOMER_FROM = """
    FROM customers c
    LEFT JOIN loyalty_accounts la ON la.customer_id = c.id AND la.company_id = c.company_id
"""


class CustomerIn(BaseModel):
    name: str
    phone: PhoneNumber = None
    email: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    state_code: StateCode = None
    pincode: Optional[str] = None
    company_name: Optional[str] = None
    gstin: GSTIN = None
    pan: Optional[str] = None
    customer_type: CustomerType = "retail"
    date_of_birth: Optional[date] = None
    anniversary: Optional[date] = None
    notes: Optional[str] = None
    tags: List[str] = []
    preferred_contact: PreferredContact = "phone"
    opt_in_marketing: bool = False
    source: Optional[str] = None
    enroll_loyalty: bool = True


class CustomerUpdate(BaseModel):
    name: Optional[str] = None
    phone: PhoneNumber = None
    email: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    state_code: StateCode = None
    pincode: Optional[str] = None
    company_name: Optional[str] = None
    gstin: GSTIN = None
    pan: Optional[str] = None
    customer_type: Optional[CustomerType] = None
    date_of_birth: Optional[date] = None
    anniversary: Optional[date] = None
    notes: Optional[str] = None
    tags: Optional[List[str]] = None
    preferred_contact: Optional[PreferredContact] = None
    opt_in_marketing: Optional[bool] = None
    source: Optional[str] = None


class InteractionIn(BaseModel):
    interaction_type: str
    description: Optional[str] = None
    sale_id: Optional[str] = None
    order_id: Optional[str] = None


def _next_occurrence(d: date, today: date) -> date:
    def _in_year(year: int) -> date:
        try:
            return d.replace(year=year)
        except ValueError:
            # 29 Feb in a non-leap year.
            return date(year, 2, 28)

    nxt = _in_year(today.year)
    if nxt < today:
        nxt = _in_year(today.year + 1)
    return nxt


def upcoming(rows: list, field: str, today: date, days: int) -> list:
    """Rows whose yearly `field` date falls within [today, today + days], soonest first."""
    end = today + timedelta(days=days)
    out = []
    for r in rows:
        d = r.get(field)
        if not d:
            continue
        nxt = _next_occurrence(d, today)
        if nxt <= end:
            out.append({**r, "next_date": nxt, "days_until": (nxt - today).days})
    out.sort(key=lambda r: r["days_until"])
    return out


def find_customer_by_phone(cur, company_id: str, phone: str) -> Optional[dict]:
    digits = "".join(ch for ch in (phone or "") if ch.isdigit())
    if not digits:
        return None
    # WhatsApp ids carry the country code; stored numbers are often the bare 10 digits.
    cur.execute(
        f"""
        SELECT {CUSTOMER_COLUMNS}
        {CUSTOMER_FROM}
        WHERE c.company_id = %s
          AND (c.phone = %s OR (length(c.phone) = 10 AND %s LIKE '%%' || c.phone))
        ORDER BY length(c.phone) DESC
        LIMIT 1
        """,
        (company_id, digits, digits),
    )
    return cur.fetchone()


@router.get("", dependencies=[Depends(require_permission("customers:read"))])
def list_customers(
    search: Optional[str] = None,
    customer_type: Optional[CustomerType] = None,
    has_phone: Optional[bool] = None,
    limit: int = 200,
    offset: int = 0,
    company_id: str = Depends(get_company_id),
):
    if limit <= 0 or limit > 1000:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 1000")
    q = (search or "").strip()
    like = f"%{q}%"
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {CUSTOMER_COLUMNS}
                {CUSTOMER_FROM}
                WHERE c.company_id = %s
                  AND (%s = '' OR c.name ILIKE %s OR c.phone ILIKE %s OR c.email ILIKE %s OR c.company_name ILIKE %s)
                  AND (%s::text IS NULL OR c.customer_type = %s)
                  AND (%s::boolean IS NULL OR (c.phone IS NOT NULL) = %s)
                ORDER BY c.name
                LIMIT %s OFFSET %s
                """,
                (company_id, q, like, like, like, like, customer_type, customer_type, has_phone, has_phone, limit, offset),
            )
            return {"customers": cur.fetchall()}


@router.get("/search", dependencies=[Depends(require_permission("customers:read"))])
def search_customers(q: str = "", limit: int = 10, company_id: str = Depends(get_company_id)):
    q = (q or "").strip()
    if len(q) < 2:
        return {"customers": []}
    like = f"%{q}%"
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, phone, email, customer_type
                FROM customers
                WHERE company_id = %s AND (name ILIKE %s OR phone ILIKE %s OR email ILIKE %s)
                ORDER BY name
                LIMIT %s
                """,
                (company_id, like, like, like, min(max(limit, 1), 50)),
            )
            return {"customers": cur.fetchall()}


@router.get("/lookup", dependencies=[Depends(require_permission("customers:read"))])
def lookup_by_phone(phone: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            row = find_customer_by_phone(cur, company_id, phone)
            if not row:
                raise HTTPException(status_code=404, detail="customer not found")
            return {"customer": row}


@router.get("/stats", dependencies=[Depends(require_permission("customers:read"))])
def customer_stats(company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*) AS total,
                       COUNT(*) FILTER (WHERE created_at >= date_trunc('month', now())) AS new_this_month
                FROM customers
                WHERE company_id = %s
                """,
                (company_id,),
            )
            totals = cur.fetchone()
            cur.execute(
                """
                SELECT customer_type, COUNT(*) AS count
                FROM customers
                WHERE company_id = %s
                GROUP BY customer_type
                """,
                (company_id,),
            )
            by_type = {"retail": 0, "wholesale": 0, "vip": 0}
            for r in cur.fetchall():
                by_type[r["customer_type"]] = int(r["count"])
            cur.execute(
                """
                SELECT id, name, phone, total_spent, total_orders
                FROM customers
                WHERE company_id = %s AND total_spent > 0
                ORDER BY total_spent DESC
                LIMIT 5
                """,
                (company_id,),
            )
            return {
                "total": int(totals["total"]),
                "new_this_month": int(totals["new_this_month"]),
                "by_type": by_type,
                "top_spenders": cur.fetchall(),
            }


@router.get("/upcoming/birthdays", dependencies=[Depends(require_permission("customers:read"))])
def upcoming_birthdays(days: int = 7, company_id: str = Depends(get_company_id)):
    return {"customers": _upcoming(company_id, "date_of_birth", days)}


@router.get("/upcoming/anniversaries", dependencies=[Depends(require_permission("customers:read"))])
def upcoming_anniversaries(days: int = 7, company_id: str = Depends(get_company_id)):
    return {"customers": _upcoming(company_id, "anniversary", days)}


def _upcoming(company_id: str, field: str, days: int) -> list:
    if days < 0 or days > 366:
        raise HTTPException(status_code=400, detail="days must be between 0 and 366")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT id, name, phone, email, preferred_contact, {field}
                FROM customers
                WHERE company_id = %s AND {field} IS NOT NULL
                """,
                (company_id,),
            )
            return upcoming(cur.fetchall(), field, date.today(), days)


@router.get("/{customer_id}", dependencies=[Depends(require_permission("customers:read"))])
def get_customer(customer_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {CUSTOMER_COLUMNS} {CUSTOMER_FROM} WHERE c.company_id = %s AND c.id = %s",
                (company_id, customer_id),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="customer not found")
            return {"customer": row}


@router.post("", dependencies=[Depends(require_permission("customers:write"))])
def create_customer(data: CustomerIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    name = data.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                customer_id = insert_customer(cur, company_id, data)
                if data.enroll_loyalty:
                    get_or_create_account(cur, company_id, customer_id)
                write_audit(cur, company_id, user["user_id"], "customer_create", "customers", customer_id, {"name": name})
                return {"id": customer_id}


def insert_customer(cur, company_id: str, data: CustomerIn) -> str:
    cur.execute(
        """
        INSERT INTO customers
          (id, company_id, name, phone, email, address, city, state, state_code, pincode,
           company_name, gstin, pan, customer_type, date_of_birth, anniversary, notes, tags,
           preferred_contact, opt_in_marketing, source)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            company_id,
            data.name.strip(),
            data.phone,
            data.email,
            data.address,
            data.city,
            data.state,
            data.state_code,
            data.pincode,
            data.company_name,
            data.gstin,
            (data.pan or "").strip().upper() or None,
            data.customer_type,
            data.date_of_birth,
            data.anniversary,
            data.notes,
            [t.strip() for t in data.tags if t.strip()],
            data.preferred_contact,
            data.opt_in_marketing,
            data.source,
        ),
    )
    return cur.fetchone()["id"]


@router.patch("/{customer_id}", dependencies=[Depends(require_permission("customers:write"))])
def update_customer(
    customer_id: str,
    data: CustomerUpdate,
    company_id: str = Depends(get_company_id),
    user=Depends(get_current_user),
):
    # Spend totals and loyalty balance are derived; they are not accepted here.
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}
    if "name" in patch and not (patch["name"] or "").strip():
        raise HTTPException(status_code=400, detail="name is required")
    fields = []
    params = []
    for k, v in patch.items():
        if isinstance(v, str):
            v = v.strip() or None
        fields.append(f"{k} = %s")
        params.append(v)
    params.extend([company_id, customer_id])
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE customers
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE company_id = %s AND id = %s
                    RETURNING id
                    """,
                    params,
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="customer not found")
                write_audit(cur, company_id, user["user_id"], "customer_update", "customers", customer_id, {"fields": sorted(patch)})
                return {"ok": True}


@router.delete("/{customer_id}", dependencies=[Depends(require_permission("customers:write"))])
def delete_customer(customer_id: str, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("DELETE FROM customers WHERE company_id = %s AND id = %s RETURNING id", (company_id, customer_id))
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="customer not found")
                write_audit(cur, company_id, user["user_id"], "customer_delete", "customers", customer_id)
                return {"ok": True}


@router.get("/{customer_id}/purchases", dependencies=[Depends(require_permission("customers:read"))])
def customer_purchases(customer_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id, s.created_at, s.channel, s.status, s.total,
                       COALESCE(SUM(si.quantity), 0) AS items_count
                FROM sales s
                LEFT JOIN sale_items si ON si.sale_id = s.id
                WHERE s.company_id = %s AND s.customer_id = %s
                GROUP BY s.id
                ORDER BY s.created_at DESC
                """,
                (company_id, customer_id),
            )
            return {"purchases": cur.fetchall()}


@router.get("/{customer_id}/interactions", dependencies=[Depends(require_permission("customers:read"))])
def list_interactions(customer_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, interaction_type, description, sale_id, order_id, created_by_user_id, created_at
                FROM customer_interactions
                WHERE company_id = %s AND customer_id = %s
                ORDER BY created_at DESC
                LIMIT 50
                """,
                (company_id, customer_id),
            )
            return {"interactions": cur.fetchall()}


@router.post("/{customer_id}/interactions", dependencies=[Depends(require_permission("customers:write"))])
def add_interaction(
    customer_id: str,
    data: InteractionIn,
    company_id: str = Depends(get_company_id),
    user=Depends(get_current_user),
):
    kind = (data.interaction_type or "").strip().lower()
    if not kind:
        raise HTTPException(status_code=400, detail="interaction_type is required")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO customer_interactions
                  (id, company_id, customer_id, interaction_type, description, sale_id, order_id, created_by_user_id)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (company_id, customer_id, kind, data.description, data.sale_id, data.order_id, user["user_id"]),
            )
            return {"id": cur.fetchone()["id"]}
