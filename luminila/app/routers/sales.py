from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..audit_log import write_audit
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_permission
from ..gst import q_inr
from ..loyalty import earn_points, fetch_settings, get_account, max_redeemable_points, redeem_points, refund_points
from ..stock import change_stock
from ..validation import SaleChannel, SaleStatus

router = APIRouter(prefix="/sales", tags=["sales"])

# Statuses a sale may move to from each state; completed and cancelled are final.
SALE_TRANSITIONS = {
    "pending": {"confirmed", "shipped", "delivered", "completed", "cancelled"},
    "confirmed": {"shipped", "delivered", "completed", "cancelled"},
    "shipped": {"delivered", "completed"},
    "delivered": {"completed"},
    "completed": set(),
    "cancelled": set(),
}
# A linked customer earns loyalty points once the sale reaches one of these.
EARNING_STATUSES = {"delivered", "completed"}


class SaleItemIn(BaseModel):
    variant_id: str
    quantity: int = Field(gt=0)
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    description: Optional[str] = None


class SaleIn(BaseModel):
    channel: SaleChannel = "pos"
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    status: SaleStatus = "completed"
    payment_method: Optional[str] = None
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    redeem_points: int = Field(default=0, ge=0)
    notes: Optional[str] = None
    items: List[SaleItemIn]


class SaleStatusIn(BaseModel):
    status: SaleStatus


def assert_sale_transition(current: str, target: str) -> None:
    if current == target:
        return
    if target not in SALE_TRANSITIONS.get(current, set()):
        raise HTTPException(status_code=400, detail=f"cannot move sale from {current} to {target}")


def _resolve_price(cur, company_id: str, variant_id: str) -> dict:
    cur.execute(
        """
        SELECT v.id, p.name, v.variant_name, p.base_price + v.price_adjustment AS price
        FROM product_variants v
        JOIN products p ON p.id = v.product_id
        WHERE v.company_id = %s AND v.id = %s
        """,
        (company_id, variant_id),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=400, detail=f"unknown variant {variant_id}")
    return row


def create_sale(
    cur,
    company_id: str,
    channel: str,
    items: list,
    status: str = "completed",
    customer_id: Optional[str] = None,
    customer_name: Optional[str] = None,
    customer_phone: Optional[str] = None,
    customer_email: Optional[str] = None,
    channel_order_id: Optional[str] = None,
    payment_method: Optional[str] = None,
    payment_status: str = "unpaid",
    discount: Decimal = Decimal("0"),
    redeem: int = 0,
    notes: Optional[str] = None,
    total_override: Optional[Decimal] = None,
    user_id: Optional[str] = None,
) -> Optional[dict]:
    """
    Record a sale from any channel and apply its side effects: stock decrement,
    customer totals and loyalty. Items are dicts with variant_id, quantity and
    optional unit_price/description.

    Returns None when (channel, channel_order_id) was already recorded, so
    replaying a channel pull never double-counts stock.
    """
    if not items:
        raise HTTPException(status_code=400, detail="sale must have at least one item")

    lines = []
    subtotal = Decimal("0")
    for it in items:
        qty = int(it["quantity"])
        if qty <= 0:
            raise HTTPException(status_code=400, detail="quantity must be > 0")
        variant_id = it.get("variant_id")
        price = it.get("unit_price")
        desc = it.get("description")
        if not variant_id and price is None:
            raise HTTPException(status_code=400, detail="unit_price is required for lines without a variant")
        if variant_id and (price is None or not desc):
            ref = _resolve_price(cur, company_id, variant_id)
            if price is None:
                price = ref["price"]
            desc = desc or f"{ref['name']} ({ref['variant_name']})"
        price = q_inr(price)
        total = q_inr(price * qty)
        subtotal += total
        lines.append({"variant_id": variant_id, "quantity": qty, "unit_price": price, "total": total, "description": desc})

    discount = q_inr(discount)
    if discount > subtotal:
        raise HTTPException(status_code=400, detail="discount exceeds sale subtotal")
    total = q_inr(total_override) if total_override is not None else subtotal - discount

    cur.execute(
        """
        INSERT INTO sales
          (id, company_id, channel, channel_order_id, customer_id, customer_name, customer_phone, customer_email,
           status, payment_status, payment_method, subtotal, discount, total, notes)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (company_id, channel, channel_order_id) WHERE channel_order_id IS NOT NULL DO NOTHING
        RETURNING id
        """,
        (
            company_id,
            channel,
            channel_order_id,
            customer_id,
            customer_name,
            customer_phone,
            customer_email,
            status,
            payment_status,
            payment_method,
            subtotal,
            discount,
            total,
            notes,
        ),
    )
    row = cur.fetchone()
    if not row:
        return None
    sale_id = row["id"]

    for ln in lines:
        cur.execute(
            """
            INSERT INTO sale_items (id, company_id, sale_id, variant_id, description, quantity, unit_price, total)
            VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
            """,
            (company_id, sale_id, ln["variant_id"], ln["description"], ln["quantity"], ln["unit_price"], ln["total"]),
        )
        if ln["variant_id"] and status != "cancelled":
            change_stock(
                cur,
                company_id,
                ln["variant_id"],
                "decrement",
                ln["quantity"],
                "sale",
                source=channel,
                reference_type="sale",
                reference_id=sale_id,
                user_id=user_id,
            )

    points_value = Decimal("0")
    if customer_id and redeem > 0:
        settings = fetch_settings(cur, company_id)
        account = get_account(cur, company_id, customer_id)
        allowed = max_redeemable_points(total, account["current_balance"] if account else 0, settings)
        if redeem > allowed:
            raise HTTPException(status_code=400, detail=f"at most {allowed} points can be redeemed on this bill")
        res = redeem_points(cur, company_id, customer_id, redeem, "sale", str(sale_id))
        points_value = q_inr(res["value_applied"])
        total = total - points_value
        cur.execute(
            "UPDATE sales SET total = %s, loyalty_points_redeemed = %s WHERE id = %s",
            (total, redeem, sale_id),
        )

    if customer_id and status != "cancelled":
        cur.execute(
            """
            UPDATE customers
            SET total_spent = total_spent + %s,
                total_orders = total_orders + 1,
                last_purchase_date = now(),
                updated_at = now()
            WHERE company_id = %s AND id = %s
            """,
            (total, company_id, customer_id),
        )

    earned = None
    if customer_id and status in EARNING_STATUSES:
        earned = earn_points(cur, company_id, customer_id, total, "sale", str(sale_id))

    return {"id": sale_id, "subtotal": subtotal, "discount": discount, "points_value": points_value, "total": total, "loyalty": earned}


def set_sale_status(cur, company_id: str, sale_id: str, status: str, user_id: Optional[str] = None) -> dict:
    cur.execute(
        """
        SELECT id, status, customer_id, total, channel, loyalty_points_redeemed
        FROM sales
        WHERE company_id = %s AND id = %s
        FOR UPDATE
        """,
        (company_id, sale_id),
    )
    sale = cur.fetchone()
    if not sale:
        raise HTTPException(status_code=404, detail="sale not found")
    assert_sale_transition(sale["status"], status)
    if sale["status"] == status:
        return {"id": sale["id"], "status": status, "changed": False}

    cur.execute(
        "UPDATE sales SET status = %s, updated_at = now() WHERE company_id = %s AND id = %s",
        (status, company_id, sale_id),
    )
    if status == "cancelled":
        cur.execute("SELECT variant_id, quantity FROM sale_items WHERE sale_id = %s AND variant_id IS NOT NULL", (sale_id,))
        for it in cur.fetchall():
            change_stock(
                cur,
                company_id,
                it["variant_id"],
                "increment",
                it["quantity"],
                "return",
                source=sale["channel"],
                reference_type="sale",
                reference_id=sale_id,
                notes="sale cancelled",
                user_id=user_id,
            )
        if sale["customer_id"]:
            cur.execute(
                """
                UPDATE customers
                SET total_spent = GREATEST(total_spent - %s, 0),
                    total_orders = GREATEST(total_orders - 1, 0),
                    updated_at = now()
                WHERE company_id = %s AND id = %s
                """,
                (sale["total"], company_id, sale["customer_id"]),
            )
            if (sale.get("loyalty_points_redeemed") or 0) > 0:
                refund_points(
                    cur, company_id, str(sale["customer_id"]), sale["loyalty_points_redeemed"], "sale_cancel", str(sale_id)
                )
    if status in EARNING_STATUSES and sale["customer_id"]:
        earn_points(cur, company_id, str(sale["customer_id"]), sale["total"], "sale", str(sale_id))
    write_audit(cur, company_id, user_id, "sale_status", "sales", sale_id, {"from": sale["status"], "to": status})
    return {"id": sale["id"], "status": status, "changed": True}


def mark_sale_paid(cur, company_id: str, sale_id: str, user_id: Optional[str] = None) -> dict:
    cur.execute(
        """
        UPDATE sales
        SET payment_status = 'paid',
            status = CASE WHEN status = 'pending' THEN 'confirmed' ELSE status END,
            updated_at = now()
        WHERE company_id = %s AND id = %s AND status <> 'cancelled'
        RETURNING id, status, payment_status
        """,
        (company_id, sale_id),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=400, detail="sale not found or cancelled")
    write_audit(cur, company_id, user_id, "sale_paid", "sales", sale_id)
    return row


@router.get("", dependencies=[Depends(require_permission("sales:read"))])
def list_sales(
    channel: Optional[SaleChannel] = None,
    status: Optional[SaleStatus] = None,
    customer_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    company_id: str = Depends(get_company_id),
):
    if limit <= 0 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id, s.channel, s.channel_order_id, s.customer_id, s.customer_name, s.customer_phone,
                       s.status, s.payment_status, s.payment_method, s.subtotal, s.discount, s.total,
                       s.loyalty_points_redeemed, s.created_at,
                       (SELECT COALESCE(SUM(quantity), 0) FROM sale_items si WHERE si.sale_id = s.id) AS items_count
                FROM sales s
                WHERE s.company_id = %s
                  AND (%s::text IS NULL OR s.channel = %s)
                  AND (%s::text IS NULL OR s.status = %s)
                  AND (%s::uuid IS NULL OR s.customer_id = %s::uuid)
                ORDER BY s.created_at DESC
                LIMIT %s OFFSET %s
                """,
                (company_id, channel, channel, status, status, customer_id, customer_id, limit, offset),
            )
            return {"sales": cur.fetchall()}


@router.get("/{sale_id}", dependencies=[Depends(require_permission("sales:read"))])
def get_sale(sale_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM sales WHERE company_id = %s AND id = %s", (company_id, sale_id))
            sale = cur.fetchone()
            if not sale:
                raise HTTPException(status_code=404, detail="sale not found")
            cur.execute(
                """
                SELECT si.id, si.variant_id, si.description, si.quantity, si.unit_price, si.total,
                       p.sku || '-' || v.sku_suffix AS full_sku
                FROM sale_items si
                LEFT JOIN product_variants v ON v.id = si.variant_id
                LEFT JOIN products p ON p.id = v.product_id
                WHERE si.sale_id = %s
                ORDER BY si.id
                """,
                (sale_id,),
            )
            return {"sale": sale, "items": cur.fetchall()}


@router.post("", dependencies=[Depends(require_permission("sales:write"))])
def record_sale(data: SaleIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                res = create_sale(
                    cur,
                    company_id,
                    data.channel,
                    [i.model_dump() for i in data.items],
                    status=data.status,
                    customer_id=data.customer_id,
                    customer_name=data.customer_name,
                    customer_phone=data.customer_phone,
                    customer_email=data.customer_email,
                    payment_method=data.payment_method,
                    payment_status="paid" if data.status == "completed" else "unpaid",
                    discount=data.discount,
                    redeem=data.redeem_points,
                    notes=data.notes,
                    user_id=user["user_id"],
                )
                write_audit(cur, company_id, user["user_id"], "sale_create", "sales", res["id"], {"total": res["total"]})
                return res


@router.post("/{sale_id}/status", dependencies=[Depends(require_permission("sales:write"))])
def update_sale_status(
    sale_id: str,
    data: SaleStatusIn,
    company_id: str = Depends(get_company_id),
    user=Depends(get_current_user),
):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                return set_sale_status(cur, company_id, sale_id, data.status, user["user_id"])
