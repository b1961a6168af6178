from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..audit_log import write_audit
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_permission
from ..gst import DEFAULT_GST_RATE, DEFAULT_HSN, line_amounts, q_inr
from ..stock import next_doc_no
from ..validation import GSTIN, OrderStatus, OrderType, PhoneNumber, StateCode
from .invoices import create_invoice

router = APIRouter(prefix="/orders", tags=["orders"])

ORDER_TRANSITIONS = {
    "draft": {"sent", "confirmed", "cancelled"},
    "sent": {"draft", "confirmed", "cancelled"},
    "confirmed": {"shipped", "delivered", "cancelled"},
    "shipped": {"delivered"},
    "delivered": set(),
    "invoiced": set(),
    "cancelled": set(),
}
INVOICEABLE_STATUSES = {"confirmed", "shipped", "delivered"}
DOC_TYPES = {"estimate": "EST", "sales_order": "ORD"}


class OrderItemIn(BaseModel):
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    description: str
    hsn_code: str = DEFAULT_HSN
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    tax_rate: Decimal = Field(default=DEFAULT_GST_RATE, ge=0, le=28)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)


class OrderIn(BaseModel):
    order_type: OrderType = "sales_order"
    customer_id: Optional[str] = None
    customer_name: str
    customer_phone: PhoneNumber = None
    customer_email: Optional[str] = None
    billing_address: Optional[str] = None
    shipping_address: Optional[str] = None
    valid_until: Optional[date] = None
    expected_delivery_date: Optional[date] = None
    status: OrderStatus = "draft"
    shipping_charges: Decimal = Field(default=Decimal("0"), ge=0)
    notes: Optional[str] = None
    internal_notes: Optional[str] = None
    items: List[OrderItemIn]


class OrderStatusIn(BaseModel):
    status: OrderStatus


class OrderInvoiceIn(BaseModel):
    buyer_gstin: GSTIN = None
    buyer_state_code: StateCode = None
    place_of_supply: StateCode = None
    is_reverse_charge: bool = False
    due_date: Optional[date] = None


def compute_order_totals(items: list, shipping_charges=0) -> tuple[list, dict]:
    """
    Line total = qty x price - flat discount + tax at the line rate.
    Header totals sum the lines; shipping is added last.
    """
    lines = []
    subtotal = Decimal("0")
    tax_total = Decimal("0")
    discount_total = Decimal("0")
    for idx, it in enumerate(items, start=1):
        try:
            amt = line_amounts(
                it["quantity"],
                it["unit_price"],
                gst_rate=it.get("tax_rate", DEFAULT_GST_RATE),
                discount_amount=it.get("discount_amount") or 0,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"line {idx}: {e}")
        subtotal += amt["gross_amount"]
        tax_total += amt["tax_amount"]
        discount_total += amt["discount_amount"]
        lines.append({**it, "discount_amount": amt["discount_amount"], "tax_amount": amt["tax_amount"], "total": amt["total"]})
    shipping = q_inr(shipping_charges or 0)
    totals = {
        "subtotal": subtotal,
        "tax_total": tax_total,
        "discount_total": discount_total,
        "shipping_charges": shipping,
        "total": q_inr(subtotal - discount_total + tax_total + shipping),
    }
    return lines, totals


def assert_order_transition(current: str, target: str) -> None:
    if target == "invoiced":
        raise HTTPException(status_code=400, detail="use the invoice endpoint to invoice an order")
    if target not in ORDER_TRANSITIONS.get(current, set()):
        raise HTTPException(status_code=400, detail=f"cannot move order from {current} to {target}")


def _get_order_for_update(cur, company_id: str, order_id: str) -> dict:
    cur.execute(
        """
        SELECT *
        FROM sales_orders
        WHERE company_id = %s AND id = %s
        FOR UPDATE
        """,
        (company_id, order_id),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="order not found")
    return row


@router.get("", dependencies=[Depends(require_permission("orders:read"))])
def list_orders(
    type: Optional[OrderType] = None,
    status: Optional[OrderStatus] = None,
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
                SELECT id, order_number, order_type, customer_id, customer_name, customer_phone, order_date,
                       valid_until, expected_delivery_date, status, subtotal, tax_total, discount_total,
                       shipping_charges, total, invoice_id, created_at
                FROM sales_orders
                WHERE company_id = %s
                  AND (%s::text IS NULL OR order_type = %s)
                  AND (%s::text IS NULL OR status = %s)
                  AND (%s::uuid IS NULL OR customer_id = %s::uuid)
                ORDER BY order_date DESC, created_at DESC
                LIMIT %s OFFSET %s
                """,
                (company_id, type, type, status, status, customer_id, customer_id, limit, offset),
            )
            return {"orders": cur.fetchall()}


@router.get("/{order_id}", dependencies=[Depends(require_permission("orders:read"))])
def get_order(order_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM sales_orders WHERE company_id = %s AND id = %s", (company_id, order_id))
            order = cur.fetchone()
            if not order:
                raise HTTPException(status_code=404, detail="order not found")
            cur.execute(
                """
                SELECT i.id, i.product_id, i.variant_id, i.description, i.hsn_code, i.quantity, i.unit_price,
                       i.tax_rate, i.discount_amount, i.tax_amount, i.total,
                       p.sku || '-' || v.sku_suffix AS full_sku, v.stock_level
                FROM sales_order_items i
                LEFT JOIN product_variants v ON v.id = i.variant_id
                LEFT JOIN products p ON p.id = v.product_id
                WHERE i.order_id = %s
                ORDER BY i.id
                """,
                (order_id,),
            )
            return {"order": order, "items": cur.fetchall()}


@router.post("", dependencies=[Depends(require_permission("orders:write"))])
def create_order(data: OrderIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    if not data.items:
        raise HTTPException(status_code=400, detail="order must have at least one item")
    if not data.customer_name.strip():
        raise HTTPException(status_code=400, detail="customer_name is required")
    if data.status in {"invoiced", "shipped", "delivered"}:
        raise HTTPException(status_code=400, detail=f"new orders cannot start as {data.status}")
    lines, totals = compute_order_totals([i.model_dump() for i in data.items], data.shipping_charges)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                order_no = next_doc_no(cur, company_id, DOC_TYPES[data.order_type])
                cur.execute(
                    """
                    INSERT INTO sales_orders
                      (id, company_id, order_number, order_type, customer_id, customer_name, customer_phone,
                       customer_email, billing_address, shipping_address, valid_until, expected_delivery_date,
                       status, subtotal, tax_total, discount_total, shipping_charges, total,
                       notes, internal_notes, created_by_user_id)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s,
                       %s, %s, %s, %s, %s,
                       %s, %s, %s, %s, %s, %s,
                       %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        company_id,
                        order_no,
                        data.order_type,
                        data.customer_id,
                        data.customer_name.strip(),
                        data.customer_phone,
                        data.customer_email,
                        data.billing_address,
                        data.shipping_address,
                        data.valid_until,
                        data.expected_delivery_date,
                        data.status,
                        totals["subtotal"],
                        totals["tax_total"],
                        totals["discount_total"],
                        totals["shipping_charges"],
                        totals["total"],
                        data.notes,
                        data.internal_notes,
                        user["user_id"],
                    ),
                )
                order_id = cur.fetchone()["id"]
                for ln in lines:
                    cur.execute(
                        """
                        INSERT INTO sales_order_items
                          (id, company_id, order_id, product_id, variant_id, description, hsn_code, quantity,
                           unit_price, tax_rate, discount_amount, tax_amount, total)
                        VALUES
                          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            company_id,
                            order_id,
                            ln["product_id"],
                            ln["variant_id"],
                            ln["description"],
                            ln["hsn_code"] or DEFAULT_HSN,
                            ln["quantity"],
                            q_inr(ln["unit_price"]),
                            ln["tax_rate"],
                            ln["discount_amount"],
                            ln["tax_amount"],
                            ln["total"],
                        ),
                    )
                write_audit(
                    cur, company_id, user["user_id"], "order_create", "sales_orders", order_id,
                    {"order_number": order_no, "order_type": data.order_type, "total": totals["total"]},
                )
                return {"id": order_id, "order_number": order_no, **totals}


@router.post("/{order_id}/convert", dependencies=[Depends(require_permission("orders:write"))])
def convert_estimate(order_id: str, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                order = _get_order_for_update(cur, company_id, order_id)
                if order["order_type"] != "estimate":
                    raise HTTPException(status_code=400, detail="only estimates can be converted")
                if order["status"] in {"cancelled", "invoiced"}:
                    raise HTTPException(status_code=400, detail=f"cannot convert a {order['status']} estimate")
                order_no = next_doc_no(cur, company_id, "ORD")
                cur.execute(
                    """
                    UPDATE sales_orders
                    SET order_type = 'sales_order',
                        order_number = %s,
                        status = 'confirmed',
                        order_date = now(),
                        updated_at = now()
                    WHERE id = %s
                    """,
                    (order_no, order_id),
                )
                write_audit(
                    cur, company_id, user["user_id"], "order_convert", "sales_orders", order_id,
                    {"from": order["order_number"], "to": order_no},
                )
                return {"id": order_id, "order_number": order_no, "status": "confirmed"}


@router.post("/{order_id}/status", dependencies=[Depends(require_permission("orders:write"))])
def set_order_status(
    order_id: str,
    data: OrderStatusIn,
    company_id: str = Depends(get_company_id),
    user=Depends(get_current_user),
):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                order = _get_order_for_update(cur, company_id, order_id)
                if order["status"] == data.status:
                    return {"id": order_id, "status": data.status}
                assert_order_transition(order["status"], data.status)
                cur.execute(
                    "UPDATE sales_orders SET status = %s, updated_at = now() WHERE id = %s",
                    (data.status, order_id),
                )
                write_audit(
                    cur, company_id, user["user_id"], "order_status", "sales_orders", order_id,
                    {"from": order["status"], "to": data.status},
                )
                return {"id": order_id, "status": data.status}


@router.post("/{order_id}/invoice", dependencies=[Depends(require_permission("orders:write")), Depends(require_permission("sales:write"))])
def invoice_order(
    order_id: str,
    data: Optional[OrderInvoiceIn] = None,
    company_id: str = Depends(get_company_id),
    user=Depends(get_current_user),
):
    data = data or OrderInvoiceIn()
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                order = _get_order_for_update(cur, company_id, order_id)
                if order["order_type"] != "sales_order":
                    raise HTTPException(status_code=400, detail="convert the estimate before invoicing")
                if order["status"] not in INVOICEABLE_STATUSES:
                    raise HTTPException(status_code=400, detail=f"cannot invoice a {order['status']} order")
                cur.execute(
                    """
                    SELECT variant_id, description, hsn_code, quantity, unit_price, tax_rate, discount_amount
                    FROM sales_order_items
                    WHERE order_id = %s
                    ORDER BY id
                    """,
                    (order_id,),
                )
                items = [
                    {
                        "variant_id": r["variant_id"],
                        "description": r["description"] or "Item",
                        "hsn_code": r["hsn_code"],
                        "quantity": r["quantity"],
                        "unit_price": r["unit_price"],
                        "discount_amount": r["discount_amount"],
                        "gst_rate": r["tax_rate"],
                    }
                    for r in cur.fetchall()
                ]
                gstin = (data.buyer_gstin or "").strip().upper() or None
                customer_state = None
                if order["customer_id"]:
                    cur.execute(
                        "SELECT gstin, state_code, address FROM customers WHERE company_id = %s AND id = %s",
                        (company_id, order["customer_id"]),
                    )
                    cust = cur.fetchone()
                    if cust:
                        gstin = gstin or cust["gstin"]
                        customer_state = cust["state_code"]
                header = {
                    "buyer_name": order["customer_name"] or "Walk-in Customer",
                    "buyer_gstin": gstin,
                    "buyer_phone": order["customer_phone"],
                    "buyer_email": order["customer_email"],
                    "buyer_address": order["billing_address"] or order["shipping_address"],
                    "buyer_state_code": data.buyer_state_code or customer_state,
                    "place_of_supply": data.place_of_supply,
                    "customer_id": order["customer_id"],
                    "order_id": order_id,
                    "is_reverse_charge": data.is_reverse_charge,
                    "shipping_charges": order["shipping_charges"],
                    "due_date": data.due_date,
                    "notes": order["notes"],
                }
                inv = create_invoice(cur, company_id, header, items, user["user_id"])
                cur.execute(
                    "UPDATE sales_orders SET status = 'invoiced', invoice_id = %s, updated_at = now() WHERE id = %s",
                    (inv["id"], order_id),
                )
                write_audit(
                    cur, company_id, user["user_id"], "order_invoice", "sales_orders", order_id,
                    {"invoice_id": inv["id"], "invoice_number": inv["invoice_number"]},
                )
                return {"order_id": order_id, "invoice": inv}
