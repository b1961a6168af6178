from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..audit_log import write_audit
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_permission
from ..gst import DEFAULT_GST_RATE, DEFAULT_HSN, q_inr
from ..stock import change_stock, next_doc_no
from ..validation import POStatus

router = APIRouter(prefix="/purchases", tags=["purchases"])

PO_TRANSITIONS = {
    "draft": {"sent", "cancelled"},
    "sent": {"draft", "cancelled"},
    "partial": {"cancelled"},
    "received": set(),
    "cancelled": set(),
}


class POItemIn(BaseModel):
    variant_id: Optional[str] = None
    description: str
    hsn_code: str = DEFAULT_HSN
    quantity_ordered: int = Field(gt=0)
    unit: str = "PCS"
    unit_price: Decimal = Field(ge=0)
    gst_rate: Decimal = Field(default=DEFAULT_GST_RATE, ge=0, le=28)


class POIn(BaseModel):
    vendor_id: str
    status: POStatus = "draft"
    order_date: Optional[date] = None
    expected_date: Optional[date] = None
    shipping_cost: Decimal = Field(default=Decimal("0"), ge=0)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    notes: Optional[str] = None
    items: List[POItemIn]


class POStatusIn(BaseModel):
    status: POStatus


class ReceiptLineIn(BaseModel):
    po_item_id: str
    quantity_received: int = Field(default=0, ge=0)
    quantity_rejected: int = Field(default=0, ge=0)
    rejection_reason: Optional[str] = None


class ReceiptIn(BaseModel):
    received_date: Optional[date] = None
    notes: Optional[str] = None
    items: List[ReceiptLineIn]


def po_item_totals(quantity, unit_price, gst_rate=DEFAULT_GST_RATE) -> dict:
    taxable = q_inr(Decimal(str(quantity)) * Decimal(str(unit_price)))
    gst = q_inr(taxable * Decimal(str(gst_rate)) / 100)
    return {"taxable_amount": taxable, "gst_amount": gst, "total_price": q_inr(taxable + gst)}


def po_totals(items: list, shipping=0, discount=0) -> dict:
    subtotal = sum((q_inr(Decimal(str(i["quantity_ordered"])) * Decimal(str(i["unit_price"]))) for i in items), Decimal("0"))
    gst = sum((q_inr(i["gst_amount"]) for i in items), Decimal("0"))
    total = q_inr(subtotal + gst + q_inr(shipping or 0) - q_inr(discount or 0))
    return {"subtotal": subtotal, "gst_amount": gst, "total": total}


def receipt_status(items: list) -> str:
    """PO status implied by its items' received quantities."""
    if items and all(int(i["quantity_received"]) >= int(i["quantity_ordered"]) for i in items):
        return "received"
    if any(int(i["quantity_received"]) > 0 for i in items):
        return "partial"
    return "sent"


@router.get("/orders", dependencies=[Depends(require_permission("purchases:read"))])
def list_purchase_orders(
    status: Optional[POStatus] = None,
    vendor_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    company_id: str = Depends(get_company_id),
):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT po.id, po.po_number, po.vendor_id, v.name AS vendor_name, v.phone AS vendor_phone,
                       po.status, po.order_date, po.expected_date, po.subtotal, po.gst_amount,
                       po.shipping_cost, po.discount_amount, po.total,
                       COALESCE(SUM(i.quantity_ordered), 0) AS quantity_ordered,
                       COALESCE(SUM(i.quantity_received), 0) AS quantity_received
                FROM purchase_orders po
                JOIN vendors v ON v.id = po.vendor_id
                LEFT JOIN purchase_order_items i ON i.po_id = po.id
                WHERE po.company_id = %s
                  AND (%s::text IS NULL OR po.status = %s)
                  AND (%s::uuid IS NULL OR po.vendor_id = %s::uuid)
                  AND (%s::date IS NULL OR po.order_date >= %s::date)
                  AND (%s::date IS NULL OR po.order_date <= %s::date)
                GROUP BY po.id, v.name, v.phone
                ORDER BY po.order_date DESC, po.po_number DESC
                """,
                (company_id, status, status, vendor_id, vendor_id, start_date, start_date, end_date, end_date),
            )
            return {"purchase_orders": cur.fetchall()}


@router.get("/orders/{po_id}", dependencies=[Depends(require_permission("purchases:read"))])
def get_purchase_order(po_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT po.*, v.name AS vendor_name, v.phone AS vendor_phone, v.email AS vendor_email,
                       v.address AS vendor_address
                FROM purchase_orders po
                JOIN vendors v ON v.id = po.vendor_id
                WHERE po.company_id = %s AND po.id = %s
                """,
                (company_id, po_id),
            )
            po = cur.fetchone()
            if not po:
                raise HTTPException(status_code=404, detail="purchase order not found")
            cur.execute(
                """
                SELECT i.*, p.name AS product_name, p.sku || '-' || pv.sku_suffix AS full_sku, pv.variant_name
                FROM purchase_order_items i
                LEFT JOIN product_variants pv ON pv.id = i.variant_id
                LEFT JOIN products p ON p.id = pv.product_id
                WHERE i.po_id = %s
                ORDER BY i.id
                """,
                (po_id,),
            )
            return {"purchase_order": po, "items": cur.fetchall()}


@router.post("/orders", dependencies=[Depends(require_permission("purchases:write"))])
def create_purchase_order(data: POIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    if not data.items:
        raise HTTPException(status_code=400, detail="purchase order must have at least one item")
    if data.status not in {"draft", "sent"}:
        raise HTTPException(status_code=400, detail="new purchase orders must be draft or sent")
    items = []
    for it in data.items:
        row = it.model_dump()
        row.update(po_item_totals(it.quantity_ordered, it.unit_price, it.gst_rate))
        items.append(row)
    totals = po_totals(items, data.shipping_cost, data.discount_amount)
    if totals["total"] < 0:
        raise HTTPException(status_code=400, detail="discount exceeds purchase order value")

    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM vendors WHERE company_id = %s AND id = %s", (company_id, data.vendor_id))
                if not cur.fetchone():
                    raise HTTPException(status_code=400, detail="unknown vendor")
                po_no = next_doc_no(cur, company_id, "PO")
                cur.execute(
                    """
                    INSERT INTO purchase_orders
                      (id, company_id, po_number, vendor_id, status, order_date, expected_date,
                       subtotal, gst_amount, shipping_cost, discount_amount, total, notes, created_by_user_id)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, COALESCE(%s, current_date), %s,
                       %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        company_id,
                        po_no,
                        data.vendor_id,
                        data.status,
                        data.order_date,
                        data.expected_date,
                        totals["subtotal"],
                        totals["gst_amount"],
                        q_inr(data.shipping_cost),
                        q_inr(data.discount_amount),
                        totals["total"],
                        data.notes,
                        user["user_id"],
                    ),
                )
                po_id = cur.fetchone()["id"]
                for it in items:
                    cur.execute(
                        """
                        INSERT INTO purchase_order_items
                          (id, company_id, po_id, variant_id, description, hsn_code, quantity_ordered, quantity_received,
                           unit, unit_price, gst_rate, gst_amount, total_price)
                        VALUES
                          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, 0, %s, %s, %s, %s, %s)
                        """,
                        (
                            company_id,
                            po_id,
                            it["variant_id"],
                            it["description"],
                            it["hsn_code"] or DEFAULT_HSN,
                            it["quantity_ordered"],
                            it["unit"] or "PCS",
                            q_inr(it["unit_price"]),
                            it["gst_rate"],
                            it["gst_amount"],
                            it["total_price"],
                        ),
                    )
                write_audit(cur, company_id, user["user_id"], "po_create", "purchase_orders", po_id, {"po_number": po_no, "total": totals["total"]})
                return {"id": po_id, "po_number": po_no, **totals}


@router.post("/orders/{po_id}/status", dependencies=[Depends(require_permission("purchases:write"))])
def update_po_status(po_id: str, data: POStatusIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    if data.status in {"partial", "received"}:
        raise HTTPException(status_code=400, detail="record a goods receipt to receive stock")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT status FROM purchase_orders WHERE company_id = %s AND id = %s FOR UPDATE",
                    (company_id, po_id),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="purchase order not found")
                if row["status"] == data.status:
                    return {"id": po_id, "status": data.status}
                if data.status not in PO_TRANSITIONS.get(row["status"], set()):
                    raise HTTPException(status_code=400, detail=f"cannot move purchase order from {row['status']} to {data.status}")
                cur.execute(
                    "UPDATE purchase_orders SET status = %s, updated_at = now() WHERE id = %s",
                    (data.status, po_id),
                )
                write_audit(cur, company_id, user["user_id"], "po_status", "purchase_orders", po_id, {"from": row["status"], "to": data.status})
                return {"id": po_id, "status": data.status}


@router.post("/orders/{po_id}/cancel", dependencies=[Depends(require_permission("purchases:write"))])
def cancel_purchase_order(po_id: str, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    return update_po_status(po_id, POStatusIn(status="cancelled"), company_id=company_id, user=user)


@router.post("/orders/{po_id}/receipts", dependencies=[Depends(require_permission("purchases:write"))])
def create_goods_receipt(
    po_id: str,
    data: ReceiptIn,
    company_id: str = Depends(get_company_id),
    user=Depends(get_current_user),
):
    lines = [l for l in data.items if l.quantity_received > 0 or l.quantity_rejected > 0]
    if not any(l.quantity_received > 0 for l in lines):
        raise HTTPException(status_code=400, detail="nothing received")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, status FROM purchase_orders WHERE company_id = %s AND id = %s FOR UPDATE",
                    (company_id, po_id),
                )
                po = cur.fetchone()
                if not po:
                    raise HTTPException(status_code=404, detail="purchase order not found")
                if po["status"] in {"cancelled", "received", "draft"}:
                    raise HTTPException(status_code=400, detail=f"cannot receive against a {po['status']} purchase order")

                cur.execute(
                    """
                    SELECT id, variant_id, quantity_ordered, quantity_received
                    FROM purchase_order_items
                    WHERE po_id = %s
                    FOR UPDATE
                    """,
                    (po_id,),
                )
                po_items = {str(r["id"]): dict(r) for r in cur.fetchall()}

                grn_no = next_doc_no(cur, company_id, "GRN")
                cur.execute(
                    """
                    INSERT INTO goods_receipts (id, company_id, grn_number, po_id, received_date, notes, created_by_user_id)
                    VALUES (gen_random_uuid(), %s, %s, %s, COALESCE(%s, current_date), %s, %s)
                    RETURNING id
                    """,
                    (company_id, grn_no, po_id, data.received_date, data.notes, user["user_id"]),
                )
                grn_id = cur.fetchone()["id"]

                for ln in lines:
                    item = po_items.get(ln.po_item_id)
                    if not item:
                        raise HTTPException(status_code=400, detail=f"item {ln.po_item_id} is not on this purchase order")
                    outstanding = int(item["quantity_ordered"]) - int(item["quantity_received"])
                    if ln.quantity_received > outstanding:
                        raise HTTPException(status_code=400, detail=f"over-receipt on item {ln.po_item_id}: {outstanding} outstanding")
                    cur.execute(
                        """
                        INSERT INTO goods_receipt_items
                          (id, company_id, grn_id, po_item_id, variant_id, quantity_received, quantity_rejected, rejection_reason)
                        VALUES
                          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (company_id, grn_id, ln.po_item_id, item["variant_id"], ln.quantity_received, ln.quantity_rejected, ln.rejection_reason),
                    )
                    if ln.quantity_received:
                        cur.execute(
                            "UPDATE purchase_order_items SET quantity_received = quantity_received + %s WHERE id = %s",
                            (ln.quantity_received, ln.po_item_id),
                        )
                        item["quantity_received"] = int(item["quantity_received"]) + ln.quantity_received
                        if item["variant_id"]:
                            change_stock(
                                cur,
                                company_id,
                                item["variant_id"],
                                "increment",
                                ln.quantity_received,
                                "purchase",
                                reference_type="goods_receipt",
                                reference_id=grn_id,
                                user_id=user["user_id"],
                            )

                status = receipt_status(list(po_items.values()))
                cur.execute("UPDATE purchase_orders SET status = %s, updated_at = now() WHERE id = %s", (status, po_id))
                write_audit(cur, company_id, user["user_id"], "grn_create", "goods_receipts", grn_id, {"grn_number": grn_no, "po_id": po_id})
                return {"id": grn_id, "grn_number": grn_no, "po_status": status}


@router.get("/orders/{po_id}/receipts", dependencies=[Depends(require_permission("purchases:read"))])
def list_goods_receipts(po_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, grn_number, received_date, notes, created_at
                FROM goods_receipts
                WHERE company_id = %s AND po_id = %s
                ORDER BY received_date DESC, grn_number DESC
                """,
                (company_id, po_id),
            )
            receipts = cur.fetchall()
            if not receipts:
                return {"receipts": []}
            cur.execute(
                """
                SELECT grn_id, po_item_id, variant_id, quantity_received, quantity_rejected, rejection_reason
                FROM goods_receipt_items
                WHERE grn_id = ANY(%s)
                """,
                ([r["id"] for r in receipts],),
            )
            by_grn = {}
            for it in cur.fetchall():
                by_grn.setdefault(it["grn_id"], []).append(it)
            return {"receipts": [{**r, "items": by_grn.get(r["id"], [])} for r in receipts]}
