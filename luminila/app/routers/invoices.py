from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..audit_log import write_audit
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_permission
from ..gst import DEFAULT_GST_RATE, DEFAULT_HSN, amount_to_words, calculate_gst, line_amounts, q_inr
from ..stock import next_doc_no
from ..validation import GSTIN, PhoneNumber, StateCode
from .store_settings import load_store_settings

router = APIRouter(prefix="/invoices", tags=["invoices"])


class InvoiceLineIn(BaseModel):
    variant_id: Optional[str] = None
    description: str
    hsn_code: str = DEFAULT_HSN
    quantity: Decimal = Field(gt=0)
    unit: str = "PCS"
    unit_price: Decimal = Field(ge=0)
    discount_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    gst_rate: Decimal = Field(default=DEFAULT_GST_RATE, ge=0, le=28)
    cess_rate: Decimal = Field(default=Decimal("0"), ge=0)


class InvoiceIn(BaseModel):
    buyer_name: str
    buyer_gstin: GSTIN = None
    buyer_phone: PhoneNumber = None
    buyer_email: Optional[str] = None
    buyer_address: Optional[str] = None
    buyer_state_code: StateCode = None
    place_of_supply: StateCode = None
    customer_id: Optional[str] = None
    sale_id: Optional[str] = None
    invoice_date: Optional[date] = None
    is_reverse_charge: bool = False
    shipping_charges: Decimal = Field(default=Decimal("0"), ge=0)
    payment_terms: Optional[str] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None
    items: List[InvoiceLineIn]


class PaymentIn(BaseModel):
    amount: Decimal = Field(gt=0)
    payment_mode: str = "cash"
    reference_number: Optional[str] = None


def compute_invoice_lines(items: list, seller_state: Optional[str], supply_state: Optional[str]) -> tuple[list, dict]:
    """
    Per-line GST split plus header totals. `items` are dicts shaped like
    InvoiceLineIn; intra/inter-state is decided once for the whole invoice.
    """
    lines = []
    totals = {
        "taxable_value": Decimal("0"),
        "cgst_amount": Decimal("0"),
        "sgst_amount": Decimal("0"),
        "igst_amount": Decimal("0"),
        "cess_amount": Decimal("0"),
        "total_tax": Decimal("0"),
        "discount_amount": Decimal("0"),
    }
    for idx, it in enumerate(items, start=1):
        try:
            amt = line_amounts(
                it["quantity"],
                it["unit_price"],
                discount_percent=it.get("discount_percent") or 0,
                gst_rate=it.get("gst_rate", DEFAULT_GST_RATE),
                discount_amount=it.get("discount_amount"),
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"line {idx}: {e}")
        tax = calculate_gst(amt["taxable_amount"], seller_state, supply_state, it.get("gst_rate", DEFAULT_GST_RATE), it.get("cess_rate") or 0)
        lines.append(
            {
                "sr_no": idx,
                "variant_id": it.get("variant_id"),
                "description": it["description"],
                "hsn_code": it.get("hsn_code") or DEFAULT_HSN,
                "quantity": it["quantity"],
                "unit": it.get("unit") or "PCS",
                "unit_price": q_inr(it["unit_price"]),
                "discount_percent": it.get("discount_percent") or 0,
                "discount_amount": amt["discount_amount"],
                "taxable_amount": tax.taxable_amount,
                "gst_rate": it.get("gst_rate", DEFAULT_GST_RATE),
                "cgst_rate": tax.cgst_rate,
                "cgst_amount": tax.cgst_amount,
                "sgst_rate": tax.sgst_rate,
                "sgst_amount": tax.sgst_amount,
                "igst_rate": tax.igst_rate,
                "igst_amount": tax.igst_amount,
                "cess_rate": tax.cess_rate,
                "cess_amount": tax.cess_amount,
                "total_amount": tax.grand_total,
            }
        )
        totals["taxable_value"] += tax.taxable_amount
        totals["cgst_amount"] += tax.cgst_amount
        totals["sgst_amount"] += tax.sgst_amount
        totals["igst_amount"] += tax.igst_amount
        totals["cess_amount"] += tax.cess_amount
        totals["total_tax"] += tax.total_tax
        totals["discount_amount"] += amt["discount_amount"]
    return lines, totals


def create_invoice(cur, company_id: str, header: dict, items: list, user_id: Optional[str] = None) -> dict:
    if not items:
        raise HTTPException(status_code=400, detail="invoice must have at least one item")
    store = load_store_settings(cur, company_id)
    seller_state = store.get("state_code")
    buyer_state = header.get("buyer_state_code")
    if not buyer_state and header.get("buyer_gstin"):
        buyer_state = header["buyer_gstin"][:2]
    supply_state = header.get("place_of_supply") or buyer_state or seller_state

    lines, totals = compute_invoice_lines(items, seller_state, supply_state)
    shipping = q_inr(header.get("shipping_charges") or 0)
    grand_total = q_inr(totals["taxable_value"] + totals["total_tax"] + shipping)

    invoice_no = next_doc_no(cur, company_id, "INV")
    cur.execute(
        """
        INSERT INTO invoices
          (id, company_id, invoice_number, invoice_date, invoice_type,
           seller_gstin, seller_name, seller_address, seller_state_code,
           buyer_name, buyer_gstin, buyer_phone, buyer_email, buyer_address, buyer_state_code, place_of_supply,
           customer_id, sale_id, order_id,
           taxable_value, cgst_amount, sgst_amount, igst_amount, cess_amount, total_tax,
           discount_amount, shipping_charges, grand_total, amount_in_words,
           is_reverse_charge, payment_terms, due_date, notes, created_by_user_id)
        VALUES
          (gen_random_uuid(), %s, %s, COALESCE(%s::timestamptz, now()), 'regular',
           %s, %s, %s, %s,
           %s, %s, %s, %s, %s, %s, %s,
           %s, %s, %s,
           %s, %s, %s, %s, %s, %s,
           %s, %s, %s, %s,
           %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            company_id,
            invoice_no,
            header.get("invoice_date"),
            store.get("gstin"),
            store.get("store_name"),
            store.get("address"),
            seller_state,
            header["buyer_name"],
            header.get("buyer_gstin"),
            header.get("buyer_phone"),
            header.get("buyer_email"),
            header.get("buyer_address"),
            buyer_state,
            supply_state,
            header.get("customer_id"),
            header.get("sale_id"),
            header.get("order_id"),
            totals["taxable_value"],
            totals["cgst_amount"],
            totals["sgst_amount"],
            totals["igst_amount"],
            totals["cess_amount"],
            totals["total_tax"],
            totals["discount_amount"],
            shipping,
            grand_total,
            amount_to_words(grand_total),
            bool(header.get("is_reverse_charge")),
            header.get("payment_terms") or store.get("invoice_terms"),
            header.get("due_date"),
            header.get("notes"),
            user_id,
        ),
    )
    invoice_id = cur.fetchone()["id"]
    for ln in lines:
        cur.execute(
            """
            INSERT INTO invoice_items
              (id, company_id, invoice_id, variant_id, sr_no, description, hsn_code, quantity, unit, unit_price,
               discount_percent, discount_amount, taxable_amount, gst_rate,
               cgst_rate, cgst_amount, sgst_rate, sgst_amount, igst_rate, igst_amount, cess_rate, cess_amount, total_amount)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s,
               %s, %s, %s, %s,
               %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                company_id,
                invoice_id,
                ln["variant_id"],
                ln["sr_no"],
                ln["description"],
                ln["hsn_code"],
                ln["quantity"],
                ln["unit"],
                ln["unit_price"],
                ln["discount_percent"],
                ln["discount_amount"],
                ln["taxable_amount"],
                ln["gst_rate"],
                ln["cgst_rate"],
                ln["cgst_amount"],
                ln["sgst_rate"],
                ln["sgst_amount"],
                ln["igst_rate"],
                ln["igst_amount"],
                ln["cess_rate"],
                ln["cess_amount"],
                ln["total_amount"],
            ),
        )
    write_audit(cur, company_id, user_id, "invoice_create", "invoices", invoice_id, {"invoice_number": invoice_no, "grand_total": grand_total})
    return {"id": invoice_id, "invoice_number": invoice_no, "grand_total": grand_total, **totals}


def apply_payment(invoice: dict, amount: Decimal) -> tuple[Decimal, bool]:
    """New (paid_amount, is_paid) after a payment; overpayment is a 400."""
    amount = q_inr(amount)
    paid = q_inr(invoice["paid_amount"] or 0) + amount
    total = q_inr(invoice["grand_total"] or 0)
    if paid > total:
        raise HTTPException(status_code=400, detail=f"payment exceeds balance due ({total - q_inr(invoice['paid_amount'] or 0)})")
    return paid, paid == total


@router.get("", dependencies=[Depends(require_permission("sales:read"))])
def list_invoices(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    is_paid: Optional[bool] = None,
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
                SELECT id, invoice_number, invoice_date, invoice_type, buyer_name, buyer_gstin,
                       taxable_value, total_tax, grand_total, is_paid, paid_amount, order_id, sale_id
                FROM invoices
                WHERE company_id = %s
                  AND (%s::date IS NULL OR invoice_date::date >= %s::date)
                  AND (%s::date IS NULL OR invoice_date::date <= %s::date)
                  AND (%s::boolean IS NULL OR is_paid = %s::boolean)
                ORDER BY invoice_date DESC, invoice_number DESC
                LIMIT %s OFFSET %s
                """,
                (company_id, start_date, start_date, end_date, end_date, is_paid, is_paid, limit, offset),
            )
            return {"invoices": cur.fetchall()}


@router.get("/{invoice_id}", dependencies=[Depends(require_permission("sales:read"))])
def get_invoice(invoice_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM invoices WHERE company_id = %s AND id = %s", (company_id, invoice_id))
            inv = cur.fetchone()
            if not inv:
                raise HTTPException(status_code=404, detail="invoice not found")
            cur.execute("SELECT * FROM invoice_items WHERE invoice_id = %s ORDER BY sr_no", (invoice_id,))
            items = cur.fetchall()
            cur.execute(
                """
                SELECT id, amount, payment_mode, reference_number, paid_at
                FROM invoice_payments
                WHERE invoice_id = %s
                ORDER BY paid_at
                """,
                (invoice_id,),
            )
            return {"invoice": inv, "items": items, "payments": cur.fetchall()}


@router.post("", dependencies=[Depends(require_permission("sales:write"))])
def create_invoice_route(data: InvoiceIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    header = data.model_dump(exclude={"items"})
    if not header["buyer_name"].strip():
        raise HTTPException(status_code=400, detail="buyer_name is required")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                return create_invoice(cur, company_id, header, [i.model_dump() for i in data.items], user["user_id"])


@router.post("/{invoice_id}/payments", dependencies=[Depends(require_permission("sales:write"))])
def record_payment(
    invoice_id: str,
    data: PaymentIn,
    company_id: str = Depends(get_company_id),
    user=Depends(get_current_user),
):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, grand_total, paid_amount, is_paid
                    FROM invoices
                    WHERE company_id = %s AND id = %s
                    FOR UPDATE
                    """,
                    (company_id, invoice_id),
                )
                inv = cur.fetchone()
                if not inv:
                    raise HTTPException(status_code=404, detail="invoice not found")
                if inv["is_paid"]:
                    raise HTTPException(status_code=400, detail="invoice is already paid")
                paid, fully_paid = apply_payment(inv, data.amount)
                cur.execute(
                    """
                    INSERT INTO invoice_payments (id, company_id, invoice_id, amount, payment_mode, reference_number, created_by_user_id)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (company_id, invoice_id, q_inr(data.amount), data.payment_mode, data.reference_number, user["user_id"]),
                )
                payment_id = cur.fetchone()["id"]
                cur.execute(
                    "UPDATE invoices SET paid_amount = %s, is_paid = %s, updated_at = now() WHERE id = %s",
                    (paid, fully_paid, invoice_id),
                )
                write_audit(cur, company_id, user["user_id"], "invoice_payment", "invoices", invoice_id, {"amount": data.amount})
                return {"id": payment_id, "paid_amount": paid, "is_paid": fully_paid}
