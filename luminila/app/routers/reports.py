from fastapi import APIRouter, Depends, Response, HTTPException
from datetime import date, datetime
from typing import Optional
from decimal import Decimal
import calendar
import csv
import io
from ..db import get_conn, set_company_context
from ..deps import get_company_id, require_permission
from ..gst import DEFAULT_HSN, q_inr

router = APIRouter(prefix="/reports", tags=["reports"])

SALES_COLUMNS = ["date", "invoice_number", "customer_name", "customer_gstin", "taxable_value", "cgst", "sgst", "igst", "total", "is_paid"]
GSTR1_COLUMNS = [
    "invoice_number", "invoice_date", "buyer_name", "buyer_gstin", "place_of_supply", "invoice_type",
    "taxable_value", "cgst_rate", "cgst_amount", "sgst_rate", "sgst_amount", "igst_rate", "igst_amount",
    "invoice_value", "reverse_charge",
]
HSN_COLUMNS = ["hsn_code", "description", "quantity", "taxable_value", "tax"]
STOCK_COLUMNS = [
    "product_name", "sku", "variant_name", "category", "current_stock", "reorder_level", "last_updated", "stock_value",
]


def resolve_range(period: Optional[date], start_date: Optional[date], end_date: Optional[date], today: Optional[date] = None):
    """
    `period` (any day in a month) wins and expands to that calendar month.
    Otherwise missing bounds default to the current month.
    """
    if period:
        last = calendar.monthrange(period.year, period.month)[1]
        return period.replace(day=1), period.replace(day=last)
    today = today or date.today()
    start = start_date or today.replace(day=1)
    end = end_date or today.replace(day=calendar.monthrange(today.year, today.month)[1])
    if end < start:
        raise HTTPException(status_code=400, detail="end_date must be on or after start_date")
    return start, end


def _d(v) -> Decimal:
    return Decimal(str(v or 0))


def _fmt_date(v, fmt: str) -> str:
    if isinstance(v, datetime):
        v = v.date()
    return v.strftime(fmt) if v else "-"


def _effective_rate(amount, taxable) -> Decimal:
    amount = _d(amount)
    taxable = _d(taxable)
    if amount <= 0 or taxable <= 0:
        return Decimal("0")
    # Snap to the nearest eighth of a percent so paise rounding does not leak into the rate.
    return (amount / taxable * 100 * 8).quantize(Decimal("1")) / 8


def build_sales_report(invoices: list, total_items=0) -> dict:
    rows = []
    for inv in invoices:
        rows.append(
            {
                "date": _fmt_date(inv["invoice_date"], "%d/%m/%Y"),
                "invoice_number": inv["invoice_number"],
                "customer_name": inv["buyer_name"],
                "customer_gstin": inv.get("buyer_gstin") or "",
                "taxable_value": _d(inv["taxable_value"]),
                "cgst": _d(inv["cgst_amount"]),
                "sgst": _d(inv["sgst_amount"]),
                "igst": _d(inv["igst_amount"]),
                "total": _d(inv["grand_total"]),
                "is_paid": bool(inv["is_paid"]),
            }
        )
    summary = {
        "total_sales": q_inr(sum((r["total"] for r in rows), Decimal("0"))),
        "total_tax": q_inr(sum((r["cgst"] + r["sgst"] + r["igst"] for r in rows), Decimal("0"))),
        "total_orders": len(rows),
        "total_items": _d(total_items),
    }
    return {"rows": rows, "summary": summary}


def build_gstr1(invoices: list) -> dict:
    b2b = []
    b2c = []
    for inv in invoices:
        gstin = (inv.get("buyer_gstin") or "").strip()
        row = {
            "invoice_number": inv["invoice_number"],
            "invoice_date": _fmt_date(inv["invoice_date"], "%d-%b-%Y"),
            "buyer_name": inv["buyer_name"],
            "buyer_gstin": gstin,
            "place_of_supply": inv.get("place_of_supply") or inv.get("buyer_state_code") or "",
            "invoice_type": "Regular B2B",
            "taxable_value": _d(inv["taxable_value"]),
            "cgst_rate": _effective_rate(inv["cgst_amount"], inv["taxable_value"]),
            "cgst_amount": _d(inv["cgst_amount"]),
            "sgst_rate": _effective_rate(inv["sgst_amount"], inv["taxable_value"]),
            "sgst_amount": _d(inv["sgst_amount"]),
            "igst_rate": _effective_rate(inv["igst_amount"], inv["taxable_value"]),
            "igst_amount": _d(inv["igst_amount"]),
            "invoice_value": _d(inv["grand_total"]),
            "reverse_charge": "Y" if inv.get("is_reverse_charge") else "N",
        }
        if len(gstin) == 15:
            b2b.append(row)
        else:
            row["invoice_type"] = "B2C Large"
            b2c.append(row)
    both = b2b + b2c
    summary = {
        "total_b2b": sum((r["invoice_value"] for r in b2b), Decimal("0")),
        "total_b2c": sum((r["invoice_value"] for r in b2c), Decimal("0")),
        "total_taxable": sum((r["taxable_value"] for r in both), Decimal("0")),
        "total_cgst": sum((r["cgst_amount"] for r in both), Decimal("0")),
        "total_sgst": sum((r["sgst_amount"] for r in both), Decimal("0")),
        "total_igst": sum((r["igst_amount"] for r in both), Decimal("0")),
        "invoice_count": len(both),
    }
    return {"b2b": b2b, "b2c": b2c, "summary": summary}


def build_hsn_summary(items: list) -> list:
    by_hsn = {}
    for it in items:
        hsn = it.get("hsn_code") or DEFAULT_HSN
        acc = by_hsn.get(hsn)
        if acc is None:
            desc = (it.get("description") or "").split(" - ")[0] or "Jewelry"
            acc = by_hsn[hsn] = {"hsn_code": hsn, "description": desc, "quantity": Decimal("0"), "taxable_value": Decimal("0"), "tax": Decimal("0")}
        acc["quantity"] += _d(it.get("quantity"))
        acc["taxable_value"] += _d(it.get("taxable_amount"))
        acc["tax"] += _d(it.get("cgst_amount")) + _d(it.get("sgst_amount")) + _d(it.get("igst_amount"))
    return [by_hsn[k] for k in sorted(by_hsn)]


def build_stock_report(variants: list) -> dict:
    rows = []
    for v in variants:
        stock = int(v.get("stock_level") or 0)
        rows.append(
            {
                "product_name": v.get("product_name") or "Unknown",
                "sku": v["sku"] + (f"-{v['sku_suffix']}" if v.get("sku_suffix") else ""),
                "variant_name": v.get("variant_name") or "Default",
                "category": v.get("category"),
                "current_stock": stock,
                "reorder_level": int(v.get("low_stock_threshold") or 0),
                "last_updated": _fmt_date(v.get("updated_at"), "%d/%m/%Y"),
                "stock_value": q_inr(max(stock, 0) * _d(v.get("cost_price"))),
            }
        )
    summary = {
        "total_products": len(rows),
        "low_stock": sum(1 for r in rows if r["current_stock"] < r["reorder_level"]),
        "total_value": sum((r["stock_value"] for r in rows), Decimal("0")),
    }
    return {"rows": rows, "summary": summary}


def csv_response(columns: list, rows: list, filename: str) -> Response:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(columns)
    for r in rows:
        writer.writerow([r.get(c, "") if r.get(c) is not None else "" for c in columns])
    return Response(
        content=output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}.csv"'},
    )


@router.get("/sales", dependencies=[Depends(require_permission("reports:read"))])
def sales_report(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    period: Optional[date] = None,
    format: Optional[str] = None,
    company_id: str = Depends(get_company_id),
):
    start, end = resolve_range(period, start_date, end_date)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT invoice_date, invoice_number, buyer_name, buyer_gstin, taxable_value,
                       cgst_amount, sgst_amount, igst_amount, grand_total, is_paid
                FROM invoices
                WHERE company_id = %s AND invoice_date::date BETWEEN %s AND %s
                ORDER BY invoice_date DESC, invoice_number DESC
                """,
                (company_id, start, end),
            )
            invoices = cur.fetchall()
            cur.execute(
                """
                SELECT COALESCE(SUM(ii.quantity), 0) AS total_items
                FROM invoice_items ii
                JOIN invoices i ON i.id = ii.invoice_id
                WHERE i.company_id = %s AND i.invoice_date::date BETWEEN %s AND %s
                """,
                (company_id, start, end),
            )
            report = build_sales_report(invoices, cur.fetchone()["total_items"])
    if format == "csv":
        return csv_response(SALES_COLUMNS, report["rows"], f"sales_{start}_{end}")
    return {"start_date": start, "end_date": end, **report}


@router.get("/gstr1", dependencies=[Depends(require_permission("reports:read"))])
def gstr1_report(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    period: Optional[date] = None,
    format: Optional[str] = None,
    company_id: str = Depends(get_company_id),
):
    start, end = resolve_range(period, start_date, end_date)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT invoice_number, invoice_date, buyer_name, buyer_gstin, place_of_supply, buyer_state_code,
                       taxable_value, cgst_amount, sgst_amount, igst_amount, grand_total, is_reverse_charge
                FROM invoices
                WHERE company_id = %s
                  AND invoice_type = 'regular'
                  AND invoice_date::date BETWEEN %s AND %s
                ORDER BY invoice_date, invoice_number
                """,
                (company_id, start, end),
            )
            report = build_gstr1(cur.fetchall())
    if format == "csv":
        return csv_response(GSTR1_COLUMNS, report["b2b"] + report["b2c"], f"gstr1_{start}_{end}")
    return {"start_date": start, "end_date": end, **report}


@router.get("/hsn-summary", dependencies=[Depends(require_permission("reports:read"))])
def hsn_summary(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    period: Optional[date] = None,
    format: Optional[str] = None,
    company_id: str = Depends(get_company_id),
):
    start, end = resolve_range(period, start_date, end_date)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT ii.hsn_code, ii.description, ii.quantity, ii.taxable_amount,
                       ii.cgst_amount, ii.sgst_amount, ii.igst_amount
                FROM invoice_items ii
                JOIN invoices i ON i.id = ii.invoice_id
                WHERE i.company_id = %s AND i.invoice_date::date BETWEEN %s AND %s
                """,
                (company_id, start, end),
            )
            rows = build_hsn_summary(cur.fetchall())
    if format == "csv":
        return csv_response(HSN_COLUMNS, rows, f"hsn_{start}_{end}")
    return {"start_date": start, "end_date": end, "rows": rows}


@router.get("/stock", dependencies=[Depends(require_permission("reports:read"))])
def stock_report(category: Optional[str] = None, format: Optional[str] = None, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.name AS product_name, p.sku, v.sku_suffix, v.variant_name, p.category,
                       v.stock_level, v.low_stock_threshold, v.updated_at, p.cost_price
                FROM product_variants v
                JOIN products p ON p.id = v.product_id
                WHERE v.company_id = %s AND p.is_active = true AND v.is_active = true
                  AND (%s::text IS NULL OR p.category = %s)
                ORDER BY v.stock_level ASC, p.name
                """,
                (company_id, category, category),
            )
            report = build_stock_report(cur.fetchall())
    if format == "csv":
        return csv_response(STOCK_COLUMNS, report["rows"], "stock")
    return report
