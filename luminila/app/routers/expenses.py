from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..audit_log import write_audit
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_permission
from ..gst import q_inr
from ..stock import next_doc_no
from ..validation import ExpensePaymentMode

router = APIRouter(prefix="/expenses", tags=["expenses"])

EXPENSE_COLUMNS = """
  e.id, e.expense_number, e.expense_date, e.category_id, c.name AS category_name,
  e.amount, e.payment_mode, e.payee, e.description, e.receipt_url, e.reference_number,
  e.created_at, e.updated_at
"""


class CategoryIn(BaseModel):
    name: str
    description: Optional[str] = None


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class ExpenseIn(BaseModel):
    expense_date: Optional[date] = None
    category_id: Optional[str] = None
    amount: Decimal = Field(gt=0)
    payment_mode: ExpensePaymentMode = "cash"
    payee: Optional[str] = None
    description: Optional[str] = None
    receipt_url: Optional[str] = None
    reference_number: Optional[str] = None


class ExpenseUpdate(BaseModel):
    expense_date: Optional[date] = None
    category_id: Optional[str] = None
    amount: Optional[Decimal] = Field(default=None, gt=0)
    payment_mode: Optional[ExpensePaymentMode] = None
    payee: Optional[str] = None
    description: Optional[str] = None
    receipt_url: Optional[str] = None
    reference_number: Optional[str] = None


def search_filter(search: Optional[str]) -> tuple[str, list]:
    """
    A numeric search matches the amount exactly; anything else is a
    case-insensitive match on payee or description.
    """
    s = (search or "").strip()
    if not s:
        return "", []
    try:
        amount = Decimal(s)
    except InvalidOperation:
        amount = None
    if amount is not None and amount.is_finite():
        return " AND e.amount = %s", [q_inr(amount)]
    like = f"%{s}%"
    return " AND (e.payee ILIKE %s OR e.description ILIKE %s)", [like, like]


def category_breakdown(rows: list, total) -> list:
    total = Decimal(str(total or 0))
    out = []
    for r in rows:
        amount = Decimal(str(r["amount"] or 0))
        pct = (amount / total * 100).quantize(Decimal("0.01")) if total > 0 else Decimal("0")
        out.append({"name": r["name"] or "Uncategorized", "amount": amount, "percentage": pct})
    out.sort(key=lambda x: x["amount"], reverse=True)
    return out


@router.get("/categories", dependencies=[Depends(require_permission("expenses:read"))])
def list_categories(include_inactive: bool = False, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, description, is_active, created_at
                FROM expense_categories
                WHERE company_id = %s AND (%s OR is_active = true)
                ORDER BY name
                """,
                (company_id, include_inactive),
            )
            return {"categories": cur.fetchall()}


@router.post("/categories", dependencies=[Depends(require_permission("expenses:write"))])
def create_category(data: CategoryIn, company_id: str = Depends(get_company_id)):
    name = data.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO expense_categories (id, company_id, name, description)
                VALUES (gen_random_uuid(), %s, %s, %s)
                ON CONFLICT (company_id, name) DO NOTHING
                RETURNING id
                """,
                (company_id, name, data.description),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=409, detail="category already exists")
            return {"id": row["id"]}


@router.patch("/categories/{category_id}", dependencies=[Depends(require_permission("expenses:write"))])
def update_category(category_id: str, data: CategoryUpdate, company_id: str = Depends(get_company_id)):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}
    if "name" in patch and not (patch["name"] or "").strip():
        raise HTTPException(status_code=400, detail="name is required")
    fields = []
    params = []
    for k, v in patch.items():
        fields.append(f"{k} = %s")
        params.append(v.strip() if isinstance(v, str) else v)
    params.extend([company_id, category_id])
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE expense_categories
                SET {', '.join(fields)}
                WHERE company_id = %s AND id = %s
                RETURNING id
                """,
                params,
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="category not found")
            return {"ok": True}


@router.get("", dependencies=[Depends(require_permission("expenses:read"))])
def list_expenses(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    category_id: Optional[str] = None,
    search: Optional[str] = None,
    company_id: str = Depends(get_company_id),
):
    where_search, search_params = search_filter(search)
    if category_id == "all":
        category_id = None
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {EXPENSE_COLUMNS}
                FROM expenses e
                LEFT JOIN expense_categories c ON c.id = e.category_id
                WHERE e.company_id = %s
                  AND (%s::date IS NULL OR e.expense_date >= %s::date)
                  AND (%s::date IS NULL OR e.expense_date <= %s::date)
                  AND (%s::uuid IS NULL OR e.category_id = %s::uuid)
                  {where_search}
                ORDER BY e.expense_date DESC, e.created_at DESC
                """,
                [company_id, start_date, start_date, end_date, end_date, category_id, category_id, *search_params],
            )
            return {"expenses": cur.fetchall()}


@router.get("/stats", dependencies=[Depends(require_permission("expenses:read"))])
def expense_stats(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    company_id: str = Depends(get_company_id),
):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COALESCE(SUM(amount), 0) AS total, COUNT(*) AS count
                FROM expenses
                WHERE company_id = %s
                  AND (%s::date IS NULL OR expense_date >= %s::date)
                  AND (%s::date IS NULL OR expense_date <= %s::date)
                """,
                (company_id, start_date, start_date, end_date, end_date),
            )
            head = cur.fetchone()
            cur.execute(
                """
                SELECT c.name, SUM(e.amount) AS amount
                FROM expenses e
                LEFT JOIN expense_categories c ON c.id = e.category_id
                WHERE e.company_id = %s
                  AND (%s::date IS NULL OR e.expense_date >= %s::date)
                  AND (%s::date IS NULL OR e.expense_date <= %s::date)
                GROUP BY c.name
                """,
                (company_id, start_date, start_date, end_date, end_date),
            )
            by_category = category_breakdown(cur.fetchall(), head["total"])
            cur.execute(
                f"""
                SELECT {EXPENSE_COLUMNS}
                FROM expenses e
                LEFT JOIN expense_categories c ON c.id = e.category_id
                WHERE e.company_id = %s
                  AND (%s::date IS NULL OR e.expense_date >= %s::date)
                  AND (%s::date IS NULL OR e.expense_date <= %s::date)
                ORDER BY e.expense_date DESC, e.created_at DESC
                LIMIT 5
                """,
                (company_id, start_date, start_date, end_date, end_date),
            )
            return {
                "total_amount": head["total"],
                "total_count": head["count"],
                "by_category": by_category,
                "recent": cur.fetchall(),
            }


@router.get("/{expense_id}", dependencies=[Depends(require_permission("expenses:read"))])
def get_expense(expense_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {EXPENSE_COLUMNS}
                FROM expenses e
                LEFT JOIN expense_categories c ON c.id = e.category_id
                WHERE e.company_id = %s AND e.id = %s
                """,
                (company_id, expense_id),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="expense not found")
            return {"expense": row}


@router.post("", dependencies=[Depends(require_permission("expenses:write"))])
def create_expense(data: ExpenseIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                exp_no = next_doc_no(cur, company_id, "EXP")
                cur.execute(
                    """
                    INSERT INTO expenses
                      (id, company_id, expense_number, expense_date, category_id, amount, payment_mode, payee,
                       description, receipt_url, reference_number, created_by_user_id)
                    VALUES
                      (gen_random_uuid(), %s, %s, COALESCE(%s, current_date), %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        company_id,
                        exp_no,
                        data.expense_date,
                        data.category_id,
                        q_inr(data.amount),
                        data.payment_mode,
                        data.payee,
                        data.description,
                        data.receipt_url,
                        data.reference_number,
                        user["user_id"],
                    ),
                )
                expense_id = cur.fetchone()["id"]
                write_audit(cur, company_id, user["user_id"], "expense_create", "expenses", expense_id, {"expense_number": exp_no, "amount": data.amount})
                return {"id": expense_id, "expense_number": exp_no}


@router.patch("/{expense_id}", dependencies=[Depends(require_permission("expenses:write"))])
def update_expense(expense_id: str, data: ExpenseUpdate, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}
    if "amount" in patch:
        if patch["amount"] is None:
            raise HTTPException(status_code=400, detail="amount is required")
        patch["amount"] = q_inr(patch["amount"])
    fields = []
    params = []
    for k, v in patch.items():
        fields.append(f"{k} = %s")
        params.append(v)
    params.extend([company_id, expense_id])
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE expenses
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE company_id = %s AND id = %s
                    RETURNING id
                    """,
                    params,
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="expense not found")
                write_audit(cur, company_id, user["user_id"], "expense_update", "expenses", expense_id, {"fields": sorted(patch)})
                return {"ok": True}


@router.delete("/{expense_id}", dependencies=[Depends(require_permission("expenses:write"))])
def delete_expense(expense_id: str, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("DELETE FROM expenses WHERE company_id = %s AND id = %s RETURNING expense_number", (company_id, expense_id))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="expense not found")
                write_audit(cur, company_id, user["user_id"], "expense_delete", "expenses", expense_id, {"expense_number": row["expense_number"]})
                return {"ok": True}
