from fastapi import APIRouter, Depends, HTTPException
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo
import calendar
from ..db import get_conn, set_company_context
from ..deps import get_company_id, require_permission
from ..gst import q_inr

router = APIRouter(prefix="/dashboard", tags=["dashboard"])

# Day boundaries are the store's, not the server's.
STORE_TZ = ZoneInfo("Asia/Kolkata")
WINDOW_DAYS = 30
MAX_TREND_DAYS = 366
# Sales orders only count as revenue once the customer has committed.
ORDER_REVENUE_STATUSES = ("confirmed", "shipped", "delivered", "invoiced")
OPEN_ORDER_STATUSES = ("draft", "sent", "confirmed", "shipped")
CHANNEL_LABELS = {
    "pos": "In-Store (POS)",
    "shopify": "Shopify",
    "woocommerce": "WooCommerce",
    "whatsapp": "WhatsApp",
    "b2b": "B2B / Online",
}
SUMMARY_PERIODS = ("today", "week", "month", "year")

# Channel sales plus committed sales orders, tagged with where they came from.
REVENUE_DOCS = """
    SELECT created_at, total, channel
    FROM sales
    WHERE company_id = %(company_id)s AND status <> 'cancelled' AND created_at >= %(since)s
    UNION ALL
    SELECT created_at, total, 'b2b' AS channel
    FROM sales_orders
    WHERE company_id = %(company_id)s AND order_type = 'sales_order'
      AND status = ANY(%(order_statuses)s) AND created_at >= %(since)s
"""


def _d(v) -> Decimal:
    return Decimal(str(v or 0))


def store_today(now: Optional[datetime] = None) -> date:
    return (now or datetime.now(STORE_TZ)).astimezone(STORE_TZ).date()


def day_start(d: date) -> datetime:
    return datetime(d.year, d.month, d.day, tzinfo=STORE_TZ)


def percent_change(current, previous) -> int:
    previous = _d(previous)
    if previous <= 0:
        return 0
    return int(((_d(current) - previous) / previous * 100).quantize(Decimal("1")))


def build_trend(rows: list, start: date, days: int) -> list:
    """One point per day from `start`, zero-filled; rows carry day/revenue/orders."""
    by_day = {r["day"]: r for r in rows}
    out = []
    for i in range(days):
        d = start + timedelta(days=i)
        r = by_day.get(d)
        out.append({"date": d, "revenue": q_inr(_d(r["revenue"]) if r else 0), "orders": int(r["orders"]) if r else 0})
    return out


def build_channel_breakdown(rows: list) -> list:
    total = sum((_d(r["revenue"]) for r in rows), Decimal("0"))
    out = []
    for r in rows:
        revenue = _d(r["revenue"])
        out.append(
            {
                "channel": CHANNEL_LABELS.get(r["channel"], r["channel"] or "Other"),
                "orders": int(r["orders"]),
                "revenue": q_inr(revenue),
                "percentage": int((revenue / total * 100).quantize(Decimal("1"))) if total > 0 else 0,
            }
        )
    out.sort(key=lambda c: c["revenue"], reverse=True)
    return out


def summary_start(period: str, now: datetime) -> datetime:
    now = now.astimezone(STORE_TZ)
    if period == "today":
        return day_start(now.date())
    if period == "week":
        return now - timedelta(days=7)
    if period == "month":
        year, month = (now.year - 1, 12) if now.month == 1 else (now.year, now.month - 1)
        # 31 March -> 28/29 February.
        return now.replace(year=year, month=month, day=min(now.day, calendar.monthrange(year, month)[1]))
    if period == "year":
        year = now.year - 1
        return now.replace(year=year, day=min(now.day, calendar.monthrange(year, now.month)[1]))
    raise HTTPException(status_code=400, detail=f"period must be one of: {', '.join(SUMMARY_PERIODS)}")


def _revenue_params(company_id: str, since: datetime) -> dict:
    return {"company_id": company_id, "since": since, "order_statuses": list(ORDER_REVENUE_STATUSES)}


@router.get("/stats", dependencies=[Depends(require_permission("reports:read"))])
def dashboard_stats(company_id: str = Depends(get_company_id)):
    """Last 30 days against the 30 before, plus today and current stock/order counts."""
    now = datetime.now(STORE_TZ)
    today = day_start(store_today(now))
    last_30 = now - timedelta(days=WINDOW_DAYS)
    prev_30 = now - timedelta(days=2 * WINDOW_DAYS)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                WITH docs AS ({REVENUE_DOCS})
                SELECT
                  COALESCE(SUM(total) FILTER (WHERE created_at >= %(last_30)s), 0) AS total_revenue,
                  COUNT(*) FILTER (WHERE created_at >= %(last_30)s) AS total_orders,
                  COALESCE(SUM(total) FILTER (WHERE created_at < %(last_30)s), 0) AS previous_revenue,
                  COALESCE(SUM(total) FILTER (WHERE created_at >= %(today)s), 0) AS today_revenue,
                  COUNT(*) FILTER (WHERE created_at >= %(today)s) AS today_orders
                FROM docs
                """,
                {**_revenue_params(company_id, prev_30), "last_30": last_30, "today": today},
            )
            money = cur.fetchone()
            cur.execute(
                """
                SELECT
                  (SELECT COUNT(*) FROM products WHERE company_id = %(company_id)s AND is_active = true) AS total_products,
                  (SELECT COUNT(*) FROM product_variants
                    WHERE company_id = %(company_id)s AND is_active = true
                      AND stock_level <= low_stock_threshold) AS low_stock_count,
                  (SELECT COUNT(*) FROM sales_orders
                    WHERE company_id = %(company_id)s AND order_type = 'sales_order'
                      AND status = ANY(%(open_statuses)s)) AS pending_orders
                """,
                {"company_id": company_id, "open_statuses": list(OPEN_ORDER_STATUSES)},
            )
            counts = cur.fetchone()
    return {
        "total_revenue": q_inr(_d(money["total_revenue"])),
        "total_orders": int(money["total_orders"]),
        "total_products": int(counts["total_products"]),
        "low_stock_count": int(counts["low_stock_count"]),
        "today_revenue": q_inr(_d(money["today_revenue"])),
        "today_orders": int(money["today_orders"]),
        "pending_orders": int(counts["pending_orders"]),
        "revenue_change": percent_change(money["total_revenue"], money["previous_revenue"]),
    }


@router.get("/sales-trend", dependencies=[Depends(require_permission("reports:read"))])
def sales_trend(days: int = WINDOW_DAYS, company_id: str = Depends(get_company_id)):
    if not 0 < days <= MAX_TREND_DAYS:
        raise HTTPException(status_code=400, detail=f"days must be between 1 and {MAX_TREND_DAYS}")
    start = store_today() - timedelta(days=days - 1)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                WITH docs AS ({REVENUE_DOCS})
                SELECT (created_at AT TIME ZONE %(tz)s)::date AS day, SUM(total) AS revenue, COUNT(*) AS orders
                FROM docs
                GROUP BY 1
                ORDER BY 1
                """,
                {**_revenue_params(company_id, day_start(start)), "tz": str(STORE_TZ)},
            )
            rows = cur.fetchall()
    return {"days": days, "points": build_trend(rows, start, days)}


@router.get("/top-products", dependencies=[Depends(require_permission("reports:read"))])
def top_products(limit: int = 10, company_id: str = Depends(get_company_id)):
    if not 0 < limit <= 100:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 100")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.id, p.name, p.sku, SUM(si.quantity)::int AS total_sold, SUM(si.total) AS revenue
                FROM sale_items si
                JOIN sales s ON s.id = si.sale_id
                JOIN product_variants v ON v.id = si.variant_id
                JOIN products p ON p.id = v.product_id
                WHERE s.company_id = %s AND s.status <> 'cancelled' AND s.created_at >= %s
                GROUP BY p.id, p.name, p.sku
                ORDER BY revenue DESC, total_sold DESC
                LIMIT %s
                """,
                (company_id, datetime.now(STORE_TZ) - timedelta(days=WINDOW_DAYS), limit),
            )
            return {"products": cur.fetchall()}


@router.get("/channels", dependencies=[Depends(require_permission("reports:read"))])
def channel_breakdown(company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                WITH docs AS ({REVENUE_DOCS})
                SELECT channel, COUNT(*) AS orders, COALESCE(SUM(total), 0) AS revenue
                FROM docs
                GROUP BY channel
                """,
                _revenue_params(company_id, datetime.now(STORE_TZ) - timedelta(days=WINDOW_DAYS)),
            )
            rows = cur.fetchall()
    return {"channels": build_channel_breakdown(rows)}


@router.get("/revenue-summary", dependencies=[Depends(require_permission("reports:read"))])
def revenue_summary(period: str = "month", company_id: str = Depends(get_company_id)):
    since = summary_start(period, datetime.now(STORE_TZ))
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                WITH docs AS ({REVENUE_DOCS})
                SELECT COALESCE(SUM(total), 0) AS revenue, COUNT(*) AS orders FROM docs
                """,
                _revenue_params(company_id, since),
            )
            row = cur.fetchone()
    revenue = _d(row["revenue"])
    orders = int(row["orders"])
    return {
        "period": period,
        "since": since,
        "revenue": q_inr(revenue),
        "orders": orders,
        "avg_order_value": q_inr(revenue / orders) if orders else Decimal("0.00"),
    }


@router.get("/recent-activity", dependencies=[Depends(require_permission("reports:read"))])
def recent_activity(limit: int = 10, company_id: str = Depends(get_company_id)):
    if not 0 < limit <= 50:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 50")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                (SELECT s.id, 'sale' AS type, s.channel AS ref, COALESCE(s.customer_name, 'Walk-in customer') AS description,
                        s.total AS amount, s.created_at
                 FROM sales s WHERE s.company_id = %(company_id)s ORDER BY s.created_at DESC LIMIT %(limit)s)
                UNION ALL
                (SELECT o.id, 'order', o.order_number, COALESCE(o.customer_name, '') || ' (' || o.status || ')',
                        o.total, o.created_at
                 FROM sales_orders o WHERE o.company_id = %(company_id)s ORDER BY o.created_at DESC LIMIT %(limit)s)
                UNION ALL
                (SELECT po.id, 'purchase', po.po_number, COALESCE(vd.name, 'Vendor') || ' (' || po.status || ')',
                        po.total, po.created_at
                 FROM purchase_orders po LEFT JOIN vendors vd ON vd.id = po.vendor_id
                 WHERE po.company_id = %(company_id)s ORDER BY po.created_at DESC LIMIT %(limit)s)
                UNION ALL
                (SELECT m.id, 'stock', m.movement_type, COALESCE(p.name, 'Unknown') || ' (' || CASE WHEN m.quantity > 0 THEN '+' ELSE '' END || m.quantity || ')',
                        NULL, m.created_at
                 FROM stock_movements m
                 LEFT JOIN product_variants v ON v.id = m.variant_id
                 LEFT JOIN products p ON p.id = v.product_id
                 WHERE m.company_id = %(company_id)s ORDER BY m.created_at DESC LIMIT %(limit)s)
                ORDER BY created_at DESC
                LIMIT %(limit)s
                """,
                {"company_id": company_id, "limit": limit},
            )
            return {"activity": cur.fetchall()}
