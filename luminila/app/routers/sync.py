from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from .. import sync_engine
from ..audit_log import write_audit
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_permission

router = APIRouter(prefix="/sync", tags=["sync"])

SyncOperation = Literal["full", "pull_products", "pull_orders", "push_inventory"]


class SyncRunIn(BaseModel):
    operation: SyncOperation = "full"
    channel: Optional[Literal["shopify", "woocommerce"]] = None
    since: Optional[datetime] = None


def _select_adapters(channel: Optional[str]) -> dict:
    adapters = sync_engine.available_adapters()
    if channel:
        if channel not in adapters:
            raise HTTPException(status_code=400, detail=f"{channel} is not configured")
        return {channel: adapters[channel]}
    if not adapters:
        raise HTTPException(status_code=400, detail="no sales channel is configured")
    return adapters


@router.get("/status", dependencies=[Depends(require_permission("sync:run"))])
def sync_status(company_id: str = Depends(get_company_id)):
    configured = sync_engine.available_adapters()
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT DISTINCT ON (channel, operation)
                  id, channel, operation, status, items_created, items_updated, items_skipped, conflicts,
                  jsonb_array_length(errors) AS error_count, started_at, finished_at
                FROM sync_runs
                WHERE company_id = %s
                ORDER BY channel, operation, started_at DESC
                """,
                (company_id,),
            )
            last_runs = cur.fetchall()
            cur.execute(
                """
                SELECT status, COUNT(*)::int AS count
                FROM channel_push_outbox
                WHERE company_id = %s AND status IN ('pending', 'failed')
                GROUP BY status
                """,
                (company_id,),
            )
            outbox = {r["status"]: r["count"] for r in cur.fetchall()}
            cur.execute(
                "SELECT channel, COUNT(*)::int AS count FROM channel_listings WHERE company_id = %s GROUP BY channel",
                (company_id,),
            )
            listings = {r["channel"]: r["count"] for r in cur.fetchall()}
    channels = []
    for ch in ("shopify", "woocommerce"):
        channels.append(
            {
                "channel": ch,
                "configured": ch in configured,
                "listings": listings.get(ch, 0),
                "last_runs": [r for r in last_runs if r["channel"] == ch],
            }
        )
    return {
        "channels": channels,
        "outbox_pending": outbox.get("pending", 0),
        "outbox_failed": outbox.get("failed", 0),
    }


@router.get("/runs", dependencies=[Depends(require_permission("sync:run"))])
def list_runs(
    channel: Optional[str] = None,
    operation: Optional[str] = None,
    limit: int = 50,
    company_id: str = Depends(get_company_id),
):
    if limit <= 0 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, channel, operation, status, items_created, items_updated, items_skipped, conflicts,
                       errors, started_at, finished_at
                FROM sync_runs
                WHERE company_id = %s
                  AND (%s::text IS NULL OR channel = %s)
                  AND (%s::text IS NULL OR operation = %s)
                ORDER BY started_at DESC
                LIMIT %s
                """,
                (company_id, channel, channel, operation, operation, limit),
            )
            return {"runs": cur.fetchall()}


@router.get("/listings", dependencies=[Depends(require_permission("sync:run"))])
def list_listings(channel: Optional[str] = None, limit: int = 200, offset: int = 0, company_id: str = Depends(get_company_id)):
    if limit <= 0 or limit > 1000:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 1000")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT l.id, l.channel, l.external_id, l.external_parent_id, l.product_id, l.variant_id,
                       p.sku || '-' || v.sku_suffix AS sku, p.name AS product_name, v.variant_name,
                       v.stock_level, l.last_pushed_level, l.external_updated_at, l.last_synced_at
                FROM channel_listings l
                JOIN product_variants v ON v.id = l.variant_id
                JOIN products p ON p.id = l.product_id
                WHERE l.company_id = %s
                  AND (%s::text IS NULL OR l.channel = %s)
                ORDER BY p.name, v.sku_suffix
                LIMIT %s OFFSET %s
                """,
                (company_id, channel, channel, limit, offset),
            )
            return {"listings": cur.fetchall()}


@router.post("/run", dependencies=[Depends(require_permission("sync:run"))])
def run_sync(data: SyncRunIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    adapters = _select_adapters(data.channel)
    with get_conn() as conn:
        if data.operation == "full":
            results = sync_engine.full_sync(conn, company_id, adapters, data.since)
        elif data.operation == "push_inventory":
            results = sync_engine.push_inventory(conn, company_id, adapters)
        elif data.operation == "pull_products":
            results = [sync_engine.pull_products(conn, company_id, a) for a in adapters.values()]
        else:
            results = [sync_engine.pull_orders(conn, company_id, a, data.since) for a in adapters.values()]
        with conn.transaction():
            set_company_context(conn, company_id)
            with conn.cursor() as cur:
                write_audit(
                    cur,
                    company_id,
                    user["user_id"],
                    "sync_run",
                    "sync_runs",
                    None,
                    {"operation": data.operation, "channels": list(adapters), "statuses": [r["status"] for r in results]},
                )
    return {"results": results}


@router.post("/outbox/retry", dependencies=[Depends(require_permission("sync:run"))])
def retry_failed_pushes(company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                # A variant may already have a newer pending row; keep that one.
                cur.execute(
                    """
                    UPDATE channel_push_outbox o
                    SET status = 'pending', attempt_count = 0, next_attempt_at = now(), last_error = NULL
                    WHERE o.company_id = %s AND o.status = 'failed'
                      AND NOT EXISTS (
                        SELECT 1 FROM channel_push_outbox p
                        WHERE p.company_id = o.company_id AND p.variant_id = o.variant_id AND p.status = 'pending'
                      )
                    RETURNING o.id
                    """,
                    (company_id,),
                )
                requeued = len(cur.fetchall())
                write_audit(cur, company_id, user["user_id"], "sync_outbox_retry", "channel_push_outbox", None, {"requeued": requeued})
                return {"requeued": requeued}
