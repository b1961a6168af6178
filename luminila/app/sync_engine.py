"""
Channel sync engine.

Three operations per channel, each recorded as a `sync_runs` row:

- pull_products: remote catalog -> local products/variants, keyed by
  (channel, external_id) in `channel_listings`. Items whose remote
  updated_at is not newer than the listing's are skipped. Local rows are
  updated with a version compare-and-swap; a lost race is retried once and
  then counted as a conflict (the listing is not advanced, so the next run
  tries again).
- pull_orders: remote orders -> `sales` via create_sale, deduplicated on
  (channel, channel_order_id) so stock is decremented exactly once.
- push_inventory: drains `channel_push_outbox` and sets the remote stock
  level of every listing of each queued variant.

Every item runs in its own savepoint and is counted only once it commits: one
bad item never rolls back or aborts the rest of the run.
"""
from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

import psycopg
from fastapi import HTTPException

from .channels.base import ChannelError, RemoteOrder, RemoteProduct, RemoteVariant
from .channels.shopify import ShopifyAdapter
from .channels.woocommerce import WooCommerceAdapter
from .db import set_company_context
from .gst import hsn_for_product, q_inr
from .jsonlog import json_log
from .routers.customers import find_customer_by_phone
from .routers.sales import SALE_TRANSITIONS, create_sale, set_sale_status
from .stock import change_stock

PUSH_BATCH_SIZE = 100
# Errors that fail one item; the savepoint in _tx has already rolled it back.
ITEM_ERRORS = (HTTPException, ChannelError, ValueError, psycopg.Error)
PUSH_MAX_ATTEMPTS = 5
PUSH_RETRY_SECONDS = 60
# Re-read a few minutes before the last successful pull; duplicates are dropped anyway.
ORDER_PULL_OVERLAP = timedelta(minutes=5)


@dataclass
class RunStats:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: list = field(default_factory=list)

    def status(self) -> str:
        return "partial" if (self.errors or self.conflicts) else "success"

    def merge(self, other: "RunStats") -> None:
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.conflicts += other.conflicts
        self.errors.extend(other.errors)

    def as_dict(self) -> dict:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "conflicts": self.conflicts,
            "errors": list(self.errors),
        }


def available_adapters() -> dict:
    """Adapters with credentials configured, keyed by channel."""
    out = {}
    for adapter in (ShopifyAdapter(), WooCommerceAdapter()):
        if adapter.configured:
            out[adapter.channel] = adapter
    return out


@contextmanager
def _tx(conn, company_id: str):
    # set_config(..., true) is transaction-local, so set it inside every transaction.
    with conn.transaction():
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            yield cur


def start_run(conn, company_id: str, channel: str, operation: str) -> str:
    with _tx(conn, company_id) as cur:
        cur.execute(
            """
            INSERT INTO sync_runs (id, company_id, channel, operation, status)
            VALUES (gen_random_uuid(), %s, %s, %s, 'running')
            RETURNING id
            """,
            (company_id, channel, operation),
        )
        return cur.fetchone()["id"]


def finish_run(conn, company_id: str, run_id: str, status: str, stats: RunStats) -> None:
    with _tx(conn, company_id) as cur:
        cur.execute(
            """
            UPDATE sync_runs
            SET status = %s,
                items_created = %s,
                items_updated = %s,
                items_skipped = %s,
                conflicts = %s,
                errors = %s::jsonb,
                finished_at = now()
            WHERE company_id = %s AND id = %s
            """,
            (
                status,
                stats.created,
                stats.updated,
                stats.skipped,
                stats.conflicts,
                json.dumps(stats.errors[:200], default=str),
                company_id,
                run_id,
            ),
        )


def _run(conn, company_id: str, channel: str, operation: str, body: Callable[[RunStats], None]) -> dict:
    run_id = start_run(conn, company_id, channel, operation)
    stats = RunStats()
    status = "failed"
    try:
        body(stats)
        status = stats.status()
    except ChannelError as e:
        stats.errors.append({"error": str(e), "status": e.status})
    except psycopg.Error as e:
        stats.errors.append({"error": str(e)})
    finally:
        finish_run(conn, company_id, run_id, status, stats)
        json_log(
            "info" if status == "success" else "warning",
            "sync.run_finished",
            company_id=company_id,
            channel=channel,
            operation=operation,
            run_id=str(run_id),
            status=status,
            created=stats.created,
            updated=stats.updated,
            skipped=stats.skipped,
            conflicts=stats.conflicts,
            errors=len(stats.errors),
        )
    return {"run_id": run_id, "channel": channel, "operation": operation, "status": status, **stats.as_dict()}


def _item_failed(stats: RunStats, company_id: str, channel: str, item: str, exc: Exception) -> None:
    detail = exc.detail if isinstance(exc, HTTPException) else str(exc)
    stats.errors.append({"item": item, "error": detail})
    json_log("warning", "sync.item_failed", company_id=company_id, channel=channel, item=item, error=detail)


# ---------------------------------------------------------------------------
# Version compare-and-swap
# ---------------------------------------------------------------------------


def update_with_version(cur, table: str, company_id: str, row_id, compute: Callable[[dict], dict], retries: int = 1) -> str:
    """
    Read the row, let `compute` derive the changed columns, then write them
    only if `version` is still what was read. Returns updated, unchanged or
    conflict (after `retries` extra attempts).
    """
    for _ in range(retries + 1):
        cur.execute(f"SELECT * FROM {table} WHERE company_id = %s AND id = %s", (company_id, row_id))
        row = cur.fetchone()
        if not row:
            return "conflict"
        changes = compute(row)
        if not changes:
            return "unchanged"
        cols = list(changes)
        cur.execute(
            f"""
            UPDATE {table}
            SET {', '.join(f'{c} = %s' for c in cols)}, version = version + 1, updated_at = now()
            WHERE company_id = %s AND id = %s AND version = %s
            RETURNING version
            """,
            [*[changes[c] for c in cols], company_id, row_id, row["version"]],
        )
        if cur.fetchone():
            return "updated"
    return "conflict"


def _product_changes(rp: RemoteProduct) -> Callable[[dict], dict]:
    def compute(row: dict) -> dict:
        changes = {}
        if rp.title and rp.title != row["name"]:
            changes["name"] = rp.title
        if rp.description is not None and rp.description != row.get("description"):
            changes["description"] = rp.description
        # Local curation wins for category and image once set.
        if rp.category and not row.get("category"):
            changes["category"] = rp.category
        if rp.image_url and not row.get("image_url"):
            changes["image_url"] = rp.image_url
        return changes

    return compute


def _variant_changes(rv: RemoteVariant, base_price: Decimal) -> Callable[[dict], dict]:
    def compute(row: dict) -> dict:
        adj = q_inr(rv.price - Decimal(str(base_price or 0)))
        if rv.price > 0 and adj != Decimal(str(row["price_adjustment"])):
            return {"price_adjustment": adj}
        return {}

    return compute


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def split_sku(sku: str) -> tuple:
    """
    "LUM-EAR-001-GLD" -> ("LUM-EAR-001", "GLD"). Anything without a fourth
    segment is a product SKU with the default variant.
    """
    parts = [p for p in (sku or "").strip().upper().split("-") if p]
    if len(parts) > 3:
        return "-".join(parts[:3]), "-".join(parts[3:])
    return "-".join(parts), "STD"


def _not_newer(remote: Optional[datetime], local: Optional[datetime]) -> bool:
    return remote is not None and local is not None and remote <= local


def _get_listing(cur, company_id: str, channel: str, external_id: str) -> Optional[dict]:
    cur.execute(
        """
        SELECT id, product_id, variant_id, external_updated_at
        FROM channel_listings
        WHERE company_id = %s AND channel = %s AND external_id = %s
        """,
        (company_id, channel, external_id),
    )
    return cur.fetchone()


def find_variant_by_sku(cur, company_id: str, sku: str) -> Optional[dict]:
    sku = (sku or "").strip().upper()
    if not sku:
        return None
    cur.execute(
        """
        SELECT v.id AS variant_id, v.product_id
        FROM product_variants v
        JOIN products p ON p.id = v.product_id
        WHERE v.company_id = %s
          AND (upper(p.sku || '-' || v.sku_suffix) = %s OR upper(p.sku) = %s)
        ORDER BY (upper(p.sku || '-' || v.sku_suffix) = %s) DESC, v.created_at
        LIMIT 1
        """,
        (company_id, sku, sku, sku),
    )
    return cur.fetchone()


def _upsert_listing(cur, company_id: str, channel: str, rv: RemoteVariant, product_id, variant_id, updated_at) -> None:
    cur.execute(
        """
        INSERT INTO channel_listings
          (id, company_id, channel, external_id, external_parent_id, external_inventory_id, external_location_id,
           product_id, variant_id, external_updated_at, last_synced_at)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, now())
        ON CONFLICT (company_id, channel, external_id) DO UPDATE
        SET external_parent_id = EXCLUDED.external_parent_id,
            external_inventory_id = COALESCE(EXCLUDED.external_inventory_id, channel_listings.external_inventory_id),
            external_location_id = COALESCE(EXCLUDED.external_location_id, channel_listings.external_location_id),
            external_updated_at = EXCLUDED.external_updated_at,
            last_synced_at = now()
        """,
        (
            company_id,
            channel,
            rv.external_id,
            rv.parent_external_id,
            rv.inventory_item_id,
            rv.location_id,
            product_id,
            variant_id,
            updated_at,
        ),
    )


def _linked_elsewhere(cur, company_id: str, channel: str, variant_id, external_id: str) -> bool:
    # A variant carries at most one listing per channel.
    cur.execute(
        """
        SELECT 1 FROM channel_listings
        WHERE company_id = %s AND channel = %s AND variant_id = %s AND external_id <> %s
        LIMIT 1
        """,
        (company_id, channel, variant_id, external_id),
    )
    return cur.fetchone() is not None


def _ensure_product(cur, company_id: str, rp: RemoteProduct, sku: str) -> dict:
    cur.execute("SELECT id, base_price FROM products WHERE company_id = %s AND upper(sku) = %s", (company_id, sku))
    row = cur.fetchone()
    if row:
        return row
    cur.execute(
        """
        INSERT INTO products (id, company_id, sku, name, description, category, base_price, hsn_code, image_url)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id, base_price
        """,
        (
            company_id,
            sku,
            rp.title or sku,
            rp.description,
            rp.category,
            q_inr(rp.price),
            hsn_for_product(rp.category, None),
            rp.image_url,
        ),
    )
    return cur.fetchone()


def _create_variant(cur, company_id: str, channel: str, product: dict, rv: RemoteVariant, suffix: str) -> str:
    adj = q_inr(rv.price - Decimal(str(product["base_price"] or 0))) if rv.price > 0 else Decimal("0.00")
    for candidate in (suffix, f"{suffix}-{rv.external_id[-6:]}"):
        cur.execute(
            """
            INSERT INTO product_variants (id, company_id, product_id, sku_suffix, variant_name, price_adjustment, stock_level)
            VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, 0)
            ON CONFLICT (product_id, sku_suffix) DO NOTHING
            RETURNING id
            """,
            (company_id, product["id"], candidate, rv.title or "Default", adj),
        )
        row = cur.fetchone()
        if row:
            break
    else:
        raise HTTPException(status_code=409, detail=f"variant suffix {suffix} already taken")
    if rv.stock:
        change_stock(
            cur,
            company_id,
            row["id"],
            "set",
            max(int(rv.stock), 0),
            "sync",
            source=channel,
            notes="initial level from channel",
            queue_push=False,
        )
    return row["id"]


def apply_remote_product(cur, company_id: str, channel: str, rp: RemoteProduct, stats: RunStats) -> None:
    product_outcome = None
    for rv in rp.variants:
        listing = _get_listing(cur, company_id, channel, rv.external_id)
        if listing and _not_newer(rp.updated_at, listing["external_updated_at"]):
            stats.skipped += 1
            continue

        if listing is None:
            match = find_variant_by_sku(cur, company_id, rv.sku)
            if match is None:
                product_sku, suffix = split_sku(rv.sku or rp.sku)
                product = _ensure_product(cur, company_id, rp, product_sku or rp.sku.upper())
                variant_id = _create_variant(cur, company_id, channel, product, rv, suffix)
                _upsert_listing(cur, company_id, channel, rv, product["id"], variant_id, rp.updated_at)
                stats.created += 1
                continue
            product_id, variant_id = match["product_id"], match["variant_id"]
            if _linked_elsewhere(cur, company_id, channel, variant_id, rv.external_id):
                stats.conflicts += 1
                stats.errors.append({"item": rv.external_id, "error": f"sku {rv.sku} is already linked to another {channel} listing"})
                continue
        else:
            product_id, variant_id = listing["product_id"], listing["variant_id"]

        if product_outcome is None:
            product_outcome = update_with_version(cur, "products", company_id, product_id, _product_changes(rp))
        cur.execute("SELECT base_price FROM products WHERE id = %s", (product_id,))
        base_price = cur.fetchone()["base_price"]
        variant_outcome = update_with_version(cur, "product_variants", company_id, variant_id, _variant_changes(rv, base_price))

        if "conflict" in (product_outcome, variant_outcome):
            stats.conflicts += 1
            continue
        _upsert_listing(cur, company_id, channel, rv, product_id, variant_id, rp.updated_at)
        if listing is None or "updated" in (product_outcome, variant_outcome):
            stats.updated += 1
        else:
            stats.skipped += 1


def pull_products(conn, company_id: str, adapter) -> dict:
    def body(stats: RunStats) -> None:
        for rp in adapter.fetch_products():
            item_stats = RunStats()
            try:
                with _tx(conn, company_id) as cur:
                    apply_remote_product(cur, company_id, adapter.channel, rp, item_stats)
            except ITEM_ERRORS as e:
                _item_failed(stats, company_id, adapter.channel, rp.external_id, e)
                continue
            stats.merge(item_stats)

    return _run(conn, company_id, adapter.channel, "pull_products", body)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


def _resolve_line_variant(cur, company_id: str, channel: str, line) -> Optional[str]:
    if line.external_variant_id:
        listing = _get_listing(cur, company_id, channel, line.external_variant_id)
        if listing:
            return listing["variant_id"]
    match = find_variant_by_sku(cur, company_id, line.sku)
    return match["variant_id"] if match else None


def apply_remote_order(cur, company_id: str, channel: str, ro: RemoteOrder, stats: RunStats) -> None:
    items = []
    for line in ro.lines:
        if line.quantity <= 0:
            continue
        variant_id = _resolve_line_variant(cur, company_id, channel, line)
        if not variant_id:
            stats.errors.append({"item": ro.external_id, "error": f"unmatched sku {line.sku or line.title}"})
        items.append(
            {
                "variant_id": variant_id,
                "quantity": line.quantity,
                "unit_price": line.unit_price,
                "description": line.title or line.sku,
            }
        )
    if not items:
        stats.skipped += 1
        return

    customer = find_customer_by_phone(cur, company_id, ro.customer_phone) if ro.customer_phone else None
    created = create_sale(
        cur,
        company_id,
        channel,
        items,
        status=ro.status,
        customer_id=str(customer["id"]) if customer else None,
        customer_name=ro.customer_name or None,
        customer_phone=ro.customer_phone or None,
        customer_email=ro.customer_email or None,
        channel_order_id=ro.external_id,
        payment_method=channel,
        payment_status=ro.payment_status,
        notes=" | ".join(p for p in (ro.name, ro.shipping_address) if p) or None,
        total_override=ro.total if ro.total > 0 else None,
    )
    if created is not None:
        stats.created += 1
        return

    # Already imported: follow forward status moves only.
    cur.execute(
        "SELECT id, status, payment_status FROM sales WHERE company_id = %s AND channel = %s AND channel_order_id = %s",
        (company_id, channel, ro.external_id),
    )
    sale = cur.fetchone()
    changed = False
    if ro.status != sale["status"] and ro.status in SALE_TRANSITIONS.get(sale["status"], set()):
        set_sale_status(cur, company_id, str(sale["id"]), ro.status)
        changed = True
    if ro.payment_status != sale["payment_status"]:
        cur.execute(
            "UPDATE sales SET payment_status = %s, updated_at = now() WHERE id = %s",
            (ro.payment_status, sale["id"]),
        )
        changed = True
    if changed:
        stats.updated += 1
    else:
        stats.skipped += 1


def last_order_pull(conn, company_id: str, channel: str) -> Optional[datetime]:
    with _tx(conn, company_id) as cur:
        cur.execute(
            """
            SELECT max(started_at) AS started_at
            FROM sync_runs
            WHERE company_id = %s AND channel = %s AND operation = 'pull_orders' AND status IN ('success', 'partial')
            """,
            (company_id, channel),
        )
        row = cur.fetchone()
    return row["started_at"] if row else None


def pull_orders(conn, company_id: str, adapter, since: Optional[datetime] = None) -> dict:
    if since is None:
        last = last_order_pull(conn, company_id, adapter.channel)
        since = last - ORDER_PULL_OVERLAP if last else None

    def body(stats: RunStats) -> None:
        for ro in adapter.fetch_orders(since):
            item_stats = RunStats()
            try:
                with _tx(conn, company_id) as cur:
                    apply_remote_order(cur, company_id, adapter.channel, ro, item_stats)
            except ITEM_ERRORS as e:
                _item_failed(stats, company_id, adapter.channel, ro.external_id, e)
                continue
            stats.merge(item_stats)

    return _run(conn, company_id, adapter.channel, "pull_orders", body)


# ---------------------------------------------------------------------------
# Inventory push
# ---------------------------------------------------------------------------


def claim_push_batch(conn, company_id: str, limit: int = PUSH_BATCH_SIZE) -> list:
    # Claiming moves next_attempt_at forward, so a crashed push is retried later.
    with _tx(conn, company_id) as cur:
        cur.execute(
            """
            WITH due AS (
              SELECT id
              FROM channel_push_outbox
              WHERE company_id = %s AND status = 'pending' AND next_attempt_at <= now()
              ORDER BY created_at
              LIMIT %s
              FOR UPDATE SKIP LOCKED
            )
            UPDATE channel_push_outbox o
            SET attempt_count = o.attempt_count + 1,
                next_attempt_at = now() + make_interval(secs => %s)
            FROM due
            WHERE o.id = due.id
            RETURNING o.id, o.variant_id, o.attempt_count
            """,
            (company_id, limit, PUSH_RETRY_SECONDS),
        )
        return cur.fetchall()


def _push_one(conn, company_id: str, job: dict, adapters: dict, per_channel: dict) -> None:
    with _tx(conn, company_id) as cur:
        cur.execute("SELECT stock_level FROM product_variants WHERE company_id = %s AND id = %s", (company_id, job["variant_id"]))
        variant = cur.fetchone()
        cur.execute(
            """
            SELECT id, channel, external_id, external_parent_id, external_inventory_id, external_location_id
            FROM channel_listings
            WHERE company_id = %s AND variant_id = %s
            """,
            (company_id, job["variant_id"]),
        )
        listings = [l for l in cur.fetchall() if l["channel"] in adapters]
    level = max(int(variant["stock_level"]), 0) if variant else 0

    failures = []
    for listing in listings:
        stats = per_channel[listing["channel"]]
        try:
            adapters[listing["channel"]].push_stock(listing, level)
        except ChannelError as e:
            failures.append(str(e))
            _item_failed(stats, company_id, listing["channel"], listing["external_id"], e)
            continue
        stats.updated += 1
        with _tx(conn, company_id) as cur:
            cur.execute(
                "UPDATE channel_listings SET last_pushed_level = %s, last_synced_at = now() WHERE id = %s",
                (level, listing["id"]),
            )

    with _tx(conn, company_id) as cur:
        if failures:
            cur.execute(
                """
                UPDATE channel_push_outbox
                SET status = CASE WHEN attempt_count >= %s THEN 'failed' ELSE 'pending' END,
                    last_error = %s
                WHERE id = %s
                """,
                (PUSH_MAX_ATTEMPTS, "; ".join(failures)[:2000], job["id"]),
            )
            return
        # A change that landed while pushing gets its own pending row once this one is closed.
        cur.execute(
            "UPDATE channel_push_outbox SET status = 'sent', sent_at = now(), last_error = NULL WHERE id = %s",
            (job["id"],),
        )
        cur.execute("SELECT stock_level FROM product_variants WHERE id = %s", (job["variant_id"],))
        now_row = cur.fetchone()
        if listings and now_row and max(int(now_row["stock_level"]), 0) != level:
            cur.execute(
                """
                INSERT INTO channel_push_outbox (id, company_id, variant_id, status, attempt_count, next_attempt_at)
                VALUES (gen_random_uuid(), %s, %s, 'pending', 0, now())
                ON CONFLICT (company_id, variant_id) WHERE status = 'pending' DO NOTHING
                """,
                (company_id, job["variant_id"]),
            )


def push_inventory(conn, company_id: str, adapters: dict, limit: int = PUSH_BATCH_SIZE) -> list:
    if not adapters:
        return []
    per_channel = {ch: RunStats() for ch in adapters}
    run_ids = {ch: start_run(conn, company_id, ch, "push_inventory") for ch in adapters}
    try:
        for job in claim_push_batch(conn, company_id, limit):
            _push_one(conn, company_id, job, adapters, per_channel)
    finally:
        results = []
        for ch, stats in per_channel.items():
            finish_run(conn, company_id, run_ids[ch], stats.status(), stats)
            json_log(
                "info" if not stats.errors else "warning",
                "sync.run_finished",
                company_id=company_id,
                channel=ch,
                operation="push_inventory",
                run_id=str(run_ids[ch]),
                status=stats.status(),
                updated=stats.updated,
                errors=len(stats.errors),
            )
            results.append({"run_id": run_ids[ch], "channel": ch, "operation": "push_inventory", "status": stats.status(), **stats.as_dict()})
    return results


def full_sync(conn, company_id: str, adapters: Optional[dict] = None, since: Optional[datetime] = None) -> list:
    """Pull products then orders for every channel, then push queued stock."""
    adapters = available_adapters() if adapters is None else adapters
    results = []
    for adapter in adapters.values():
        results.append(pull_products(conn, company_id, adapter))
        results.append(pull_orders(conn, company_id, adapter, since))
    results.extend(push_inventory(conn, company_id, adapters))
    return results
