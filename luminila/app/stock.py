from typing import Optional

from fastapi import HTTPException


def next_doc_no(cur, company_id: str, doc_type: str) -> str:
    cur.execute("SELECT next_document_no(%s, %s) AS doc_no", (company_id, doc_type))
    return cur.fetchone()["doc_no"]


def change_stock(
    cur,
    company_id: str,
    variant_id: str,
    mode: str,
    quantity: int,
    movement_type: str,
    source: str = "manual",
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    notes: Optional[str] = None,
    user_id: Optional[str] = None,
    queue_push: bool = True,
) -> dict:
    """
    Apply a stock change in one statement and log it to `stock_movements`.

    mode: set | increment | decrement. Decrements may take stock negative
    (channel orders arrive after the fact); the movement still records the
    oversell so it shows up on the stock report.
    """
    quantity = int(quantity)
    if quantity < 0:
        raise HTTPException(status_code=400, detail="quantity must be >= 0")
    if mode == "set":
        expr = "%s"
    elif mode == "increment":
        expr = "prev.stock_level + %s"
    elif mode == "decrement":
        expr = "prev.stock_level - %s"
    else:
        raise HTTPException(status_code=400, detail="invalid stock mode")

    cur.execute(
        f"""
        WITH prev AS (
          SELECT id, stock_level
          FROM product_variants
          WHERE company_id=%s AND id=%s
          FOR UPDATE
        )
        UPDATE product_variants v
        SET stock_level = {expr},
            version = v.version + 1,
            updated_at = now()
        FROM prev
        WHERE v.id = prev.id
        RETURNING v.id, v.product_id, prev.stock_level AS old_level, v.stock_level AS new_level
        """,
        (company_id, variant_id, quantity),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="variant not found")

    delta = int(row["new_level"]) - int(row["old_level"])
    if delta != 0:
        cur.execute(
            """
            INSERT INTO stock_movements
              (id, company_id, variant_id, movement_type, quantity, source, reference_type, reference_id, notes, created_by_user_id)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (company_id, variant_id, movement_type, delta, source, reference_type, reference_id, notes, user_id),
        )
        if queue_push:
            queue_inventory_push(cur, company_id, variant_id)
    return {
        "variant_id": row["id"],
        "product_id": row["product_id"],
        "old_level": row["old_level"],
        "new_level": row["new_level"],
        "delta": delta,
    }


def queue_inventory_push(cur, company_id: str, variant_id: str) -> None:
    # One pending row per variant; the push job reads the current level when it runs.
    cur.execute(
        """
        INSERT INTO channel_push_outbox (id, company_id, variant_id, status, attempt_count, next_attempt_at)
        VALUES (gen_random_uuid(), %s, %s, 'pending', 0, now())
        ON CONFLICT (company_id, variant_id) WHERE status = 'pending' DO NOTHING
        """,
        (company_id, variant_id),
    )
