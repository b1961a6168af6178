from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..audit_log import write_audit
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_permission
from ..gst import hsn_for_product
from ..stock import change_stock
from ..validation import MovementType, StockMode

router = APIRouter(tags=["inventory"])

PRODUCT_COLUMNS = """
    p.id, p.sku, p.name, p.description, p.category, p.material, p.base_price, p.cost_price,
    p.hsn_code, p.barcode, p.image_url, p.is_active, p.version, p.created_at, p.updated_at
"""
VARIANT_COLUMNS = """
    v.id, v.product_id, v.sku_suffix, v.variant_name, v.material, v.size, v.color,
    v.price_adjustment, v.stock_level, v.low_stock_threshold, v.is_active, v.version, v.updated_at
"""


class VariantIn(BaseModel):
    sku_suffix: str
    variant_name: str = "Default"
    material: Optional[str] = None
    size: Optional[str] = None
    color: Optional[str] = None
    price_adjustment: Decimal = Decimal("0")
    stock_level: int = Field(default=0, ge=0)
    low_stock_threshold: int = Field(default=10, ge=0)


class ProductIn(BaseModel):
    sku: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    material: Optional[str] = None
    base_price: Decimal = Field(ge=0)
    cost_price: Optional[Decimal] = Field(default=None, ge=0)
    hsn_code: Optional[str] = None
    barcode: Optional[str] = None
    image_url: Optional[str] = None
    variants: List[VariantIn] = []


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    material: Optional[str] = None
    base_price: Optional[Decimal] = Field(default=None, ge=0)
    cost_price: Optional[Decimal] = Field(default=None, ge=0)
    hsn_code: Optional[str] = None
    barcode: Optional[str] = None
    image_url: Optional[str] = None
    is_active: Optional[bool] = None
    # Optimistic concurrency: reject the write if someone else changed the product.
    expected_version: Optional[int] = None


class VariantUpdate(BaseModel):
    variant_name: Optional[str] = None
    material: Optional[str] = None
    size: Optional[str] = None
    color: Optional[str] = None
    price_adjustment: Optional[Decimal] = None
    low_stock_threshold: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None
    expected_version: Optional[int] = None


class StockChangeIn(BaseModel):
    mode: StockMode
    quantity: int = Field(ge=0)
    movement_type: MovementType = "adjustment"
    notes: Optional[str] = None


def _insert_variant(cur, company_id: str, product_id: str, v: VariantIn) -> dict:
    cur.execute(
        """
        INSERT INTO product_variants
          (id, company_id, product_id, sku_suffix, variant_name, material, size, color,
           price_adjustment, stock_level, low_stock_threshold)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id, sku_suffix, stock_level
        """,
        (
            company_id,
            product_id,
            v.sku_suffix.strip().upper(),
            (v.variant_name or "").strip() or "Default",
            v.material,
            v.size,
            v.color,
            v.price_adjustment,
            v.stock_level,
            v.low_stock_threshold,
        ),
    )
    return cur.fetchone()


@router.get("/products", dependencies=[Depends(require_permission("inventory:read"))])
def list_products(
    category: Optional[str] = None,
    search: Optional[str] = None,
    active_only: bool = True,
    limit: int = 200,
    offset: int = 0,
    company_id: str = Depends(get_company_id),
):
    if limit <= 0 or limit > 1000:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 1000")
    if offset < 0:
        raise HTTPException(status_code=400, detail="offset must be >= 0")
    q = (search or "").strip()
    like = f"%{q}%"
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {PRODUCT_COLUMNS},
                       COALESCE(SUM(v.stock_level), 0) AS total_stock,
                       COUNT(v.id) AS variant_count
                FROM products p
                LEFT JOIN product_variants v ON v.product_id = p.id AND v.is_active = true
                WHERE p.company_id = %s
                  AND (%s::text IS NULL OR p.category = %s)
                  AND (NOT %s OR p.is_active = true)
                  AND (%s = '' OR p.name ILIKE %s OR p.sku ILIKE %s OR p.barcode ILIKE %s)
                GROUP BY p.id
                ORDER BY p.name
                LIMIT %s OFFSET %s
                """,
                (company_id, category, category, active_only, q, like, like, like, limit, offset),
            )
            return {"products": cur.fetchall()}


@router.get("/products/search", dependencies=[Depends(require_permission("inventory:read"))])
def search_products(q: str = "", limit: int = 10, company_id: str = Depends(get_company_id)):
    """Name/SKU lookup used by the WhatsApp concierge and the order editor."""
    q = (q or "").strip()
    if not q:
        return {"products": []}
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            return {"products": find_products(cur, company_id, q, limit=min(max(limit, 1), 50))}


def find_products(cur, company_id: str, q: str, limit: int = 10) -> list:
    like = f"%{q}%"
    cur.execute(
        """
        SELECT p.id, p.sku, p.name, p.base_price, p.image_url, p.category,
               COALESCE(SUM(v.stock_level), 0) AS total_stock
        FROM products p
        LEFT JOIN product_variants v ON v.product_id = p.id AND v.is_active = true
        WHERE p.company_id = %s AND p.is_active = true
          AND (p.name ILIKE %s OR p.sku ILIKE %s)
        GROUP BY p.id
        ORDER BY p.name
        LIMIT %s
        """,
        (company_id, like, like, limit),
    )
    return cur.fetchall()


@router.get("/products/low-stock", dependencies=[Depends(require_permission("inventory:read"))])
def low_stock(company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT v.id AS variant_id, p.id AS product_id, p.name, p.sku || '-' || v.sku_suffix AS full_sku,
                       v.variant_name, v.stock_level, v.low_stock_threshold
                FROM product_variants v
                JOIN products p ON p.id = v.product_id
                WHERE v.company_id = %s AND v.is_active = true AND p.is_active = true
                  AND v.stock_level <= v.low_stock_threshold
                ORDER BY v.stock_level ASC, p.name
                """,
                (company_id,),
            )
            return {"variants": cur.fetchall()}


@router.get("/products/{product_id}", dependencies=[Depends(require_permission("inventory:read"))])
def get_product(product_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {PRODUCT_COLUMNS} FROM products p WHERE p.company_id = %s AND p.id = %s",
                (company_id, product_id),
            )
            product = cur.fetchone()
            if not product:
                raise HTTPException(status_code=404, detail="product not found")
            cur.execute(
                f"""
                SELECT {VARIANT_COLUMNS}
                FROM product_variants v
                WHERE v.company_id = %s AND v.product_id = %s
                ORDER BY v.sku_suffix
                """,
                (company_id, product_id),
            )
            return {"product": product, "variants": cur.fetchall()}


@router.post("/products", dependencies=[Depends(require_permission("inventory:write"))])
def create_product(data: ProductIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    sku = data.sku.strip().upper()
    name = data.name.strip()
    if not sku or not name:
        raise HTTPException(status_code=400, detail="sku and name are required")
    hsn = (data.hsn_code or "").strip() or hsn_for_product(data.category, data.material)
    variants = data.variants or [VariantIn(sku_suffix="STD")]
    suffixes = [v.sku_suffix.strip().upper() for v in variants]
    if len(set(suffixes)) != len(suffixes):
        raise HTTPException(status_code=400, detail="duplicate variant sku_suffix")

    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO products
                      (id, company_id, sku, name, description, category, material, base_price, cost_price,
                       hsn_code, barcode, image_url)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        company_id,
                        sku,
                        name,
                        data.description,
                        data.category,
                        data.material,
                        data.base_price,
                        data.cost_price,
                        hsn,
                        (data.barcode or "").strip() or None,
                        data.image_url,
                    ),
                )
                product_id = cur.fetchone()["id"]
                created = [_insert_variant(cur, company_id, product_id, v) for v in variants]
                for v in created:
                    if int(v["stock_level"] or 0) > 0:
                        cur.execute(
                            """
                            INSERT INTO stock_movements
                              (id, company_id, variant_id, movement_type, quantity, source, notes, created_by_user_id)
                            VALUES
                              (gen_random_uuid(), %s, %s, 'adjustment', %s, 'manual', 'opening stock', %s)
                            """,
                            (company_id, v["id"], v["stock_level"], user["user_id"]),
                        )
                write_audit(cur, company_id, user["user_id"], "product_create", "products", product_id, {"sku": sku})
                return {"id": product_id, "variant_ids": [v["id"] for v in created], "hsn_code": hsn}


@router.patch("/products/{product_id}", dependencies=[Depends(require_permission("inventory:write"))])
def update_product(
    product_id: str,
    data: ProductUpdate,
    company_id: str = Depends(get_company_id),
    user=Depends(get_current_user),
):
    patch = data.model_dump(exclude_unset=True)
    expected_version = patch.pop("expected_version", None)
    if not patch:
        return {"ok": True}
    fields = []
    params = []
    for k, v in patch.items():
        if k in {"name", "description", "category", "material", "barcode", "hsn_code"} and isinstance(v, str):
            v = v.strip() or None
        if k == "name" and not v:
            raise HTTPException(status_code=400, detail="name is required")
        fields.append(f"{k} = %s")
        params.append(v)
    params.extend([company_id, product_id, expected_version, expected_version])
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE products
                    SET {', '.join(fields)}, version = version + 1, updated_at = now()
                    WHERE company_id = %s AND id = %s
                      AND (%s::int IS NULL OR version = %s)
                    RETURNING id, version
                    """,
                    params,
                )
                row = cur.fetchone()
                if not row:
                    cur.execute("SELECT version FROM products WHERE company_id=%s AND id=%s", (company_id, product_id))
                    current = cur.fetchone()
                    if not current:
                        raise HTTPException(status_code=404, detail="product not found")
                    raise HTTPException(status_code=409, detail="product was modified by someone else")
                write_audit(cur, company_id, user["user_id"], "product_update", "products", product_id, {"fields": sorted(patch)})
                return {"ok": True, "version": row["version"]}


@router.delete("/products/{product_id}", dependencies=[Depends(require_permission("inventory:write"))])
def deactivate_product(product_id: str, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    # Products stay referenced by sales and invoices, so delete is a soft deactivate.
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE products
                    SET is_active = false, version = version + 1, updated_at = now()
                    WHERE company_id = %s AND id = %s
                    RETURNING id
                    """,
                    (company_id, product_id),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="product not found")
                write_audit(cur, company_id, user["user_id"], "product_deactivate", "products", product_id)
                return {"ok": True}


@router.post("/products/{product_id}/variants", dependencies=[Depends(require_permission("inventory:write"))])
def add_variant(product_id: str, data: VariantIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM products WHERE company_id=%s AND id=%s", (company_id, product_id))
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="product not found")
                row = _insert_variant(cur, company_id, product_id, data)
                write_audit(cur, company_id, user["user_id"], "variant_create", "product_variants", row["id"], {"product_id": product_id})
                return {"id": row["id"]}


@router.patch("/variants/{variant_id}", dependencies=[Depends(require_permission("inventory:write"))])
def update_variant(variant_id: str, data: VariantUpdate, company_id: str = Depends(get_company_id)):
    patch = data.model_dump(exclude_unset=True)
    expected_version = patch.pop("expected_version", None)
    if not patch:
        return {"ok": True}
    fields = [f"{k} = %s" for k in patch]
    params = list(patch.values()) + [company_id, variant_id, expected_version, expected_version]
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE product_variants
                SET {', '.join(fields)}, version = version + 1, updated_at = now()
                WHERE company_id = %s AND id = %s
                  AND (%s::int IS NULL OR version = %s)
                RETURNING version
                """,
                params,
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=409, detail="variant not found or modified by someone else")
            return {"ok": True, "version": row["version"]}


@router.post("/variants/{variant_id}/stock", dependencies=[Depends(require_permission("inventory:write"))])
def adjust_variant_stock(
    variant_id: str,
    data: StockChangeIn,
    company_id: str = Depends(get_company_id),
    user=Depends(get_current_user),
):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                res = change_stock(
                    cur,
                    company_id,
                    variant_id,
                    data.mode,
                    data.quantity,
                    data.movement_type,
                    notes=data.notes,
                    user_id=user["user_id"],
                )
                write_audit(
                    cur,
                    company_id,
                    user["user_id"],
                    "stock_change",
                    "product_variants",
                    variant_id,
                    {"mode": data.mode, "quantity": data.quantity, "delta": res["delta"]},
                )
                return res


@router.get("/variants/{variant_id}/movements", dependencies=[Depends(require_permission("inventory:read"))])
def list_movements(variant_id: str, limit: int = 100, company_id: str = Depends(get_company_id)):
    if limit <= 0 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, movement_type, quantity, source, reference_type, reference_id, notes, created_at
                FROM stock_movements
                WHERE company_id = %s AND variant_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (company_id, variant_id, limit),
            )
            return {"movements": cur.fetchall()}
