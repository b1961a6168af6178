from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..audit_log import write_audit
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_permission
from ..validation import GSTIN, PhoneNumber

router = APIRouter(prefix="/vendors", tags=["vendors"])


class VendorIn(BaseModel):
    name: str
    contact_name: Optional[str] = None
    phone: PhoneNumber = None
    email: Optional[str] = None
    address: Optional[str] = None
    gstin: GSTIN = None
    pan: Optional[str] = None
    payment_terms: Optional[str] = None
    notes: Optional[str] = None


class VendorUpdate(BaseModel):
    name: Optional[str] = None
    contact_name: Optional[str] = None
    phone: PhoneNumber = None
    email: Optional[str] = None
    address: Optional[str] = None
    gstin: GSTIN = None
    pan: Optional[str] = None
    payment_terms: Optional[str] = None
    notes: Optional[str] = None
    is_active: Optional[bool] = None


class VendorProductIn(BaseModel):
    variant_id: str
    vendor_sku: Optional[str] = None
    vendor_price: Optional[Decimal] = Field(default=None, ge=0)
    lead_time_days: Optional[int] = Field(default=None, ge=0)


@router.get("", dependencies=[Depends(require_permission("vendors:read"))])
def list_vendors(include_inactive: bool = False, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, contact_name, phone, email, address, gstin, pan, payment_terms, notes,
                       is_active, created_at, updated_at
                FROM vendors
                WHERE company_id = %s AND (%s OR is_active = true)
                ORDER BY name
                """,
                (company_id, include_inactive),
            )
            return {"vendors": cur.fetchall()}


@router.get("/{vendor_id}", dependencies=[Depends(require_permission("vendors:read"))])
def get_vendor(vendor_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, contact_name, phone, email, address, gstin, pan, payment_terms, notes,
                       is_active, created_at, updated_at
                FROM vendors
                WHERE company_id = %s AND id = %s
                """,
                (company_id, vendor_id),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="vendor not found")
            return {"vendor": row}


@router.post("", dependencies=[Depends(require_permission("vendors:write"))])
def create_vendor(data: VendorIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    name = data.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO vendors
                      (id, company_id, name, contact_name, phone, email, address, gstin, pan, payment_terms, notes)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        company_id,
                        name,
                        data.contact_name,
                        data.phone,
                        (data.email or "").strip() or None,
                        data.address,
                        data.gstin,
                        (data.pan or "").strip().upper() or None,
                        data.payment_terms,
                        data.notes,
                    ),
                )
                vendor_id = cur.fetchone()["id"]
                write_audit(cur, company_id, user["user_id"], "vendor_create", "vendors", vendor_id, {"name": name})
                return {"id": vendor_id}


@router.patch("/{vendor_id}", dependencies=[Depends(require_permission("vendors:write"))])
def update_vendor(vendor_id: str, data: VendorUpdate, company_id: str = Depends(get_company_id)):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}
    if "name" in patch and not (patch["name"] or "").strip():
        raise HTTPException(status_code=400, detail="name is required")
    fields = []
    params = []
    for k, v in patch.items():
        if isinstance(v, str):
            v = v.strip() or None
        fields.append(f"{k} = %s")
        params.append(v)
    params.extend([company_id, vendor_id])
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE vendors
                SET {', '.join(fields)}, updated_at = now()
                WHERE company_id = %s AND id = %s
                RETURNING id
                """,
                params,
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="vendor not found")
            return {"ok": True}


@router.delete("/{vendor_id}", dependencies=[Depends(require_permission("vendors:write"))])
def delete_vendor(vendor_id: str, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM purchase_orders WHERE company_id=%s AND vendor_id=%s LIMIT 1", (company_id, vendor_id))
                if cur.fetchone():
                    # Purchase history keeps the vendor; hide it instead.
                    cur.execute(
                        "UPDATE vendors SET is_active = false, updated_at = now() WHERE company_id=%s AND id=%s",
                        (company_id, vendor_id),
                    )
                    write_audit(cur, company_id, user["user_id"], "vendor_deactivate", "vendors", vendor_id)
                    return {"ok": True, "deactivated": True}
                cur.execute("DELETE FROM vendors WHERE company_id=%s AND id=%s RETURNING id", (company_id, vendor_id))
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="vendor not found")
                write_audit(cur, company_id, user["user_id"], "vendor_delete", "vendors", vendor_id)
                return {"ok": True, "deactivated": False}


@router.get("/{vendor_id}/products", dependencies=[Depends(require_permission("vendors:read"))])
def list_vendor_products(vendor_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT vp.id, vp.variant_id, vp.vendor_sku, vp.vendor_price, vp.lead_time_days,
                       p.name AS product_name, p.sku || '-' || v.sku_suffix AS full_sku, v.stock_level
                FROM vendor_products vp
                JOIN product_variants v ON v.id = vp.variant_id
                JOIN products p ON p.id = v.product_id
                WHERE vp.company_id = %s AND vp.vendor_id = %s
                ORDER BY p.name
                """,
                (company_id, vendor_id),
            )
            return {"products": cur.fetchall()}


@router.post("/{vendor_id}/products", dependencies=[Depends(require_permission("vendors:write"))])
def link_vendor_product(vendor_id: str, data: VendorProductIn, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO vendor_products (id, company_id, vendor_id, variant_id, vendor_sku, vendor_price, lead_time_days)
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
                ON CONFLICT (vendor_id, variant_id) DO UPDATE
                SET vendor_sku = EXCLUDED.vendor_sku,
                    vendor_price = EXCLUDED.vendor_price,
                    lead_time_days = EXCLUDED.lead_time_days
                RETURNING id
                """,
                (company_id, vendor_id, data.variant_id, data.vendor_sku, data.vendor_price, data.lead_time_days),
            )
            return {"id": cur.fetchone()["id"]}


@router.delete("/{vendor_id}/products/{link_id}", dependencies=[Depends(require_permission("vendors:write"))])
def unlink_vendor_product(vendor_id: str, link_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                "DELETE FROM vendor_products WHERE company_id=%s AND vendor_id=%s AND id=%s RETURNING id",
                (company_id, vendor_id, link_id),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="vendor product not found")
            return {"ok": True}


@router.get("/by-variant/{variant_id}", dependencies=[Depends(require_permission("vendors:read"))])
def vendors_for_variant(variant_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT v.id AS vendor_id, v.name, v.phone, vp.vendor_sku, vp.vendor_price, vp.lead_time_days
                FROM vendor_products vp
                JOIN vendors v ON v.id = vp.vendor_id
                WHERE vp.company_id = %s AND vp.variant_id = %s AND v.is_active = true
                ORDER BY vp.vendor_price NULLS LAST
                """,
                (company_id, variant_id),
            )
            return {"vendors": cur.fetchall()}
