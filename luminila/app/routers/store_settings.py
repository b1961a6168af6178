from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..audit_log import write_audit
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_company_access, require_permission
from ..gst import is_known_state_code, validate_gstin

router = APIRouter(prefix="/settings", tags=["settings"])

STORE_KEYS = (
    "store_name",
    "gstin",
    "state_code",
    "address",
    "phone",
    "email",
    "invoice_prefix",
    "invoice_terms",
)


class StoreSettingsIn(BaseModel):
    store_name: Optional[str] = None
    gstin: Optional[str] = None
    state_code: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    invoice_prefix: Optional[str] = None
    invoice_terms: Optional[str] = None


def load_store_settings(cur, company_id: str) -> dict:
    cur.execute("SELECT key, value FROM store_settings WHERE company_id = %s", (company_id,))
    out = {k: None for k in STORE_KEYS}
    for r in cur.fetchall():
        out[r["key"]] = r["value"]
    # Seller state falls back to the registered GSTIN prefix.
    if not out.get("state_code") and out.get("gstin"):
        out["state_code"] = out["gstin"][:2]
    return out


@router.get("/store", dependencies=[Depends(require_company_access)])
def get_store_settings(company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            return {"settings": load_store_settings(cur, company_id)}


@router.put("/store", dependencies=[Depends(require_permission("settings:write"))])
def put_store_settings(data: StoreSettingsIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    patch = data.model_dump(exclude_unset=True)
    if patch.get("gstin"):
        gstin = patch["gstin"].strip().upper()
        ok, msg = validate_gstin(gstin)
        if not ok:
            raise HTTPException(status_code=400, detail=msg.lower())
        patch["gstin"] = gstin
    if patch.get("state_code"):
        code = patch["state_code"].strip().zfill(2)
        if not is_known_state_code(code):
            raise HTTPException(status_code=400, detail="invalid state code")
        patch["state_code"] = code
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                for key, value in patch.items():
                    cur.execute(
                        """
                        INSERT INTO store_settings (company_id, key, value, updated_at)
                        VALUES (%s, %s, %s, now())
                        ON CONFLICT (company_id, key) DO UPDATE
                        SET value = EXCLUDED.value, updated_at = now()
                        """,
                        (company_id, key, (value or "").strip() or None),
                    )
                write_audit(cur, company_id, user["user_id"], "store_settings_update", "store_settings", None, {"keys": sorted(patch)})
                return {"settings": load_store_settings(cur, company_id)}
