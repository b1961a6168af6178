from decimal import Decimal
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from .. import loyalty
from ..audit_log import write_audit
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_permission

router = APIRouter(prefix="/loyalty", tags=["loyalty"])


class LoyaltySettingsIn(BaseModel):
    points_per_rupee: Optional[Decimal] = Field(default=None, ge=0)
    redemption_value: Optional[Decimal] = Field(default=None, gt=0)
    min_redemption_points: Optional[int] = Field(default=None, ge=0)
    max_redemption_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    points_validity_days: Optional[int] = Field(default=None, ge=0)
    signup_bonus: Optional[int] = Field(default=None, ge=0)
    birthday_bonus: Optional[int] = Field(default=None, ge=0)
    referral_bonus: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class TierIn(BaseModel):
    name: str
    min_points: int = Field(ge=0)
    max_points: Optional[int] = Field(default=None, ge=0)
    multiplier: Decimal = Field(default=Decimal("1"), gt=0)
    discount_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    color: str = "#C4A661"
    benefits: List[str] = []


class EarnIn(BaseModel):
    amount: Decimal = Field(gt=0)
    reference_type: str = "sale"
    reference_id: str


class RedeemIn(BaseModel):
    points: int = Field(gt=0)
    reference_type: str = "sale"
    reference_id: str
    bill_amount: Optional[Decimal] = Field(default=None, gt=0)


class AdjustIn(BaseModel):
    points: int
    reason: str


class BonusIn(BaseModel):
    kind: Literal["birthday", "referral"]
    reference_id: str


def _validate_tiers(tiers: List[TierIn]) -> None:
    names = [t.name.strip() for t in tiers]
    if any(not n for n in names):
        raise HTTPException(status_code=400, detail="tier name is required")
    if len(set(n.lower() for n in names)) != len(names):
        raise HTTPException(status_code=400, detail="tier names must be unique")
    for t in tiers:
        if t.max_points is not None and t.max_points < t.min_points:
            raise HTTPException(status_code=400, detail=f"tier {t.name}: max_points below min_points")


@router.get("/settings", dependencies=[Depends(require_permission("loyalty:read"))])
def get_settings(company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            return {"settings": loyalty.fetch_settings(cur, company_id)}


@router.put("/settings", dependencies=[Depends(require_permission("settings:write"))])
def put_settings(data: LoyaltySettingsIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    patch = data.model_dump(exclude_unset=True, exclude_none=True)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                merged = loyalty.fetch_settings(cur, company_id)
                merged.update(patch)
                cols = list(loyalty.DEFAULT_SETTINGS)
                cur.execute(
                    f"""
                    INSERT INTO loyalty_settings (company_id, {', '.join(cols)}, updated_at)
                    VALUES (%s, {', '.join(['%s'] * len(cols))}, now())
                    ON CONFLICT (company_id) DO UPDATE
                    SET {', '.join(f'{c} = EXCLUDED.{c}' for c in cols)}, updated_at = now()
                    """,
                    [company_id, *[merged[c] for c in cols]],
                )
                write_audit(cur, company_id, user["user_id"], "loyalty_settings_update", "loyalty_settings", None, patch)
                return {"settings": merged}


@router.get("/tiers", dependencies=[Depends(require_permission("loyalty:read"))])
def get_tiers(company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            return {"tiers": loyalty.fetch_tiers(cur, company_id)}


@router.put("/tiers", dependencies=[Depends(require_permission("settings:write"))])
def put_tiers(tiers: List[TierIn], company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    _validate_tiers(tiers)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("DELETE FROM loyalty_tiers WHERE company_id = %s", (company_id,))
                for t in tiers:
                    cur.execute(
                        """
                        INSERT INTO loyalty_tiers
                          (id, company_id, name, min_points, max_points, multiplier, discount_percent, color, benefits)
                        VALUES
                          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (company_id, t.name.strip(), t.min_points, t.max_points, t.multiplier, t.discount_percent, t.color, t.benefits),
                    )
                write_audit(cur, company_id, user["user_id"], "loyalty_tiers_update", "loyalty_tiers", None, {"tiers": [t.name for t in tiers]})
                return {"tiers": loyalty.fetch_tiers(cur, company_id)}


@router.get("/stats", dependencies=[Depends(require_permission("loyalty:read"))])
def get_stats(company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            return loyalty.stats(cur, company_id)


@router.get("/top", dependencies=[Depends(require_permission("loyalty:read"))])
def get_top_members(limit: int = 10, company_id: str = Depends(get_company_id)):
    if limit <= 0 or limit > 100:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 100")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            return {"members": loyalty.top_members(cur, company_id, limit)}


@router.get("/customers/{customer_id}", dependencies=[Depends(require_permission("loyalty:read"))])
def get_customer_account(customer_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            account = loyalty.get_account(cur, company_id, customer_id)
            if not account:
                raise HTTPException(status_code=404, detail="loyalty account not found")
            tiers = loyalty.fetch_tiers(cur, company_id)
            tier = next((t for t in tiers if t["name"] == account["tier_name"]), None)
            return {"account": account, "tier": tier}


@router.get("/customers/{customer_id}/redeemable", dependencies=[Depends(require_permission("loyalty:read"))])
def get_redeemable(customer_id: str, bill_amount: Decimal, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            settings = loyalty.fetch_settings(cur, company_id)
            account = loyalty.get_account(cur, company_id, customer_id)
            balance = account["current_balance"] if account else 0
            points = loyalty.max_redeemable_points(bill_amount, balance, settings)
            return {"balance": balance, "max_points": points, "max_value": loyalty.redemption_value(points, settings)}


@router.post("/customers/{customer_id}/enroll", dependencies=[Depends(require_permission("loyalty:write"))])
def enroll_customer(customer_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                return {"account": loyalty.get_or_create_account(cur, company_id, customer_id)}


@router.get("/customers/{customer_id}/history", dependencies=[Depends(require_permission("loyalty:read"))])
def get_history(customer_id: str, limit: int = 50, offset: int = 0, company_id: str = Depends(get_company_id)):
    if limit <= 0 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    if offset < 0:
        raise HTTPException(status_code=400, detail="offset must be >= 0")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            return {"transactions": loyalty.history(cur, company_id, customer_id, limit, offset)}


@router.post("/customers/{customer_id}/earn", dependencies=[Depends(require_permission("loyalty:write"))])
def earn(customer_id: str, data: EarnIn, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                return loyalty.earn_points(cur, company_id, customer_id, data.amount, data.reference_type, data.reference_id)


@router.post("/customers/{customer_id}/redeem", dependencies=[Depends(require_permission("loyalty:write"))])
def redeem(customer_id: str, data: RedeemIn, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                if data.bill_amount is not None:
                    settings = loyalty.fetch_settings(cur, company_id)
                    account = loyalty.get_account(cur, company_id, customer_id)
                    allowed = loyalty.max_redeemable_points(data.bill_amount, account["current_balance"] if account else 0, settings)
                    if data.points > allowed:
                        raise HTTPException(status_code=400, detail=f"at most {allowed} points can be redeemed on this bill")
                return loyalty.redeem_points(cur, company_id, customer_id, data.points, data.reference_type, data.reference_id)


@router.post("/customers/{customer_id}/adjust", dependencies=[Depends(require_permission("loyalty:write"))])
def adjust(customer_id: str, data: AdjustIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    if not data.reason.strip():
        raise HTTPException(status_code=400, detail="reason is required")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                res = loyalty.adjust_points(cur, company_id, customer_id, data.points, data.reason.strip(), user["user_id"])
                write_audit(cur, company_id, user["user_id"], "loyalty_adjust", "customers", customer_id, {"points": data.points, "reason": data.reason})
                return res


@router.post("/customers/{customer_id}/bonus", dependencies=[Depends(require_permission("loyalty:write"))])
def bonus(customer_id: str, data: BonusIn, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                return loyalty.award_bonus(cur, company_id, customer_id, data.kind, data.reference_id)


@router.post("/expire", dependencies=[Depends(require_permission("settings:write"))])
def expire_now(company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                expired = loyalty.expire_points(cur, company_id)
                write_audit(cur, company_id, user["user_id"], "loyalty_expire", "loyalty_accounts", None, {"points": expired})
                return {"expired_points": expired}
