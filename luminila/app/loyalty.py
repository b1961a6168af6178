"""
Customer loyalty ledger.

Balances live on `loyalty_accounts`; every change is one row in
`loyalty_transactions` written in the same transaction as the balance update.
Balance updates are single-statement increments (never read-modify-write), and
debits use a guarded `WHERE current_balance >= n` so concurrent redemptions
cannot overdraw an account.
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException

DEFAULT_SETTINGS = {
    "points_per_rupee": Decimal("1"),
    "redemption_value": Decimal("0.25"),
    "min_redemption_points": 100,
    "max_redemption_percent": Decimal("50"),
    "points_validity_days": 365,
    "signup_bonus": 50,
    "birthday_bonus": 100,
    "referral_bonus": 200,
    "is_active": True,
}

DEFAULT_TIERS = [
    {"name": "Bronze", "min_points": 0, "max_points": 999, "multiplier": Decimal("1.00"), "discount_percent": Decimal("0")},
    {"name": "Silver", "min_points": 1000, "max_points": 4999, "multiplier": Decimal("1.25"), "discount_percent": Decimal("2")},
    {"name": "Gold", "min_points": 5000, "max_points": 19999, "multiplier": Decimal("1.50"), "discount_percent": Decimal("5")},
    {"name": "Platinum", "min_points": 20000, "max_points": None, "multiplier": Decimal("2.00"), "discount_percent": Decimal("10")},
]


def points_to_earn(amount, points_per_rupee, multiplier=1) -> int:
    # One base unit per 100 spent, scaled by the tier multiplier; both steps floor.
    base = math.floor(Decimal(str(amount or 0)) / 100 * Decimal(str(points_per_rupee or 0)))
    if base <= 0:
        return 0
    return int(math.floor(base * Decimal(str(multiplier or 1))))


def redemption_value(points: int, settings: dict) -> Decimal:
    return Decimal(int(points or 0)) * Decimal(str(settings["redemption_value"]))


def max_redeemable_points(bill_amount, balance: int, settings: dict) -> int:
    balance = int(balance or 0)
    if balance < int(settings["min_redemption_points"]):
        return 0
    value_cap = Decimal(str(bill_amount or 0)) * Decimal(str(settings["max_redemption_percent"])) / 100
    per_point = Decimal(str(settings["redemption_value"]))
    if per_point <= 0:
        return 0
    return max(0, min(balance, int(math.floor(value_cap / per_point))))


def tier_for_points(tiers: list[dict], points: int) -> Optional[dict]:
    best = None
    for t in sorted(tiers, key=lambda t: int(t["min_points"])):
        max_points = t.get("max_points")
        if int(t["min_points"]) <= points and (not max_points or points <= int(max_points)):
            best = t
    return best


def fetch_settings(cur, company_id: str) -> dict:
    cur.execute(
        """
        SELECT points_per_rupee, redemption_value, min_redemption_points, max_redemption_percent,
               points_validity_days, signup_bonus, birthday_bonus, referral_bonus, is_active
        FROM loyalty_settings
        WHERE company_id=%s
        """,
        (company_id,),
    )
    row = cur.fetchone()
    out = dict(DEFAULT_SETTINGS)
    if row:
        out.update({k: v for k, v in row.items() if v is not None})
    return out


def fetch_tiers(cur, company_id: str) -> list[dict]:
    cur.execute(
        """
        SELECT name, min_points, max_points, multiplier, discount_percent, color, benefits
        FROM loyalty_tiers
        WHERE company_id=%s
        ORDER BY min_points
        """,
        (company_id,),
    )
    rows = cur.fetchall()
    return rows or [dict(t) for t in DEFAULT_TIERS]


def _multiplier_for(tiers: list[dict], tier_name: Optional[str]) -> Decimal:
    for t in tiers:
        if t["name"] == tier_name:
            return Decimal(str(t["multiplier"] or 1))
    return Decimal("1")


def get_account(cur, company_id: str, customer_id: str) -> Optional[dict]:
    cur.execute(
        """
        SELECT a.id, a.customer_id, a.tier_name, a.total_points_earned, a.total_points_redeemed,
               a.current_balance, a.lifetime_value, a.member_since, a.last_activity, a.is_active,
               c.name AS customer_name, c.phone AS customer_phone, c.email AS customer_email
        FROM loyalty_accounts a
        JOIN customers c ON c.id = a.customer_id
        WHERE a.company_id=%s AND a.customer_id=%s
        """,
        (company_id, customer_id),
    )
    return cur.fetchone()


def _record_txn(
    cur,
    company_id: str,
    account_id: str,
    txn_type: str,
    points: int,
    description: Optional[str],
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    created_by: Optional[str] = None,
) -> Optional[str]:
    """
    Insert a ledger row. Returns None when the same (type, reference) was
    already recorded for this account, which callers treat as a replay.
    """
    cur.execute(
        """
        INSERT INTO loyalty_transactions
          (id, company_id, account_id, type, points, description, reference_type, reference_id, created_by_user_id)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (account_id, type, reference_type, reference_id) WHERE reference_id IS NOT NULL DO NOTHING
        RETURNING id
        """,
        (company_id, account_id, txn_type, points, description, reference_type, reference_id, created_by),
    )
    row = cur.fetchone()
    return row["id"] if row else None


def _set_balance_after(cur, txn_id: str, balance: int) -> None:
    cur.execute("UPDATE loyalty_transactions SET balance_after=%s WHERE id=%s", (balance, txn_id))


def _sync_tier(cur, company_id: str, account_id: str, total_earned: int) -> Optional[str]:
    tier = tier_for_points(fetch_tiers(cur, company_id), int(total_earned or 0))
    if not tier:
        return None
    cur.execute(
        """
        UPDATE loyalty_accounts
        SET tier_name=%s, updated_at=now()
        WHERE id=%s AND tier_name IS DISTINCT FROM %s
        """,
        (tier["name"], account_id, tier["name"]),
    )
    return tier["name"]


def get_or_create_account(cur, company_id: str, customer_id: str) -> dict:
    account = get_account(cur, company_id, customer_id)
    if account:
        return account

    settings = fetch_settings(cur, company_id)
    bonus = int(settings["signup_bonus"] or 0) if settings["is_active"] else 0
    tiers = fetch_tiers(cur, company_id)
    first_tier = tier_for_points(tiers, bonus)
    cur.execute(
        """
        INSERT INTO loyalty_accounts
          (id, company_id, customer_id, tier_name, total_points_earned, current_balance, member_since, last_activity)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, now(), now())
        ON CONFLICT (company_id, customer_id) DO NOTHING
        RETURNING id
        """,
        (company_id, customer_id, first_tier["name"] if first_tier else None, bonus, bonus),
    )
    created = cur.fetchone()
    if created and bonus > 0:
        txn_id = _record_txn(cur, company_id, created["id"], "bonus", bonus, "Welcome bonus", "signup", str(customer_id))
        if txn_id:
            _set_balance_after(cur, txn_id, bonus)
    account = get_account(cur, company_id, customer_id)
    if not account:
        raise HTTPException(status_code=404, detail="customer not found")
    return account


def earn_points(cur, company_id: str, customer_id: str, amount, reference_type: str, reference_id: str) -> dict:
    settings = fetch_settings(cur, company_id)
    if not settings["is_active"]:
        return {"points_earned": 0, "new_balance": None, "duplicate": False}
    account = get_or_create_account(cur, company_id, customer_id)
    tiers = fetch_tiers(cur, company_id)
    points = points_to_earn(amount, settings["points_per_rupee"], _multiplier_for(tiers, account["tier_name"]))
    if points <= 0:
        return {"points_earned": 0, "new_balance": account["current_balance"], "duplicate": False}

    txn_id = _record_txn(
        cur, company_id, account["id"], "earn", points, f"Earned from {reference_type}", reference_type, str(reference_id)
    )
    if not txn_id:
        return {"points_earned": 0, "new_balance": account["current_balance"], "duplicate": True}

    cur.execute(
        """
        UPDATE loyalty_accounts
        SET current_balance = current_balance + %s,
            total_points_earned = total_points_earned + %s,
            lifetime_value = lifetime_value + %s,
            last_activity = now(),
            updated_at = now()
        WHERE id=%s
        RETURNING current_balance, total_points_earned
        """,
        (points, points, Decimal(str(amount or 0)), account["id"]),
    )
    row = cur.fetchone()
    _set_balance_after(cur, txn_id, row["current_balance"])
    tier_name = _sync_tier(cur, company_id, account["id"], row["total_points_earned"])
    return {"points_earned": points, "new_balance": row["current_balance"], "tier": tier_name, "duplicate": False}


def redeem_points(cur, company_id: str, customer_id: str, points: int, reference_type: str, reference_id: str) -> dict:
    points = int(points or 0)
    if points <= 0:
        raise HTTPException(status_code=400, detail="points must be > 0")
    settings = fetch_settings(cur, company_id)
    if not settings["is_active"]:
        raise HTTPException(status_code=400, detail="loyalty program is inactive")
    min_points = int(settings["min_redemption_points"] or 0)
    if points < min_points:
        raise HTTPException(status_code=400, detail=f"minimum {min_points} points required for redemption")
    account = get_account(cur, company_id, customer_id)
    if not account:
        raise HTTPException(status_code=404, detail="loyalty account not found")

    txn_id = _record_txn(
        cur, company_id, account["id"], "redeem", -points, f"Redeemed for {reference_type}", reference_type, str(reference_id)
    )
    if not txn_id:
        return {
            "redeemed": False,
            "duplicate": True,
            "points": 0,
            "value_applied": Decimal("0"),
            "new_balance": account["current_balance"],
        }

    cur.execute(
        """
        UPDATE loyalty_accounts
        SET current_balance = current_balance - %s,
            total_points_redeemed = total_points_redeemed + %s,
            last_activity = now(),
            updated_at = now()
        WHERE id=%s AND current_balance >= %s
        RETURNING current_balance
        """,
        (points, points, account["id"], points),
    )
    row = cur.fetchone()
    if not row:
        # Raising rolls back the ledger row inserted above.
        raise HTTPException(status_code=400, detail="insufficient points balance")
    _set_balance_after(cur, txn_id, row["current_balance"])
    return {
        "redeemed": True,
        "duplicate": False,
        "points": points,
        "value_applied": redemption_value(points, settings),
        "new_balance": row["current_balance"],
    }


def refund_points(cur, company_id: str, customer_id: str, points: int, reference_type: str, reference_id: str) -> dict:
    """Give back points redeemed on a document that was undone. Once per reference."""
    points = int(points or 0)
    if points <= 0:
        return {"points": 0, "duplicate": False}
    account = get_account(cur, company_id, customer_id)
    if not account:
        raise HTTPException(status_code=404, detail="loyalty account not found")
    txn_id = _record_txn(
        cur, company_id, account["id"], "adjust", points, f"Refund for {reference_type}", reference_type, str(reference_id)
    )
    if not txn_id:
        return {"points": 0, "duplicate": True, "new_balance": account["current_balance"]}
    cur.execute(
        """
        UPDATE loyalty_accounts
        SET current_balance = current_balance + %s,
            total_points_redeemed = GREATEST(total_points_redeemed - %s, 0),
            last_activity = now(),
            updated_at = now()
        WHERE id=%s
        RETURNING current_balance
        """,
        (points, points, account["id"]),
    )
    row = cur.fetchone()
    _set_balance_after(cur, txn_id, row["current_balance"])
    return {"points": points, "duplicate": False, "new_balance": row["current_balance"]}


def adjust_points(cur, company_id: str, customer_id: str, delta: int, reason: str, user_id: Optional[str] = None) -> dict:
    delta = int(delta or 0)
    if delta == 0:
        raise HTTPException(status_code=400, detail="adjustment must be non-zero")
    account = get_or_create_account(cur, company_id, customer_id)
    cur.execute(
        """
        UPDATE loyalty_accounts
        SET current_balance = current_balance + %s,
            total_points_earned = total_points_earned + GREATEST(%s, 0),
            last_activity = now(),
            updated_at = now()
        WHERE id=%s AND current_balance + %s >= 0
        RETURNING current_balance, total_points_earned
        """,
        (delta, delta, account["id"], delta),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=400, detail="adjustment would result in negative balance")
    txn_id = _record_txn(cur, company_id, account["id"], "adjust", delta, reason, "manual", None, user_id)
    _set_balance_after(cur, txn_id, row["current_balance"])
    _sync_tier(cur, company_id, account["id"], row["total_points_earned"])
    return {"new_balance": row["current_balance"]}


def award_bonus(cur, company_id: str, customer_id: str, kind: str, reference_id: str) -> dict:
    """
    Birthday/referral bonuses from settings, at most once per reference
    (e.g. the birthday year or the referred customer id).
    """
    settings = fetch_settings(cur, company_id)
    points = int(settings.get(f"{kind}_bonus") or 0) if settings["is_active"] else 0
    if points <= 0:
        return {"points": 0, "duplicate": False}
    account = get_or_create_account(cur, company_id, customer_id)
    txn_id = _record_txn(cur, company_id, account["id"], "bonus", points, f"{kind.capitalize()} bonus", kind, str(reference_id))
    if not txn_id:
        return {"points": 0, "duplicate": True}
    cur.execute(
        """
        UPDATE loyalty_accounts
        SET current_balance = current_balance + %s,
            total_points_earned = total_points_earned + %s,
            last_activity = now(),
            updated_at = now()
        WHERE id=%s
        RETURNING current_balance, total_points_earned
        """,
        (points, points, account["id"]),
    )
    row = cur.fetchone()
    _set_balance_after(cur, txn_id, row["current_balance"])
    _sync_tier(cur, company_id, account["id"], row["total_points_earned"])
    return {"points": points, "new_balance": row["current_balance"], "duplicate": False}


def expire_points(cur, company_id: str, as_of: Optional[datetime] = None) -> int:
    """
    Expire credits older than the validity window that have not already been
    consumed by redemptions, debits or earlier expiries. Runs at most once per
    account per day (the cutoff date is the ledger reference).
    """
    settings = fetch_settings(cur, company_id)
    days = int(settings["points_validity_days"] or 0)
    if not settings["is_active"] or days <= 0:
        return 0
    now = as_of or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=days)
    cur.execute(
        """
        SELECT a.id, a.current_balance,
               COALESCE(SUM(t.points) FILTER (WHERE t.type IN ('earn', 'bonus') AND t.created_at < %s), 0) AS aged_credit,
               COALESCE(-SUM(t.points) FILTER (WHERE t.points < 0), 0) AS debits
        FROM loyalty_accounts a
        LEFT JOIN loyalty_transactions t ON t.account_id = a.id
        WHERE a.company_id=%s AND a.is_active = true AND a.current_balance > 0
        GROUP BY a.id, a.current_balance
        """,
        (cutoff, company_id),
    )
    expired = 0
    for r in cur.fetchall():
        expirable = min(int(r["current_balance"]), int(r["aged_credit"]) - int(r["debits"]))
        if expirable <= 0:
            continue
        txn_id = _record_txn(
            cur, company_id, r["id"], "expire", -expirable, "Points expired", "expiry", cutoff.date().isoformat()
        )
        if not txn_id:
            continue
        cur.execute(
            """
            UPDATE loyalty_accounts
            SET current_balance = current_balance - %s, updated_at = now()
            WHERE id=%s AND current_balance >= %s
            RETURNING current_balance
            """,
            (expirable, r["id"], expirable),
        )
        row = cur.fetchone()
        if not row:
            # Balance moved since the scan; drop the ledger row and retry next run.
            cur.execute("DELETE FROM loyalty_transactions WHERE id=%s", (txn_id,))
            continue
        _set_balance_after(cur, txn_id, row["current_balance"])
        expired += expirable
    return expired


def history(cur, company_id: str, customer_id: str, limit: int = 50, offset: int = 0) -> list[dict]:
    cur.execute(
        """
        SELECT t.id, t.type, t.points, t.balance_after, t.description,
               t.reference_type, t.reference_id, t.created_at
        FROM loyalty_transactions t
        JOIN loyalty_accounts a ON a.id = t.account_id
        WHERE a.company_id=%s AND a.customer_id=%s
        ORDER BY t.created_at DESC, t.id DESC
        LIMIT %s OFFSET %s
        """,
        (company_id, customer_id, limit, offset),
    )
    return cur.fetchall()


def stats(cur, company_id: str) -> dict:
    cur.execute(
        """
        SELECT COUNT(*) AS total_members,
               COUNT(*) FILTER (WHERE is_active) AS active_members,
               COALESCE(SUM(total_points_earned), 0) AS total_points_issued,
               COALESCE(SUM(total_points_redeemed), 0) AS total_points_redeemed,
               COALESCE(SUM(current_balance), 0) AS outstanding_points
        FROM loyalty_accounts
        WHERE company_id=%s
        """,
        (company_id,),
    )
    return cur.fetchone()


def top_members(cur, company_id: str, limit: int = 10) -> list[dict]:
    cur.execute(
        """
        SELECT a.customer_id, c.name AS customer_name, c.phone AS customer_phone,
               a.tier_name, a.current_balance, a.total_points_earned, a.lifetime_value
        FROM loyalty_accounts a
        JOIN customers c ON c.id = a.customer_id
        WHERE a.company_id=%s AND a.is_active = true
        ORDER BY a.total_points_earned DESC
        LIMIT %s
        """,
        (company_id, limit),
    )
    return cur.fetchall()
