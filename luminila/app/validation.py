from __future__ import annotations

import re
from typing import Annotated, Literal, Optional

from pydantic import AfterValidator, BeforeValidator

from .gst import is_known_state_code, validate_gstin


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _blank_to_none(v):
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _digits_only(v):
    if v is None:
        return None
    digits = re.sub(r"\D", "", str(v))
    return digits or None


def _check_gstin(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    ok, message = validate_gstin(v)
    if not ok:
        raise ValueError(message)
    return v


def _check_state_code(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not is_known_state_code(v):
        raise ValueError("unknown state code")
    return v


def _check_phone(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not 10 <= len(v) <= 15:
        raise ValueError("phone must have 10-15 digits")
    return v


def _state_code_in(v):
    v = _blank_to_none(v)
    if v is None:
        return v
    # Accept "7" as well as "07".
    return v.zfill(2) if v.isdigit() else v


GSTIN = Annotated[
    Optional[str],
    BeforeValidator(lambda v: _to_upper_str(_blank_to_none(v))),
    AfterValidator(_check_gstin),
]
StateCode = Annotated[Optional[str], BeforeValidator(_state_code_in), AfterValidator(_check_state_code)]
PhoneNumber = Annotated[Optional[str], BeforeValidator(_digits_only), AfterValidator(_check_phone)]

# Canonical codes mirror the CHECK constraints in `luminila/db/migrations/001_init.sql`.
OrderType = Annotated[Literal["estimate", "sales_order"], BeforeValidator(_to_lower_str)]
OrderStatus = Annotated[
    Literal["draft", "sent", "confirmed", "shipped", "delivered", "cancelled", "invoiced"],
    BeforeValidator(_to_lower_str),
]
SaleStatus = Annotated[
    Literal["pending", "confirmed", "shipped", "delivered", "cancelled", "completed"],
    BeforeValidator(_to_lower_str),
]
SaleChannel = Annotated[Literal["pos", "shopify", "woocommerce", "whatsapp"], BeforeValidator(_to_lower_str)]
POStatus = Annotated[Literal["draft", "sent", "partial", "received", "cancelled"], BeforeValidator(_to_lower_str)]
ExpensePaymentMode = Annotated[
    Literal["cash", "card", "upi", "bank_transfer", "cheque", "other"],
    BeforeValidator(_to_lower_str),
]
CustomerType = Annotated[Literal["retail", "wholesale", "vip"], BeforeValidator(_to_lower_str)]
PreferredContact = Annotated[Literal["phone", "email", "whatsapp"], BeforeValidator(_to_lower_str)]
LoyaltyTxnType = Annotated[Literal["earn", "redeem", "adjust", "expire", "bonus"], BeforeValidator(_to_lower_str)]
StockMode = Annotated[Literal["set", "increment", "decrement"], BeforeValidator(_to_lower_str)]
MovementType = Annotated[Literal["sale", "purchase", "adjustment", "return", "sync"], BeforeValidator(_to_lower_str)]
