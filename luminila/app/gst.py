"""
Indian GST helpers for jewelry retail.

Jewelry is taxed at 3% (split 1.5% CGST + 1.5% SGST within a state, 3% IGST
across states). Amounts are Decimals rounded half-up to paise.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

INR_Q = Decimal("0.01")

GST_RATES = {
    "jewelry": Decimal("3.0"),
    "making_charges": Decimal("5.0"),
    "precious_stones": Decimal("0.25"),
    "imitation": Decimal("18.0"),
}
DEFAULT_GST_RATE = GST_RATES["jewelry"]

HSN_CODES = {
    "gold_jewelry_studded": "711311",
    "gold_jewelry_plain": "711319",
    "gold_unstudded": "71131910",
    "gold_with_pearl": "71131920",
    "gold_with_diamond": "71131930",
    "gold_with_stones": "71131940",
    "silver_jewelry": "711311",
    "silver_filigree": "71131110",
    "platinum_jewelry": "711311",
    "imitation_jewelry": "711790",
    "gold_unwrought": "710812",
    "silver_unwrought": "710691",
    "default": "7113",
}
DEFAULT_HSN = HSN_CODES["default"]

STATE_CODES = {
    "Andhra Pradesh": "37",
    "Arunachal Pradesh": "12",
    "Assam": "18",
    "Bihar": "10",
    "Chhattisgarh": "22",
    "Goa": "30",
    "Gujarat": "24",
    "Haryana": "06",
    "Himachal Pradesh": "02",
    "Jharkhand": "20",
    "Karnataka": "29",
    "Kerala": "32",
    "Madhya Pradesh": "23",
    "Maharashtra": "27",
    "Manipur": "14",
    "Meghalaya": "17",
    "Mizoram": "15",
    "Nagaland": "13",
    "Odisha": "21",
    "Punjab": "03",
    "Rajasthan": "08",
    "Sikkim": "11",
    "Tamil Nadu": "33",
    "Telangana": "36",
    "Tripura": "16",
    "Uttar Pradesh": "09",
    "Uttarakhand": "05",
    "West Bengal": "19",
    "Delhi": "07",
    "Jammu and Kashmir": "01",
    "Ladakh": "38",
    "Puducherry": "34",
    "Chandigarh": "04",
    "Dadra and Nagar Haveli and Daman and Diu": "26",
    "Lakshadweep": "31",
    "Andaman and Nicobar Islands": "35",
}
_STATE_BY_CODE = {code: name for name, code in STATE_CODES.items()}

GSTIN_RE = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z]{1}[1-9A-Z]{1}Z[0-9A-Z]{1}$")


def q_inr(v) -> Decimal:
    return Decimal(str(v or 0)).quantize(INR_Q, rounding=ROUND_HALF_UP)


def state_code(state_name: Optional[str]) -> str:
    return STATE_CODES.get((state_name or "").strip(), "")


def state_name(code: Optional[str]) -> str:
    return _STATE_BY_CODE.get((code or "").strip(), "")


def is_known_state_code(code: Optional[str]) -> bool:
    return (code or "").strip() in _STATE_BY_CODE


@dataclass(frozen=True)
class GSTBreakdown:
    taxable_amount: Decimal
    cgst_rate: Decimal
    cgst_amount: Decimal
    sgst_rate: Decimal
    sgst_amount: Decimal
    igst_rate: Decimal
    igst_amount: Decimal
    cess_rate: Decimal
    cess_amount: Decimal
    total_tax: Decimal
    grand_total: Decimal
    is_inter_state: bool

    def as_dict(self) -> dict:
        return {
            "taxable_amount": self.taxable_amount,
            "cgst_rate": self.cgst_rate,
            "cgst_amount": self.cgst_amount,
            "sgst_rate": self.sgst_rate,
            "sgst_amount": self.sgst_amount,
            "igst_rate": self.igst_rate,
            "igst_amount": self.igst_amount,
            "cess_rate": self.cess_rate,
            "cess_amount": self.cess_amount,
            "total_tax": self.total_tax,
            "grand_total": self.grand_total,
            "is_inter_state": self.is_inter_state,
        }


def is_inter_state(seller_state_code: Optional[str], buyer_state_code: Optional[str]) -> bool:
    seller = (seller_state_code or "").strip()
    buyer = (buyer_state_code or "").strip()
    # An unknown buyer state is treated as an intra-state (B2C counter) sale.
    return buyer != "" and seller != buyer


def calculate_gst(
    taxable_amount,
    seller_state_code: Optional[str],
    buyer_state_code: Optional[str],
    gst_rate=DEFAULT_GST_RATE,
    cess_rate=0,
) -> GSTBreakdown:
    taxable = Decimal(str(taxable_amount or 0))
    rate = Decimal(str(gst_rate))
    cess = Decimal(str(cess_rate or 0))
    inter = is_inter_state(seller_state_code, buyer_state_code)

    if inter:
        cgst_rate = sgst_rate = Decimal("0")
        igst_rate = rate
    else:
        cgst_rate = sgst_rate = rate / 2
        igst_rate = Decimal("0")

    cgst = q_inr(taxable * cgst_rate / 100)
    sgst = q_inr(taxable * sgst_rate / 100)
    igst = q_inr(taxable * igst_rate / 100)
    cess_amount = q_inr(taxable * cess / 100)
    total_tax = q_inr(cgst + sgst + igst + cess_amount)
    return GSTBreakdown(
        taxable_amount=q_inr(taxable),
        cgst_rate=cgst_rate,
        cgst_amount=cgst,
        sgst_rate=sgst_rate,
        sgst_amount=sgst,
        igst_rate=igst_rate,
        igst_amount=igst,
        cess_rate=cess,
        cess_amount=cess_amount,
        total_tax=total_tax,
        grand_total=q_inr(taxable + total_tax),
        is_inter_state=inter,
    )


def line_amounts(quantity, unit_price, discount_percent=0, gst_rate=DEFAULT_GST_RATE, discount_amount=None) -> dict:
    """
    Order/invoice line maths: gross = qty * price, discount either as a flat
    amount or a percentage of gross, tax on the discounted (taxable) value.
    """
    qty = Decimal(str(quantity or 0))
    price = Decimal(str(unit_price or 0))
    gross = q_inr(qty * price)
    if discount_amount is not None:
        discount = q_inr(discount_amount)
    else:
        discount = q_inr(gross * Decimal(str(discount_percent or 0)) / 100)
    if discount > gross:
        raise ValueError("discount exceeds line amount")
    taxable = gross - discount
    tax = q_inr(taxable * Decimal(str(gst_rate)) / 100)
    return {
        "gross_amount": gross,
        "discount_amount": discount,
        "taxable_amount": taxable,
        "tax_amount": tax,
        "total": taxable + tax,
    }


_ONES = [
    "", "One", "Two", "Three", "Four", "Five", "Six", "Seven", "Eight", "Nine",
    "Ten", "Eleven", "Twelve", "Thirteen", "Fourteen", "Fifteen", "Sixteen",
    "Seventeen", "Eighteen", "Nineteen",
]
_TENS = ["", "", "Twenty", "Thirty", "Forty", "Fifty", "Sixty", "Seventy", "Eighty", "Ninety"]


def _words(num: int) -> str:
    if num == 0:
        return ""
    if num < 20:
        return _ONES[num]
    if num < 100:
        return _TENS[num // 10] + (" " + _ONES[num % 10] if num % 10 else "")
    if num < 1000:
        return _ONES[num // 100] + " Hundred" + (" " + _words(num % 100) if num % 100 else "")
    if num < 100000:
        return _words(num // 1000) + " Thousand" + (" " + _words(num % 1000) if num % 1000 else "")
    if num < 10000000:
        return _words(num // 100000) + " Lakh" + (" " + _words(num % 100000) if num % 100000 else "")
    return _words(num // 10000000) + " Crore" + (" " + _words(num % 10000000) if num % 10000000 else "")


def amount_to_words(amount, currency: str = "Rupees") -> str:
    value = q_inr(amount)
    if value == 0:
        return f"Zero {currency} Only"
    rupees = int(value)
    paise = int((value - rupees) * 100)
    out = ""
    if rupees > 0:
        out = f"{_words(rupees)} {currency}"
    if paise > 0:
        out += (" and " if rupees > 0 else "") + _words(paise) + " Paise"
    return out + " Only"


def validate_gstin(gstin: Optional[str]) -> Tuple[bool, str]:
    if not gstin:
        return True, ""
    g = gstin.strip().upper()
    if len(g) != 15:
        return False, "GSTIN must be 15 characters"
    if not GSTIN_RE.match(g):
        return False, "Invalid GSTIN format"
    if not is_known_state_code(g[:2]):
        return False, "Invalid state code in GSTIN"
    return True, ""


def hsn_for_product(category: Optional[str] = None, material: Optional[str] = None) -> str:
    if not category and not material:
        return DEFAULT_HSN
    m = (material or "").lower()
    if "gold" in m:
        return HSN_CODES["gold_jewelry_plain"]
    if "silver" in m:
        return HSN_CODES["silver_jewelry"]
    if "imitation" in m or "artificial" in m:
        return HSN_CODES["imitation_jewelry"]
    return DEFAULT_HSN


def gst_rate_for_hsn(hsn: Optional[str]) -> Decimal:
    if (hsn or "").startswith("7117"):
        return GST_RATES["imitation"]
    return GST_RATES["jewelry"]
