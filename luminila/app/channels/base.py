"""
Shared shapes for sales-channel adapters.

Adapters normalise each platform's payloads into the dataclasses below so the
sync engine never sees Shopify GraphQL or WooCommerce REST structures.
"""
from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterator, Optional, Protocol


class ChannelError(RuntimeError):
    def __init__(self, channel: str, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(f"{channel}: {message}")
        self.channel = channel
        self.status = status
        self.body = body


@dataclass
class RemoteVariant:
    external_id: str
    sku: str
    price: Decimal
    stock: Optional[int]
    title: str = "Default"
    parent_external_id: Optional[str] = None
    inventory_item_id: Optional[str] = None
    location_id: Optional[str] = None


@dataclass
class RemoteProduct:
    external_id: str
    title: str
    sku: str
    price: Decimal
    updated_at: Optional[datetime] = None
    description: Optional[str] = None
    category: Optional[str] = None
    image_url: Optional[str] = None
    variants: list[RemoteVariant] = field(default_factory=list)


@dataclass
class RemoteOrderLine:
    sku: str
    quantity: int
    unit_price: Decimal
    title: str = ""
    external_variant_id: Optional[str] = None


@dataclass
class RemoteOrder:
    external_id: str
    name: str
    created_at: Optional[datetime]
    status: str
    payment_status: str
    total: Decimal
    customer_name: str = ""
    customer_phone: str = ""
    customer_email: str = ""
    shipping_address: str = ""
    lines: list[RemoteOrderLine] = field(default_factory=list)


class ChannelAdapter(Protocol):
    channel: str

    @property
    def configured(self) -> bool: ...

    def fetch_products(self) -> Iterator[RemoteProduct]: ...

    def fetch_orders(self, since: Optional[datetime] = None) -> list[RemoteOrder]: ...

    def push_stock(self, listing: dict, quantity: int) -> None: ...


def to_decimal(v) -> Decimal:
    try:
        return Decimal(str(v)) if v not in (None, "") else Decimal("0")
    except InvalidOperation:
        return Decimal("0")


def parse_ts(v) -> Optional[datetime]:
    if not v:
        return None
    if isinstance(v, datetime):
        return v
    s = str(v).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


def http_json(
    channel: str,
    method: str,
    url: str,
    headers: dict[str, str],
    payload: Optional[dict] = None,
    timeout: float = 20.0,
) -> Any:
    data = json.dumps(payload, default=str).encode("utf-8") if payload is not None else None
    req = urllib.request.Request(url, data=data, headers={"Accept": "application/json", **headers}, method=method)
    if data is not None:
        req.add_header("Content-Type", "application/json")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            body = resp.read().decode("utf-8") if resp else ""
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace") if e.fp else ""
        raise ChannelError(channel, f"HTTP {e.code}", status=e.code, body=body[:2000]) from e
    except urllib.error.URLError as e:
        raise ChannelError(channel, f"unreachable: {e.reason}") from e
    if not body:
        return {}
    try:
        return json.loads(body)
    except ValueError as e:
        raise ChannelError(channel, "invalid JSON response", body=body[:2000]) from e
