"""
WooCommerce REST v3 adapter (consumer key/secret over HTTPS basic auth).
"""
from __future__ import annotations

import base64
import urllib.parse
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from ..config import settings
from .base import ChannelError, RemoteOrder, RemoteOrderLine, RemoteProduct, RemoteVariant, http_json, parse_ts, to_decimal

PAGE_SIZE = 100

_STATUS_MAP = {
    "completed": "delivered",
    "processing": "confirmed",
    "on-hold": "pending",
    "cancelled": "cancelled",
    "refunded": "cancelled",
}


def map_order_status(status: Optional[str]) -> str:
    return _STATUS_MAP.get((status or "").strip().lower(), "pending")


def _gmt(v) -> Optional[datetime]:
    # *_gmt fields carry no offset.
    ts = parse_ts(v)
    if ts is not None and ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def parse_variation(parent_id: str, v: dict) -> RemoteVariant:
    attrs = [a.get("option") for a in v.get("attributes") or [] if a.get("option")]
    return RemoteVariant(
        external_id=str(v["id"]),
        sku=(v.get("sku") or "").strip(),
        price=to_decimal(v.get("price") or v.get("regular_price")),
        stock=v.get("stock_quantity"),
        title=" / ".join(attrs) or "Default",
        parent_external_id=parent_id,
    )


def parse_product(p: dict, variations: Optional[list] = None) -> RemoteProduct:
    pid = str(p["id"])
    if variations:
        variants = [parse_variation(pid, v) for v in variations]
    else:
        # A simple product is its own single variant.
        variants = [
            RemoteVariant(
                external_id=pid,
                sku=(p.get("sku") or "").strip(),
                price=to_decimal(p.get("price") or p.get("regular_price")),
                stock=p.get("stock_quantity"),
            )
        ]
    categories = p.get("categories") or []
    images = p.get("images") or []
    return RemoteProduct(
        external_id=pid,
        title=p.get("name") or "",
        sku=(p.get("sku") or "").strip() or f"WC-{pid}",
        price=to_decimal(p.get("price") or p.get("regular_price")),
        updated_at=_gmt(p.get("date_modified_gmt")),
        description=p.get("description") or None,
        category=categories[0].get("name") if categories else None,
        image_url=images[0].get("src") if images else None,
        variants=variants,
    )


def parse_order(o: dict) -> RemoteOrder:
    billing = o.get("billing") or {}
    shipping = o.get("shipping") or {}
    lines = []
    for li in o.get("line_items") or []:
        ext_variant = li.get("variation_id") or li.get("product_id")
        lines.append(
            RemoteOrderLine(
                sku=(li.get("sku") or "").strip(),
                quantity=int(li.get("quantity") or 0),
                unit_price=to_decimal(li.get("price")),
                title=li.get("name") or "",
                external_variant_id=str(ext_variant) if ext_variant else None,
            )
        )
    name = " ".join(p for p in (billing.get("first_name"), billing.get("last_name")) if p)
    addr = shipping if shipping.get("address_1") else billing
    status = map_order_status(o.get("status"))
    if (o.get("status") or "") == "refunded":
        payment_status = "refunded"
    elif o.get("date_paid_gmt") or o.get("date_paid"):
        payment_status = "paid"
    else:
        payment_status = "unpaid"
    return RemoteOrder(
        external_id=str(o["id"]),
        name=f"#{o.get('number') or o['id']}",
        created_at=_gmt(o.get("date_created_gmt")),
        status=status,
        payment_status=payment_status,
        total=to_decimal(o.get("total")),
        customer_name=name,
        customer_phone=billing.get("phone") or "",
        customer_email=billing.get("email") or "",
        shipping_address=", ".join(p for p in (addr.get("address_1"), addr.get("city"), addr.get("state"), addr.get("postcode")) if p),
        lines=lines,
    )


class WooCommerceAdapter:
    channel = "woocommerce"

    def __init__(self, base_url: Optional[str] = None, consumer_key: Optional[str] = None, consumer_secret: Optional[str] = None):
        self.base_url = (base_url if base_url is not None else settings.woocommerce_url).rstrip("/")
        self.consumer_key = consumer_key if consumer_key is not None else settings.woocommerce_consumer_key
        self.consumer_secret = consumer_secret if consumer_secret is not None else settings.woocommerce_consumer_secret

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.consumer_key and self.consumer_secret)

    def _request(self, method: str, path: str, params: Optional[dict] = None, payload: Optional[dict] = None) -> Any:
        if not self.configured:
            raise ChannelError(self.channel, "credentials not configured")
        url = f"{self.base_url}/wp-json/wc/v3{path}"
        if params:
            url += "?" + urllib.parse.urlencode(params)
        token = base64.b64encode(f"{self.consumer_key}:{self.consumer_secret}".encode("utf-8")).decode("ascii")
        return http_json(self.channel, method, url, {"Authorization": f"Basic {token}"}, payload, timeout=settings.http_timeout_s)

    def _paged(self, path: str, params: Optional[dict] = None) -> Iterator[dict]:
        page = 1
        while True:
            rows = self._request("GET", path, {**(params or {}), "per_page": PAGE_SIZE, "page": page})
            if not isinstance(rows, list):
                raise ChannelError(self.channel, f"unexpected response for {path}")
            yield from rows
            if len(rows) < PAGE_SIZE:
                return
            page += 1

    def fetch_products(self) -> Iterator[RemoteProduct]:
        for p in self._paged("/products"):
            variations = None
            if p.get("type") == "variable":
                variations = list(self._paged(f"/products/{p['id']}/variations"))
            yield parse_product(p, variations)

    def fetch_orders(self, since: Optional[datetime] = None) -> list[RemoteOrder]:
        params = {"orderby": "date", "order": "asc"}
        if since:
            params["after"] = since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
            params["dates_are_gmt"] = "true"
        return [parse_order(o) for o in self._paged("/orders", params)]

    def push_stock(self, listing: dict, quantity: int) -> None:
        payload = {"manage_stock": True, "stock_quantity": int(quantity)}
        parent = listing.get("external_parent_id")
        ext_id = listing["external_id"]
        if parent and parent != ext_id:
            self._request("PUT", f"/products/{parent}/variations/{ext_id}", payload=payload)
        else:
            self._request("PUT", f"/products/{ext_id}", payload=payload)
