"""
Shopify Admin GraphQL adapter.

Needs a custom app token with read/write products and inventory scopes.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterator, Optional

from ..config import settings
from .base import ChannelError, RemoteOrder, RemoteOrderLine, RemoteProduct, RemoteVariant, http_json, parse_ts, to_decimal

PRODUCTS_PAGE_SIZE = 50
ORDERS_PAGE_SIZE = 50

PRODUCTS_QUERY = """
query GetProducts($cursor: String) {
  products(first: 50, after: $cursor) {
    pageInfo { hasNextPage endCursor }
    edges {
      node {
        id
        title
        handle
        descriptionHtml
        productType
        updatedAt
        featuredImage { url }
        variants(first: 50) {
          edges {
            node {
              id
              sku
              title
              price
              inventoryQuantity
              inventoryItem {
                id
                inventoryLevels(first: 1) { edges { node { location { id } } } }
              }
            }
          }
        }
      }
    }
  }
}
"""

ORDERS_QUERY = """
query GetOrders($cursor: String, $query: String) {
  orders(first: 50, after: $cursor, query: $query, sortKey: CREATED_AT) {
    pageInfo { hasNextPage endCursor }
    edges {
      node {
        id
        name
        createdAt
        cancelledAt
        displayFulfillmentStatus
        displayFinancialStatus
        email
        phone
        customer { displayName phone email }
        shippingAddress { address1 city province zip }
        totalPriceSet { shopMoney { amount currencyCode } }
        lineItems(first: 50) {
          edges {
            node {
              title
              sku
              quantity
              originalUnitPriceSet { shopMoney { amount } }
              variant { id sku }
            }
          }
        }
      }
    }
  }
}
"""

FIND_VARIANT_QUERY = """
query FindVariant($query: String!) {
  productVariants(first: 1, query: $query) {
    edges {
      node {
        id
        sku
        inventoryItem {
          id
          inventoryLevels(first: 1) { edges { node { location { id } } } }
        }
      }
    }
  }
}
"""

SET_QUANTITIES_MUTATION = """
mutation SetQuantities($input: InventorySetQuantitiesInput!) {
  inventorySetQuantities(input: $input) {
    inventoryAdjustmentGroup { createdAt reason }
    userErrors { field message }
  }
}
"""


def map_order_status(fulfillment: Optional[str], cancelled_at: Optional[str] = None) -> str:
    if cancelled_at:
        return "cancelled"
    s = (fulfillment or "").strip().lower()
    if s == "fulfilled":
        return "shipped"
    if s in {"partial", "partially_fulfilled"}:
        return "confirmed"
    return "pending"


def map_payment_status(financial: Optional[str]) -> str:
    s = (financial or "").strip().lower()
    if s in {"paid", "partially_refunded"}:
        return "paid"
    if s == "refunded":
        return "refunded"
    return "unpaid"


def _first_location(inventory_item: Optional[dict]) -> Optional[str]:
    edges = (((inventory_item or {}).get("inventoryLevels") or {}).get("edges")) or []
    if not edges:
        return None
    return ((edges[0].get("node") or {}).get("location") or {}).get("id")


def parse_product(node: dict) -> RemoteProduct:
    variants = []
    for edge in (node.get("variants") or {}).get("edges") or []:
        v = edge["node"]
        item = v.get("inventoryItem") or {}
        variants.append(
            RemoteVariant(
                external_id=v["id"],
                sku=(v.get("sku") or "").strip(),
                price=to_decimal(v.get("price")),
                stock=v.get("inventoryQuantity"),
                title=v.get("title") or "Default",
                parent_external_id=node["id"],
                inventory_item_id=item.get("id"),
                location_id=_first_location(item),
            )
        )
    return RemoteProduct(
        external_id=node["id"],
        title=node.get("title") or node.get("handle") or "",
        sku=(node.get("handle") or "").upper(),
        price=variants[0].price if variants else to_decimal(None),
        updated_at=parse_ts(node.get("updatedAt")),
        description=node.get("descriptionHtml"),
        category=node.get("productType") or None,
        image_url=(node.get("featuredImage") or {}).get("url"),
        variants=variants,
    )


def parse_order(node: dict) -> RemoteOrder:
    customer = node.get("customer") or {}
    addr = node.get("shippingAddress") or {}
    lines = []
    for edge in (node.get("lineItems") or {}).get("edges") or []:
        li = edge["node"]
        variant = li.get("variant") or {}
        lines.append(
            RemoteOrderLine(
                sku=(li.get("sku") or variant.get("sku") or "").strip(),
                quantity=int(li.get("quantity") or 0),
                unit_price=to_decimal(((li.get("originalUnitPriceSet") or {}).get("shopMoney") or {}).get("amount")),
                title=li.get("title") or "",
                external_variant_id=variant.get("id"),
            )
        )
    return RemoteOrder(
        external_id=node["id"],
        name=node.get("name") or node["id"],
        created_at=parse_ts(node.get("createdAt")),
        status=map_order_status(node.get("displayFulfillmentStatus"), node.get("cancelledAt")),
        payment_status=map_payment_status(node.get("displayFinancialStatus")),
        total=to_decimal(((node.get("totalPriceSet") or {}).get("shopMoney") or {}).get("amount")),
        customer_name=customer.get("displayName") or "",
        customer_phone=customer.get("phone") or node.get("phone") or "",
        customer_email=customer.get("email") or node.get("email") or "",
        shipping_address=", ".join(p for p in (addr.get("address1"), addr.get("city"), addr.get("province"), addr.get("zip")) if p),
        lines=lines,
    )


class ShopifyAdapter:
    channel = "shopify"

    def __init__(self, store_domain: Optional[str] = None, access_token: Optional[str] = None, api_version: Optional[str] = None):
        self.store_domain = store_domain if store_domain is not None else settings.shopify_store_domain
        self.access_token = access_token if access_token is not None else settings.shopify_access_token
        self.api_version = api_version or settings.shopify_api_version

    @property
    def configured(self) -> bool:
        return bool(self.store_domain and self.access_token)

    def graphql(self, query: str, variables: Optional[dict] = None) -> dict[str, Any]:
        if not self.configured:
            raise ChannelError(self.channel, "credentials not configured")
        url = f"https://{self.store_domain}/admin/api/{self.api_version}/graphql.json"
        res = http_json(
            self.channel,
            "POST",
            url,
            {"X-Shopify-Access-Token": self.access_token},
            {"query": query, "variables": variables or {}},
            timeout=settings.http_timeout_s,
        )
        errors = res.get("errors")
        if errors:
            msg = errors[0].get("message") if isinstance(errors, list) and errors else str(errors)
            raise ChannelError(self.channel, f"GraphQL error: {msg}")
        return res.get("data") or {}

    def fetch_products(self) -> Iterator[RemoteProduct]:
        cursor = None
        while True:
            data = self.graphql(PRODUCTS_QUERY, {"cursor": cursor})
            page = data.get("products") or {}
            for edge in page.get("edges") or []:
                yield parse_product(edge["node"])
            info = page.get("pageInfo") or {}
            if not info.get("hasNextPage") or not info.get("endCursor"):
                return
            cursor = info["endCursor"]

    def fetch_orders(self, since: Optional[datetime] = None) -> list[RemoteOrder]:
        query = f"created_at:>={since.isoformat()}" if since else None
        out = []
        cursor = None
        while True:
            data = self.graphql(ORDERS_QUERY, {"cursor": cursor, "query": query})
            page = data.get("orders") or {}
            out.extend(parse_order(edge["node"]) for edge in page.get("edges") or [])
            info = page.get("pageInfo") or {}
            if not info.get("hasNextPage") or not info.get("endCursor"):
                return out
            cursor = info["endCursor"]

    def find_variant_by_sku(self, sku: str) -> Optional[RemoteVariant]:
        data = self.graphql(FIND_VARIANT_QUERY, {"query": f"sku:{sku}"})
        edges = (data.get("productVariants") or {}).get("edges") or []
        if not edges:
            return None
        node = edges[0]["node"]
        item = node.get("inventoryItem") or {}
        return RemoteVariant(
            external_id=node["id"],
            sku=node.get("sku") or sku,
            price=to_decimal(None),
            stock=None,
            inventory_item_id=item.get("id"),
            location_id=_first_location(item),
        )

    def push_stock(self, listing: dict, quantity: int) -> None:
        item_id = listing.get("external_inventory_id")
        location_id = listing.get("external_location_id")
        if not item_id or not location_id:
            raise ChannelError(self.channel, f"listing {listing.get('external_id')} has no inventory location")
        data = self.graphql(
            SET_QUANTITIES_MUTATION,
            {
                "input": {
                    "name": "available",
                    "reason": "correction",
                    "ignoreCompareQuantity": True,
                    "quantities": [{"inventoryItemId": item_id, "locationId": location_id, "quantity": int(quantity)}],
                }
            },
        )
        user_errors = (data.get("inventorySetQuantities") or {}).get("userErrors") or []
        if user_errors:
            raise ChannelError(self.channel, f"inventory update rejected: {user_errors[0].get('message')}")
