from datetime import datetime, timezone
from decimal import Decimal

import pytest

from luminila.app.channels import shopify
from luminila.app.channels.base import ChannelError
from luminila.app.channels.shopify import ShopifyAdapter, map_order_status, map_payment_status, parse_order, parse_product


def _product_node(pid="gid://shopify/Product/1", updated="2026-10-01T10:00:00Z"):
    return {
        "id": pid,
        "title": "Pearl Drop Earrings",
        "handle": "lum-ear-001",
        "descriptionHtml": "<p>Freshwater pearls</p>",
        "productType": "Earrings",
        "updatedAt": updated,
        "featuredImage": {"url": "https://cdn.example.com/ear-001.jpg"},
        "variants": {
            "edges": [
                {
                    "node": {
                        "id": "gid://shopify/ProductVariant/11",
                        "sku": "LUM-EAR-001-GLD ",
                        "title": "Gold",
                        "price": "1299.00",
                        "inventoryQuantity": 8,
                        "inventoryItem": {
                            "id": "gid://shopify/InventoryItem/111",
                            "inventoryLevels": {"edges": [{"node": {"location": {"id": "gid://shopify/Location/1"}}}]},
                        },
                    }
                }
            ]
        },
    }


def test_parse_product():
    rp = parse_product(_product_node())
    assert rp.sku == "LUM-EAR-001"
    assert rp.price == Decimal("1299.00")
    assert rp.updated_at == datetime(2026, 10, 1, 10, 0, tzinfo=timezone.utc)
    assert rp.category == "Earrings"
    v = rp.variants[0]
    assert v.sku == "LUM-EAR-001-GLD"
    assert v.stock == 8
    assert v.parent_external_id == "gid://shopify/Product/1"
    assert v.inventory_item_id == "gid://shopify/InventoryItem/111"
    assert v.location_id == "gid://shopify/Location/1"


def test_parse_order():
    node = {
        "id": "gid://shopify/Order/9",
        "name": "#1009",
        "createdAt": "2026-10-02T08:15:00Z",
        "displayFulfillmentStatus": "FULFILLED",
        "displayFinancialStatus": "PAID",
        "cancelledAt": None,
        "totalPriceSet": {"shopMoney": {"amount": "2648.00"}},
        "customer": {"displayName": "Ananya Rao", "phone": "+919876543210", "email": "ananya@example.com"},
        "shippingAddress": {"address1": "12 MG Road", "city": "Bengaluru", "province": "Karnataka", "zip": "560001"},
        "lineItems": {
            "edges": [
                {
                    "node": {
                        "title": "Pearl Drop Earrings",
                        "quantity": 2,
                        "sku": "LUM-EAR-001-GLD",
                        "originalUnitPriceSet": {"shopMoney": {"amount": "1299.00"}},
                        "variant": {"id": "gid://shopify/ProductVariant/11"},
                    }
                }
            ]
        },
    }
    ro = parse_order(node)
    assert ro.name == "#1009"
    assert ro.status == "shipped"
    assert ro.payment_status == "paid"
    assert ro.total == Decimal("2648.00")
    assert ro.customer_phone == "+919876543210"
    assert ro.shipping_address == "12 MG Road, Bengaluru, Karnataka, 560001"
    assert ro.lines[0].quantity == 2
    assert ro.lines[0].external_variant_id == "gid://shopify/ProductVariant/11"


def test_status_mapping():
    assert map_order_status("UNFULFILLED") == "pending"
    assert map_order_status("PARTIALLY_FULFILLED") == "confirmed"
    assert map_order_status("FULFILLED", "2026-10-03T00:00:00Z") == "cancelled"
    assert map_payment_status("PENDING") == "unpaid"
    assert map_payment_status("REFUNDED") == "refunded"


def test_fetch_products_follows_cursor(monkeypatch):
    pages = [
        {"data": {"products": {"edges": [{"node": _product_node("p1")}], "pageInfo": {"hasNextPage": True, "endCursor": "c1"}}}},
        {"data": {"products": {"edges": [{"node": _product_node("p2")}], "pageInfo": {"hasNextPage": False, "endCursor": None}}}},
    ]
    seen = []

    def fake_http_json(channel, method, url, headers, payload=None, timeout=20.0):
        seen.append((url, headers, payload["variables"]))
        return pages.pop(0)

    monkeypatch.setattr(shopify, "http_json", fake_http_json)
    adapter = ShopifyAdapter(store_domain="luminila.myshopify.com", access_token="shpat_x", api_version="2024-01")
    out = list(adapter.fetch_products())
    assert [p.external_id for p in out] == ["p1", "p2"]
    assert seen[0][0] == "https://luminila.myshopify.com/admin/api/2024-01/graphql.json"
    assert seen[0][1]["X-Shopify-Access-Token"] == "shpat_x"
    assert seen[0][2] == {"cursor": None}
    assert seen[1][2] == {"cursor": "c1"}


def test_graphql_errors_raise(monkeypatch):
    monkeypatch.setattr(shopify, "http_json", lambda *a, **k: {"errors": [{"message": "Throttled"}]})
    adapter = ShopifyAdapter(store_domain="x.myshopify.com", access_token="t")
    with pytest.raises(ChannelError) as exc_info:
        adapter.graphql("{ shop { name } }")
    assert "Throttled" in str(exc_info.value)


def test_unconfigured_adapter_raises():
    adapter = ShopifyAdapter(store_domain="", access_token="")
    assert not adapter.configured
    with pytest.raises(ChannelError):
        adapter.graphql("{ shop { name } }")


def test_push_stock_sets_available_quantity(monkeypatch):
    sent = []

    def fake_http_json(channel, method, url, headers, payload=None, timeout=20.0):
        sent.append(payload)
        return {"data": {"inventorySetQuantities": {"userErrors": []}}}

    monkeypatch.setattr(shopify, "http_json", fake_http_json)
    adapter = ShopifyAdapter(store_domain="x.myshopify.com", access_token="t")
    adapter.push_stock({"external_id": "v", "external_inventory_id": "item-1", "external_location_id": "loc-1"}, 4)
    q = sent[0]["variables"]["input"]["quantities"][0]
    assert q == {"inventoryItemId": "item-1", "locationId": "loc-1", "quantity": 4}


def test_push_stock_needs_inventory_location():
    adapter = ShopifyAdapter(store_domain="x.myshopify.com", access_token="t")
    with pytest.raises(ChannelError):
        adapter.push_stock({"external_id": "v", "external_inventory_id": None, "external_location_id": None}, 1)


def test_push_stock_user_errors_raise(monkeypatch):
    monkeypatch.setattr(
        shopify,
        "http_json",
        lambda *a, **k: {"data": {"inventorySetQuantities": {"userErrors": [{"message": "Location not active"}]}}},
    )
    adapter = ShopifyAdapter(store_domain="x.myshopify.com", access_token="t")
    with pytest.raises(ChannelError) as exc_info:
        adapter.push_stock({"external_id": "v", "external_inventory_id": "i", "external_location_id": "l"}, 1)
    assert "Location not active" in str(exc_info.value)
