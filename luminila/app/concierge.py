"""
WhatsApp sales concierge: intent parsing, canned replies, admin commands and
per-chat carts that check out into `whatsapp` sales.
"""
import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from fastapi import HTTPException

from .loyalty import get_or_create_account
from .routers.customers import CustomerIn, find_customer_by_phone, insert_customer
from .routers.sales import create_sale, mark_sale_paid, set_sale_status

ORDER_KEYWORDS = ("order", "buy", "purchase", "want", "need", "book", "interested")
PRODUCT_KEYWORDS = ("earring", "necklace", "bracelet", "ring", "anklet", "chain", "pendant")
SKU_RE = re.compile(r"LUM-[A-Z]{3}-\d{3}(?:-[A-Z0-9]+)?", re.IGNORECASE)
GREETING_RE = re.compile(r"^(hi|hello|hey|good morning|good evening)")

ADMIN_HELP = "🤖 *Admin Commands:*\n!paid <id>\n!ship <id>\n!cancel <id>\n!status <id>"


def format_inr(amount) -> str:
    """₹ with Indian digit grouping and no paise: 123456.7 -> ₹1,23,457."""
    n = int(Decimal(str(amount or 0)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    digits = str(abs(n))
    if len(digits) > 3:
        head, tail = digits[:-3], digits[-3:]
        groups = []
        while len(head) > 2:
            groups.insert(0, head[-2:])
            head = head[:-2]
        if head:
            groups.insert(0, head)
        digits = ",".join(groups + [tail])
    return f"{'-' if n < 0 else ''}₹{digits}"


def chat_phone(chat_id: str) -> str:
    """"919876543210@c.us" -> "919876543210"."""
    return re.sub(r"\D", "", (chat_id or "").split("@")[0])


def parse_order_intent(text: str) -> dict:
    lower = (text or "").lower()
    has_intent = any(kw in lower for kw in ORDER_KEYWORDS)
    skus = [m.group(0).upper() for m in SKU_RE.finditer(text or "")]
    mentioned = [pk for pk in PRODUCT_KEYWORDS if pk in lower]
    items = skus + mentioned
    return {
        "is_order": has_intent and bool(items),
        "items": items,
        "skus": skus,
        "intent": "purchase" if has_intent else "inquiry",
    }


def auto_reply(text: str, products: list, brand: str, catalog_url: str) -> Optional[str]:
    lower = (text or "").lower().strip()

    if "price" in lower or "cost" in lower or "rate" in lower:
        lines = "\n".join(f"• {p['name']}: {format_inr(p['price'])}" for p in products[:5])
        return f"Here are our popular items:\n\n{lines}\n\nReply with the product name to order!"

    if "available" in lower or "stock" in lower or "have" in lower:
        return "Yes, we have these items in stock! Would you like to place an order? Reply with the product name."

    if GREETING_RE.match(lower):
        return f"Hello! 👋 Welcome to {brand}. How can I help you today?\n\nReply with 'catalog' to see our collection."

    if "catalog" in lower or "collection" in lower or "products" in lower:
        return f"Check out our collection at {catalog_url} 🛍️\n\nOr reply with what you're looking for!"

    return None


def order_confirmation_message(order_id: str, items: list, total, brand: str) -> str:
    lines = "\n".join(f"• {it['name']} x{it['quantity']} - {format_inr(it['price'])}" for it in items)
    return (
        "🛍️ *Order Confirmation*\n\n"
        f"Order ID: *{order_id}*\n\n"
        f"*Items:*\n{lines}\n\n"
        f"*Total: {format_inr(total)}*\n\n"
        "Thank you for your order! We'll update you when it ships.\n\n"
        f"_{brand} - Fashion Jewelry_"
    )


def shipping_update_message(order_id: str, brand: str, tracking_id: Optional[str] = None, estimated_delivery: Optional[str] = None) -> str:
    parts = ["📦 *Shipping Update*", "", f"Your order *{order_id}* has been shipped!", ""]
    if tracking_id:
        parts.append(f"Tracking ID: {tracking_id}")
    if estimated_delivery:
        parts.append(f"Expected Delivery: {estimated_delivery}")
    parts += ["", f"_{brand} - Fashion Jewelry_"]
    return "\n".join(parts)


def cart_summary_message(cart: dict, brand: str) -> str:
    if not cart["items"]:
        return "Your cart is empty. Reply with a product name to add something!"
    lines = "\n".join(
        f"• {it['product_name']} ({it['variant_name']}) x{it['quantity']} - {format_inr(it['line_total'])}" for it in cart["items"]
    )
    return f"🛒 *Your {brand} Cart*\n\n{lines}\n\n*Total: {format_inr(cart['total'])}*\n\nReply *confirm* to place the order."


# ---------------------------------------------------------------------------
# Admin commands
# ---------------------------------------------------------------------------


def _same_phone(phone: str, admin: str) -> bool:
    if phone == admin:
        return True
    # A 10-digit local number also matches with its country code in front.
    return len(admin) == 10 and phone.endswith(admin) and 0 < len(phone) - len(admin) <= 3


def is_admin(sender: str, admin_phones: list) -> bool:
    phone = chat_phone(sender)
    return bool(phone) and any(_same_phone(phone, chat_phone(p)) for p in admin_phones if p)


def _like_prefix(text: str) -> str:
    return re.sub(r"([\\%_])", r"\\\1", text) + "%"


def _find_sale_by_prefix(cur, company_id: str, prefix: str) -> Optional[dict]:
    cur.execute(
        """
        SELECT id, status, payment_status, total
        FROM sales
        WHERE company_id = %s AND id::text ILIKE %s
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (company_id, _like_prefix(prefix)),
    )
    return cur.fetchone()


def process_admin_command(cur, company_id: str, body: str, sender: str, admin_phones: list) -> Optional[str]:
    """
    Run a `!command <sale id prefix>` from an admin chat. Returns the reply,
    or None when the text is not a command (or the sender is not an admin).
    """
    if not (body or "").startswith("!") or not is_admin(sender, admin_phones):
        return None
    parts = body[1:].strip().split()
    command = parts[0].lower() if parts else ""
    if command == "help":
        return ADMIN_HELP
    if command not in {"paid", "ship", "shipped", "cancel", "status"}:
        return None
    if len(parts) < 2:
        return "⚠️ Please provide an Order ID (e.g., !paid a1b2)"

    snippet = parts[1]
    sale = _find_sale_by_prefix(cur, company_id, snippet)
    if not sale:
        return f'❌ Order matching "{snippet}" not found.'
    short_id = str(sale["id"])[:8]

    try:
        if command == "paid":
            mark_sale_paid(cur, company_id, str(sale["id"]))
            return f"✅ Order #{short_id} marked as *PAID*."
        if command in {"ship", "shipped"}:
            set_sale_status(cur, company_id, str(sale["id"]), "shipped")
            return f"🚚 Order #{short_id} marked as *SHIPPED*."
        if command == "cancel":
            set_sale_status(cur, company_id, str(sale["id"]), "cancelled")
            return f"🚫 Order #{short_id} has been *CANCELLED*."
    except HTTPException as e:
        return f"⚠️ Error executing command: {e.detail}"
    return f"ℹ️ Order #{short_id}\nStatus: {sale['status']}\nPayment: {sale['payment_status']}\nTotal: {format_inr(sale['total'])}"


# ---------------------------------------------------------------------------
# Carts
# ---------------------------------------------------------------------------


def _first_active_variant(cur, company_id: str, product_ref: str) -> dict:
    cur.execute(
        """
        SELECT v.id, v.product_id
        FROM product_variants v
        JOIN products p ON p.id = v.product_id
        WHERE v.company_id = %s AND v.is_active = true AND p.is_active = true
          AND (p.id::text = %s OR upper(p.sku) = upper(%s) OR upper(p.sku || '-' || v.sku_suffix) = upper(%s))
        ORDER BY (upper(p.sku || '-' || v.sku_suffix) = upper(%s)) DESC, v.created_at
        LIMIT 1
        """,
        (company_id, product_ref, product_ref, product_ref, product_ref),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="product not found or inactive")
    return row


def cart_add(cur, company_id: str, chat_id: str, product_ref: str, quantity: int = 1) -> dict:
    if quantity <= 0:
        raise HTTPException(status_code=400, detail="quantity must be > 0")
    variant = _first_active_variant(cur, company_id, product_ref)
    cur.execute(
        """
        INSERT INTO whatsapp_cart_items (company_id, chat_id, variant_id, quantity)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (company_id, chat_id, variant_id) DO UPDATE
        SET quantity = whatsapp_cart_items.quantity + EXCLUDED.quantity
        """,
        (company_id, chat_id, variant["id"], quantity),
    )
    return get_cart(cur, company_id, chat_id)


def cart_set_quantity(cur, company_id: str, chat_id: str, variant_id: str, quantity: int) -> dict:
    if quantity < 0:
        raise HTTPException(status_code=400, detail="quantity must be >= 0")
    if quantity == 0:
        return cart_remove(cur, company_id, chat_id, variant_id)
    cur.execute(
        "UPDATE whatsapp_cart_items SET quantity = %s WHERE company_id = %s AND chat_id = %s AND variant_id = %s",
        (quantity, company_id, chat_id, variant_id),
    )
    if cur.rowcount == 0:
        raise HTTPException(status_code=404, detail="item not in cart")
    return get_cart(cur, company_id, chat_id)


def cart_remove(cur, company_id: str, chat_id: str, variant_id: str) -> dict:
    cur.execute(
        "DELETE FROM whatsapp_cart_items WHERE company_id = %s AND chat_id = %s AND variant_id = %s",
        (company_id, chat_id, variant_id),
    )
    return get_cart(cur, company_id, chat_id)


def get_cart(cur, company_id: str, chat_id: str) -> dict:
    cur.execute(
        """
        SELECT c.variant_id, c.quantity, p.id AS product_id, p.name AS product_name, p.sku || '-' || v.sku_suffix AS sku,
               v.variant_name, p.base_price + v.price_adjustment AS unit_price, v.stock_level
        FROM whatsapp_cart_items c
        JOIN product_variants v ON v.id = c.variant_id
        JOIN products p ON p.id = v.product_id
        WHERE c.company_id = %s AND c.chat_id = %s
        ORDER BY c.added_at
        """,
        (company_id, chat_id),
    )
    items = []
    total = Decimal("0")
    for r in cur.fetchall():
        line_total = Decimal(str(r["unit_price"])) * int(r["quantity"])
        total += line_total
        items.append({**r, "line_total": line_total})
    return {"chat_id": chat_id, "items": items, "total": total}


def clear_cart(cur, company_id: str, chat_id: str) -> None:
    cur.execute("DELETE FROM whatsapp_cart_items WHERE company_id = %s AND chat_id = %s", (company_id, chat_id))


def _customer_for_chat(cur, company_id: str, chat_id: str, name: Optional[str]) -> Optional[dict]:
    phone = chat_phone(chat_id)
    if not phone:
        return None
    customer = find_customer_by_phone(cur, company_id, phone)
    if customer:
        return customer
    if not 10 <= len(phone) <= 15:
        return None
    customer_id = insert_customer(
        cur,
        company_id,
        CustomerIn(name=(name or "").strip() or f"WhatsApp {phone[-4:]}", phone=phone, preferred_contact="whatsapp", source="whatsapp"),
    )
    get_or_create_account(cur, company_id, str(customer_id))
    return {"id": customer_id, "name": (name or "").strip() or f"WhatsApp {phone[-4:]}", "phone": phone}


def checkout(
    cur, company_id: str, chat_id: str, brand: str, customer_name: Optional[str] = None, user_id: Optional[str] = None
) -> dict:
    """
    Turn the chat's cart into a pending `whatsapp` sale, linking (or creating)
    the customer by phone. Returns the sale and the confirmation text; the
    caller sends it once the transaction commits.
    """
    cart = get_cart(cur, company_id, chat_id)
    if not cart["items"]:
        raise HTTPException(status_code=400, detail="cart is empty")
    customer = _customer_for_chat(cur, company_id, chat_id, customer_name)
    items = [
        {
            "variant_id": str(it["variant_id"]),
            "quantity": it["quantity"],
            "unit_price": it["unit_price"],
            "description": f"{it['product_name']} ({it['variant_name']})",
        }
        for it in cart["items"]
    ]
    sale = create_sale(
        cur,
        company_id,
        "whatsapp",
        items,
        status="pending",
        customer_id=str(customer["id"]) if customer else None,
        customer_name=customer["name"] if customer else customer_name,
        customer_phone=chat_phone(chat_id) or None,
        payment_method="whatsapp",
        user_id=user_id,
    )
    clear_cart(cur, company_id, chat_id)
    lines = [{"name": it["description"], "quantity": it["quantity"], "price": Decimal(str(it["unit_price"])) * it["quantity"]} for it in items]
    return {
        "sale": sale,
        "confirmation": order_confirmation_message(str(sale["id"])[:8], lines, sale["total"], brand),
    }


def handle_inbound(cur, company_id: str, message: dict, brand: str, catalog_url: str, admin_phones: list) -> Optional[str]:
    """Reply text for one inbound message, or None to stay quiet."""
    body = (message.get("body") or "").strip()
    sender = message.get("from") or ""
    if not body or message.get("from_me") or message.get("is_group_msg"):
        return None
    if body.startswith("!"):
        return process_admin_command(cur, company_id, body, sender, admin_phones)
    if body.lower() == "cart":
        return cart_summary_message(get_cart(cur, company_id, sender), brand)
    if body.lower() == "confirm":
        if not get_cart(cur, company_id, sender)["items"]:
            return cart_summary_message(get_cart(cur, company_id, sender), brand)
        return checkout(cur, company_id, sender, brand, message.get("sender", {}).get("pushname"))["confirmation"]

    intent = parse_order_intent(body)
    if intent["is_order"] and intent["skus"]:
        added = []
        for sku in intent["skus"]:
            try:
                cart_add(cur, company_id, sender, sku, 1)
                added.append(sku)
            except HTTPException:
                continue
        if added:
            return cart_summary_message(get_cart(cur, company_id, sender), brand)

    cur.execute(
        """
        SELECT p.name, p.sku, p.base_price AS price
        FROM products p
        WHERE p.company_id = %s AND p.is_active = true
        ORDER BY p.updated_at DESC
        LIMIT 5
        """,
        (company_id,),
    )
    return auto_reply(body, cur.fetchall(), brand, catalog_url)
