import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from .. import concierge
from ..audit_log import write_audit
from ..config import settings
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_permission
from ..jsonlog import json_log
from ..security import verify_webhook_secret
from ..whatsapp_client import WhatsAppClient, WhatsAppError, normalize_message

router = APIRouter(prefix="/whatsapp", tags=["whatsapp"])
webhook_router = APIRouter(prefix="/integrations/whatsapp", tags=["integrations"])


def get_client() -> WhatsAppClient:
    return WhatsAppClient()


class PairIn(BaseModel):
    phone: str


class SendIn(BaseModel):
    phone: str
    message: str = Field(min_length=1)


class MediaIn(BaseModel):
    chat_id: str
    base64: str
    filename: Optional[str] = None
    caption: str = ""


class ReplyIn(BaseModel):
    chat_id: str
    message: str = Field(min_length=1)
    reply_to_id: str


class ForwardIn(BaseModel):
    message_id: str
    to_chat_id: str


class DeleteIn(BaseModel):
    message_id: str
    for_everyone: bool = False


class TypingIn(BaseModel):
    typing: bool = True


class CartAddIn(BaseModel):
    product: str
    quantity: int = Field(default=1, gt=0)


class CartQuantityIn(BaseModel):
    quantity: int = Field(ge=0)


class CheckoutIn(BaseModel):
    customer_name: Optional[str] = None
    send_confirmation: bool = True


class ShippingNoticeIn(BaseModel):
    tracking_id: Optional[str] = None
    estimated_delivery: Optional[str] = None


# -- session ------------------------------------------------------------------


@router.get("/session", dependencies=[Depends(require_permission("whatsapp:use"))])
def session_status(client: WhatsAppClient = Depends(get_client)):
    return {
        "session": client.session,
        "server_available": client.server_available(),
        "status": client.session_status(),
    }


@router.post("/session/start", dependencies=[Depends(require_permission("whatsapp:use"))])
def start_session(client: WhatsAppClient = Depends(get_client)):
    return client.start_session()


@router.get("/session/qr", dependencies=[Depends(require_permission("whatsapp:use"))])
def session_qr(client: WhatsAppClient = Depends(get_client)):
    return {"qr_code": client.qr_code()}


@router.post("/session/pair", dependencies=[Depends(require_permission("whatsapp:use"))])
def pair_phone(data: PairIn, client: WhatsAppClient = Depends(get_client)):
    return {"code": client.request_pairing_code(data.phone)}


@router.post("/session/close", dependencies=[Depends(require_permission("whatsapp:use"))])
def close_session(client: WhatsAppClient = Depends(get_client)):
    return {"ok": client.close_session()}


# -- inbox --------------------------------------------------------------------


@router.get("/chats", dependencies=[Depends(require_permission("whatsapp:use"))])
def list_chats(client: WhatsAppClient = Depends(get_client)):
    return {"chats": client.chats()}


@router.get("/chats/{chat_id}/messages", dependencies=[Depends(require_permission("whatsapp:use"))])
def chat_messages(chat_id: str, count: int = 20, client: WhatsAppClient = Depends(get_client)):
    if count <= 0 or count > 200:
        raise HTTPException(status_code=400, detail="count must be between 1 and 200")
    return {"messages": client.messages(chat_id, count)}


@router.post("/chats/{chat_id}/read", dependencies=[Depends(require_permission("whatsapp:use"))])
def mark_read(chat_id: str, client: WhatsAppClient = Depends(get_client)):
    return {"ok": client.mark_read(chat_id)}


@router.post("/chats/{chat_id}/typing", dependencies=[Depends(require_permission("whatsapp:use"))])
def set_typing(chat_id: str, data: TypingIn, client: WhatsAppClient = Depends(get_client)):
    return {"ok": client.set_typing(chat_id, data.typing)}


@router.get("/unread", dependencies=[Depends(require_permission("whatsapp:use"))])
def unread(client: WhatsAppClient = Depends(get_client)):
    return {"messages": client.unread_messages()}


@router.get("/media/{message_id}", dependencies=[Depends(require_permission("whatsapp:use"))])
def download_media(message_id: str, client: WhatsAppClient = Depends(get_client)):
    media = client.download_media(message_id)
    if not media:
        raise HTTPException(status_code=404, detail="media not available")
    return {"media_url": media}


@router.get("/profile-pic/{contact_id}", dependencies=[Depends(require_permission("whatsapp:use"))])
def profile_pic(contact_id: str, client: WhatsAppClient = Depends(get_client)):
    return {"profile_pic": client.profile_picture(contact_id)}


@router.post("/send", dependencies=[Depends(require_permission("whatsapp:use"))])
def send_text(data: SendIn, client: WhatsAppClient = Depends(get_client)):
    return {"ok": client.send_text(data.phone, data.message)}


@router.post("/send-image", dependencies=[Depends(require_permission("whatsapp:use"))])
def send_image(data: MediaIn, client: WhatsAppClient = Depends(get_client)):
    return {"ok": client.send_image(data.chat_id, data.base64, data.caption, data.filename or "image.jpg")}


@router.post("/send-file", dependencies=[Depends(require_permission("whatsapp:use"))])
def send_file(data: MediaIn, client: WhatsAppClient = Depends(get_client)):
    if not data.filename:
        raise HTTPException(status_code=400, detail="filename is required")
    return {"ok": client.send_file(data.chat_id, data.base64, data.filename, data.caption)}


@router.post("/reply", dependencies=[Depends(require_permission("whatsapp:use"))])
def reply(data: ReplyIn, client: WhatsAppClient = Depends(get_client)):
    return {"ok": client.reply(data.chat_id, data.message, data.reply_to_id)}


@router.post("/forward", dependencies=[Depends(require_permission("whatsapp:use"))])
def forward(data: ForwardIn, client: WhatsAppClient = Depends(get_client)):
    return {"ok": client.forward(data.message_id, data.to_chat_id)}


@router.post("/delete", dependencies=[Depends(require_permission("whatsapp:use"))])
def delete_message(data: DeleteIn, client: WhatsAppClient = Depends(get_client)):
    return {"ok": client.delete(data.message_id, data.for_everyone)}


@router.post("/parse", dependencies=[Depends(require_permission("whatsapp:use"))])
def parse_message(data: dict[str, Any], company_id: str = Depends(get_company_id)):
    text = str(data.get("text") or "")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT name, sku, base_price AS price
                FROM products
                WHERE company_id = %s AND is_active = true
                ORDER BY updated_at DESC
                LIMIT 5
                """,
                (company_id,),
            )
            products = cur.fetchall()
    return {
        "intent": concierge.parse_order_intent(text),
        "auto_reply": concierge.auto_reply(text, products, settings.whatsapp_brand_name, settings.catalog_url),
    }


# -- carts --------------------------------------------------------------------


@router.get("/carts/{chat_id}", dependencies=[Depends(require_permission("whatsapp:use"))])
def get_cart(chat_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            return concierge.get_cart(cur, company_id, chat_id)


@router.post("/carts/{chat_id}/items", dependencies=[Depends(require_permission("whatsapp:use"))])
def add_to_cart(chat_id: str, data: CartAddIn, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                return concierge.cart_add(cur, company_id, chat_id, data.product, data.quantity)


@router.patch("/carts/{chat_id}/items/{variant_id}", dependencies=[Depends(require_permission("whatsapp:use"))])
def set_cart_quantity(chat_id: str, variant_id: str, data: CartQuantityIn, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                return concierge.cart_set_quantity(cur, company_id, chat_id, variant_id, data.quantity)


@router.delete("/carts/{chat_id}/items/{variant_id}", dependencies=[Depends(require_permission("whatsapp:use"))])
def remove_from_cart(chat_id: str, variant_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                return concierge.cart_remove(cur, company_id, chat_id, variant_id)


@router.post("/carts/{chat_id}/send-summary", dependencies=[Depends(require_permission("whatsapp:use"))])
def send_cart_summary(chat_id: str, company_id: str = Depends(get_company_id), client: WhatsAppClient = Depends(get_client)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cart = concierge.get_cart(cur, company_id, chat_id)
    if not cart["items"]:
        raise HTTPException(status_code=400, detail="cart is empty")
    client.send_text(concierge.chat_phone(chat_id), concierge.cart_summary_message(cart, settings.whatsapp_brand_name))
    return {"ok": True}


@router.post("/carts/{chat_id}/checkout", dependencies=[Depends(require_permission("whatsapp:use")), Depends(require_permission("sales:write"))])
def checkout(
    chat_id: str,
    data: CheckoutIn,
    company_id: str = Depends(get_company_id),
    user=Depends(get_current_user),
    client: WhatsAppClient = Depends(get_client),
):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                res = concierge.checkout(cur, company_id, chat_id, settings.whatsapp_brand_name, data.customer_name, user["user_id"])
                write_audit(cur, company_id, user["user_id"], "whatsapp_checkout", "sales", res["sale"]["id"], {"chat_id": chat_id})
    sent = False
    if data.send_confirmation:
        # The sale is committed; a failed message must not undo it.
        try:
            sent = client.send_text(concierge.chat_phone(chat_id), res["confirmation"])
        except WhatsAppError as e:
            json_log("warning", "whatsapp.confirmation_failed", company_id=company_id, sale_id=str(res["sale"]["id"]), error=str(e))
    return {"sale": res["sale"], "confirmation_sent": sent}


@router.post("/sales/{sale_id}/shipping-notice", dependencies=[Depends(require_permission("whatsapp:use"))])
def send_shipping_notice(
    sale_id: str,
    data: ShippingNoticeIn,
    company_id: str = Depends(get_company_id),
    client: WhatsAppClient = Depends(get_client),
):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute("SELECT id, customer_phone FROM sales WHERE company_id = %s AND id = %s", (company_id, sale_id))
            sale = cur.fetchone()
    if not sale:
        raise HTTPException(status_code=404, detail="sale not found")
    if not sale["customer_phone"]:
        raise HTTPException(status_code=400, detail="sale has no customer phone")
    text = concierge.shipping_update_message(
        str(sale["id"])[:8], settings.whatsapp_brand_name, data.tracking_id, data.estimated_delivery
    )
    return {"ok": client.send_text(sale["customer_phone"], text)}


# -- inbound ------------------------------------------------------------------


def _record_inbound(cur, company_id: str, msg: dict) -> bool:
    """False when this message id was already recorded (webhook retry or a later unread poll)."""
    cur.execute(
        """
        INSERT INTO events (id, company_id, event_type, source_type, source_id, payload_json)
        VALUES (gen_random_uuid(), %s, 'whatsapp_message', 'whatsapp', %s, %s::jsonb)
        ON CONFLICT (company_id, source_type, source_id) WHERE source_id IS NOT NULL DO NOTHING
        RETURNING id
        """,
        (company_id, msg.get("id") or None, json.dumps({k: msg.get(k) for k in ("from", "body", "type", "timestamp")})),
    )
    return cur.fetchone() is not None


def handle_inbound_messages(company_id: str, messages: list, client: WhatsAppClient) -> list:
    """Record each message, work out the reply, commit, then send replies."""
    replies = []
    with get_conn() as conn:
        set_company_context(conn, company_id)
        for msg in messages:
            with conn.transaction():
                with conn.cursor() as cur:
                    if not _record_inbound(cur, company_id, msg):
                        json_log("info", "whatsapp.duplicate_message", company_id=company_id, message_id=msg.get("id"))
                        continue
                    text = concierge.handle_inbound(
                        cur,
                        company_id,
                        msg,
                        settings.whatsapp_brand_name,
                        settings.catalog_url,
                        settings.whatsapp_admin_phones,
                    )
            if text:
                replies.append({"to": msg.get("from"), "text": text})
    for r in replies:
        try:
            client.send_text(concierge.chat_phone(r["to"]), r["text"])
            r["sent"] = True
        except WhatsAppError as e:
            r["sent"] = False
            json_log("warning", "whatsapp.reply_failed", company_id=company_id, to=r["to"], error=str(e))
    return replies


@router.post("/process-unread", dependencies=[Depends(require_permission("whatsapp:use"))])
def process_unread(company_id: str = Depends(get_company_id), client: WhatsAppClient = Depends(get_client)):
    messages = client.unread_messages()
    replies = handle_inbound_messages(company_id, messages, client)
    marked = []
    for chat_id in dict.fromkeys(m.get("from") for m in messages if m.get("from")):
        try:
            client.mark_read(chat_id)
        except WhatsAppError as e:
            json_log("warning", "whatsapp.mark_read_failed", company_id=company_id, chat_id=chat_id, error=str(e))
            continue
        marked.append(chat_id)
    return {"replies": replies, "marked_read": marked}


@webhook_router.post("/webhook")
def whatsapp_webhook(
    payload: dict[str, Any],
    x_whatsapp_webhook_secret: Optional[str] = Header(None, alias="X-WhatsApp-Webhook-Secret"),
):
    """
    WPPConnect webhook receiver.

    Off unless WHATSAPP_WEBHOOK_SECRET and WHATSAPP_COMPANY_ID are set. Only
    `onmessage` events are handled; anything else is acknowledged and ignored.
    """
    expected_secret = settings.whatsapp_webhook_secret
    company_id = settings.whatsapp_company_id
    if not expected_secret or not company_id:
        raise HTTPException(status_code=404, detail="whatsapp integration not configured")
    if not verify_webhook_secret(x_whatsapp_webhook_secret, expected_secret):
        raise HTTPException(status_code=401, detail="invalid whatsapp secret")

    event = payload.get("event") or "onmessage"
    if event != "onmessage":
        return {"ok": True, "ignored": event}
    msg = normalize_message(payload.get("data") if isinstance(payload.get("data"), dict) else payload)
    replies = handle_inbound_messages(company_id, [msg], WhatsAppClient())
    return {"ok": True, "replies": replies}
