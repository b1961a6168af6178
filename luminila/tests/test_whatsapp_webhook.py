from contextlib import contextmanager

import pytest
from fastapi import HTTPException

from luminila.app.routers import whatsapp as whatsapp_router
from luminila.app.whatsapp_client import WhatsAppError


class _DummyCursor:
    """Acts like the events table: a repeated message id inserts nothing."""

    def __init__(self):
        self.executed = []
        self._seen = set()
        self._last = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql, params))
        self._last = None
        if "INSERT INTO events" in sql:
            source_id = params[1]
            if source_id is None or source_id not in self._seen:
                self._seen.add(source_id)
                self._last = {"id": "e1"}

    def fetchone(self):
        return self._last


class _DummyConn:
    def __init__(self):
        self.cur = _DummyCursor()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    @contextmanager
    def transaction(self):
        yield

    def cursor(self):
        return self.cur


class _FakeClient:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []
        self.unread = []
        self.marked = []

    def send_text(self, phone, message):
        if self.fail:
            raise WhatsAppError("WPPConnect HTTP 500", status=500)
        self.sent.append((phone, message))
        return True

    def unread_messages(self):
        return list(self.unread)

    def mark_read(self, chat_id):
        if self.fail:
            raise WhatsAppError("WPPConnect HTTP 500", status=500)
        self.marked.append(chat_id)
        return True


@pytest.fixture
def configured(monkeypatch):
    monkeypatch.setattr(whatsapp_router.settings, "whatsapp_webhook_secret", "hook-secret")
    monkeypatch.setattr(whatsapp_router.settings, "whatsapp_company_id", "00000000-0000-0000-0000-000000000001")


def test_webhook_disabled_without_config(monkeypatch):
    monkeypatch.setattr(whatsapp_router.settings, "whatsapp_webhook_secret", "")
    monkeypatch.setattr(whatsapp_router.settings, "whatsapp_company_id", "")
    with pytest.raises(HTTPException) as exc_info:
        whatsapp_router.whatsapp_webhook({"event": "onmessage"}, x_whatsapp_webhook_secret="anything")
    assert exc_info.value.status_code == 404


def test_webhook_rejects_wrong_secret(configured):
    with pytest.raises(HTTPException) as exc_info:
        whatsapp_router.whatsapp_webhook({"event": "onmessage"}, x_whatsapp_webhook_secret="nope")
    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "invalid whatsapp secret"


def test_webhook_ignores_other_events(configured):
    out = whatsapp_router.whatsapp_webhook({"event": "onack", "data": {}}, x_whatsapp_webhook_secret="hook-secret")
    assert out == {"ok": True, "ignored": "onack"}


def test_webhook_handles_message(configured, monkeypatch):
    seen = {}

    def fake_handle(company_id, messages, client):
        seen["company_id"] = company_id
        seen["messages"] = messages
        return [{"to": messages[0]["from"], "text": "Hello!", "sent": True}]

    monkeypatch.setattr(whatsapp_router, "handle_inbound_messages", fake_handle)
    out = whatsapp_router.whatsapp_webhook(
        {"event": "onmessage", "data": {"id": "m1", "from": "919876543210@c.us", "body": "hi", "type": "chat"}},
        x_whatsapp_webhook_secret="hook-secret",
    )
    assert out["ok"] is True
    assert seen["company_id"] == "00000000-0000-0000-0000-000000000001"
    assert seen["messages"][0]["body"] == "hi"


def test_inbound_messages_are_recorded_then_answered(monkeypatch):
    conn = _DummyConn()
    monkeypatch.setattr(whatsapp_router, "get_conn", lambda: conn)
    monkeypatch.setattr(whatsapp_router, "set_company_context", lambda conn, company_id: None)
    monkeypatch.setattr(
        whatsapp_router.concierge,
        "handle_inbound",
        lambda cur, company_id, msg, brand, catalog_url, admins: "Welcome!" if msg["body"] == "hi" else None,
    )
    client = _FakeClient()
    messages = [
        {"id": "m1", "from": "919876543210@c.us", "body": "hi"},
        {"id": "m2", "from": "918888888888@c.us", "body": "ok"},
    ]
    replies = whatsapp_router.handle_inbound_messages("c1", messages, client)
    assert replies == [{"to": "919876543210@c.us", "text": "Welcome!", "sent": True}]
    assert client.sent == [("919876543210", "Welcome!")]
    assert sum(1 for sql, _ in conn.cur.executed if "INSERT INTO events" in sql) == 2


def test_reply_send_failure_is_reported_not_raised(monkeypatch):
    conn = _DummyConn()
    monkeypatch.setattr(whatsapp_router, "get_conn", lambda: conn)
    monkeypatch.setattr(whatsapp_router, "set_company_context", lambda conn, company_id: None)
    monkeypatch.setattr(whatsapp_router.concierge, "handle_inbound", lambda *a: "Welcome!")
    replies = whatsapp_router.handle_inbound_messages("c1", [{"id": "m1", "from": "919876543210@c.us", "body": "hi"}], _FakeClient(fail=True))
    assert replies[0]["sent"] is False


def test_redelivered_message_is_handled_once(monkeypatch):
    conn = _DummyConn()
    monkeypatch.setattr(whatsapp_router, "get_conn", lambda: conn)
    monkeypatch.setattr(whatsapp_router, "set_company_context", lambda conn, company_id: None)

    def fake_handle(cur, company_id, msg, brand, catalog_url, admins):
        cur.execute("INSERT INTO whatsapp_cart_items (company_id, chat_id, sku) VALUES (%s, %s, %s)", (company_id, msg["from"], "LUM-EAR-001"))
        return "Added to your cart."

    monkeypatch.setattr(whatsapp_router.concierge, "handle_inbound", fake_handle)
    client = _FakeClient()
    msg = {"id": "m1", "from": "919876543210@c.us", "body": "add LUM-EAR-001"}
    first = whatsapp_router.handle_inbound_messages("c1", [msg], client)
    again = whatsapp_router.handle_inbound_messages("c1", [dict(msg)], client)
    assert len(first) == 1
    assert again == []
    assert sum(1 for sql, _ in conn.cur.executed if "INSERT INTO whatsapp_cart_items" in sql) == 1
    assert client.sent == [("919876543210", "Added to your cart.")]
    assert "ON CONFLICT (company_id, source_type, source_id)" in conn.cur.executed[0][0]


def test_process_unread_marks_each_chat_read(monkeypatch):
    client = _FakeClient()
    client.unread = [
        {"id": "m1", "from": "919876543210@c.us", "body": "hi"},
        {"id": "m2", "from": "919876543210@c.us", "body": "catalog"},
        {"id": "m3", "from": "918888888888@c.us", "body": "hi"},
    ]
    handled = []
    monkeypatch.setattr(
        whatsapp_router, "handle_inbound_messages", lambda company_id, messages, c: handled.extend(messages) or []
    )
    out = whatsapp_router.process_unread(company_id="c1", client=client)
    assert len(handled) == 3
    assert client.marked == ["919876543210@c.us", "918888888888@c.us"]
    assert out == {"replies": [], "marked_read": ["919876543210@c.us", "918888888888@c.us"]}


def test_process_unread_survives_mark_read_failure(monkeypatch):
    client = _FakeClient(fail=True)
    client.unread = [{"id": "m1", "from": "919876543210@c.us", "body": "hi"}]
    monkeypatch.setattr(whatsapp_router, "handle_inbound_messages", lambda company_id, messages, c: [])
    out = whatsapp_router.process_unread(company_id="c1", client=client)
    assert out["marked_read"] == []
