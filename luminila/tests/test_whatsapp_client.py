import pytest

from luminila.app.whatsapp_client import WhatsAppClient, WhatsAppError, normalize_chat, normalize_message


def _client(monkeypatch, responder):
    client = WhatsAppClient(base_url="http://wpp:21465/", session="luminila main", timeout=5)
    calls = []

    def fake_call(method, url, payload=None):
        calls.append((method, url, payload))
        return responder(method, url, payload)

    monkeypatch.setattr(client, "_call", fake_call)
    return client, calls


def test_normalize_text_message():
    msg = normalize_message(
        {
            "id": {"_serialized": "false_919876543210@c.us_ABC", "fromMe": False},
            "from": "919876543210@c.us",
            "to": "918888888888@c.us",
            "body": "Is LUM-EAR-001 available?",
            "t": 1760000000,
            "type": "chat",
            "sender": {"pushname": "Ananya", "id": {"user": "919876543210", "_serialized": "919876543210@c.us"}},
        }
    )
    assert msg["id"] == "false_919876543210@c.us_ABC"
    assert msg["body"] == "Is LUM-EAR-001 available?"
    assert msg["from_me"] is False
    assert msg["is_group_msg"] is False
    assert msg["sender"]["phone"] == "919876543210"
    assert msg["sender"]["pushname"] == "Ananya"


def test_normalize_media_message_uses_caption():
    msg = normalize_message(
        {
            "id": "true_1@c.us_XYZ",
            "fromMe": True,
            "type": "image",
            "body": "/9j/4AAQSkZJRgABAQ...",
            "caption": "New arrivals",
            "deprecatedMms3Url": "https://mmg.whatsapp.net/x",
            "mimetype": "image/jpeg",
        }
    )
    assert msg["id"] == "true_1@c.us_XYZ"
    assert msg["body"] == "New arrivals"
    assert msg["media_url"] == "https://mmg.whatsapp.net/x"
    assert msg["from_me"] is True
    assert msg["sender"]["phone"] == ""


def test_normalize_chat():
    chat = normalize_chat(
        {
            "id": {"_serialized": "919876543210@c.us"},
            "contact": {"pushname": "Ananya", "profilePicThumbObj": {"eurl": "https://pps.whatsapp.net/a"}},
            "unreadCount": 2,
            "t": 1760000000,
            "lastMessage": {"body": "Thanks!", "t": 1760000001},
        }
    )
    assert chat["id"] == "919876543210@c.us"
    assert chat["name"] == "Ananya"
    assert chat["unread_count"] == 2
    assert chat["profile_pic"] == "https://pps.whatsapp.net/a"
    assert chat["last_message"] == {"body": "Thanks!", "timestamp": 1760000001}
    assert normalize_chat({"id": "x@g.us", "isGroup": True})["name"] == "Unknown"


def test_send_text_strips_phone_to_digits(monkeypatch):
    client, calls = _client(monkeypatch, lambda m, u, p: {"status": "success"})
    assert client.send_text("+91 98765 43210", "Your order has shipped")
    method, url, payload = calls[0]
    assert method == "POST"
    assert url == "http://wpp:21465/api/luminila%20main/send-message"
    assert payload == {"phone": "919876543210", "message": "Your order has shipped", "isGroup": False}


def test_send_text_needs_recipient(monkeypatch):
    client, _ = _client(monkeypatch, lambda m, u, p: {})
    with pytest.raises(WhatsAppError):
        client.send_text("n/a", "hi")


def test_rejected_action_raises(monkeypatch):
    client, _ = _client(monkeypatch, lambda m, u, p: {"success": False, "error": "chat not found"})
    with pytest.raises(WhatsAppError) as exc_info:
        client.reply("919876543210@c.us", "ok", "msg-1")
    assert "chat not found" in str(exc_info.value)


def test_reads_return_empty_when_sidecar_is_down(monkeypatch):
    def down(m, u, p):
        raise WhatsAppError("WPPConnect unreachable: connection refused")

    client, _ = _client(monkeypatch, down)
    assert client.chats() == []
    assert client.unread_messages() == []
    assert client.download_media("msg-1") is None
    assert client.session_status() == "DISCONNECTED"
    assert client.server_available() is False


def test_session_status(monkeypatch):
    client, _ = _client(monkeypatch, lambda m, u, p: {"connected": False, "qrReady": True})
    assert client.session_status() == "QR_CODE"
    client, _ = _client(monkeypatch, lambda m, u, p: {"connected": True})
    assert client.session_status() == "CONNECTED"


def test_messages_quotes_chat_id(monkeypatch):
    client, calls = _client(monkeypatch, lambda m, u, p: {"messages": [{"id": "a", "body": "hi"}]})
    out = client.messages("919876543210@c.us", count=5)
    assert out[0]["body"] == "hi"
    assert calls[0][1].endswith("/messages/919876543210%40c.us?count=5")


def test_close_session_falls_back_to_close(monkeypatch):
    def responder(m, u, p):
        if u.endswith("/logout"):
            raise WhatsAppError("WPPConnect HTTP 500", status=500)
        return {}

    client, calls = _client(monkeypatch, responder)
    assert client.close_session() is True
    assert [u.rsplit("/", 1)[1] for _, u, _ in calls] == ["logout", "close"]


def test_pairing_code(monkeypatch):
    client, calls = _client(monkeypatch, lambda m, u, p: {"success": True, "code": "ABCD-1234"})
    assert client.request_pairing_code("+91 98765 43210") == "ABCD-1234"
    assert calls[0][2] == {"phone": "919876543210"}
