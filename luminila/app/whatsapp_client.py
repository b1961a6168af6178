"""
Client for the WPPConnect sidecar (WhatsApp Web automation over REST).

Writes raise WhatsAppError. Reads used by polling screens (chats, messages,
unread, media, profile pictures) log and return an empty result instead, so a
sidecar restart never breaks the inbox.
"""
import json
import re
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Optional

from .config import settings
from .jsonlog import json_log

MEDIA_TYPES = {"image", "sticker", "video", "ptt", "audio", "document"}


class WhatsAppError(RuntimeError):
    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.body = body


def digits_only(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


def _serialized(v) -> str:
    if isinstance(v, dict):
        return v.get("_serialized") or ""
    return v or ""


def normalize_chat(chat: dict) -> dict:
    contact = chat.get("contact") or {}
    last = chat.get("lastMessage")
    pic = chat.get("profilePicThumbObj") or contact.get("profilePicThumbObj") or {}
    return {
        "id": _serialized(chat.get("id")),
        "name": chat.get("name") or contact.get("pushname") or contact.get("name") or "Unknown",
        "is_group": bool(chat.get("isGroup")),
        "timestamp": chat.get("t") or chat.get("timestamp") or 0,
        "unread_count": chat.get("unreadCount") or 0,
        "profile_pic": pic.get("eurl"),
        "last_message": (
            {"body": last.get("body") or "", "timestamp": last.get("t") or last.get("timestamp") or 0}
            if isinstance(last, dict)
            else None
        ),
    }


def normalize_message(msg: dict) -> dict:
    msg_type = msg.get("type") or "chat"
    is_media = msg_type in MEDIA_TYPES
    media_url = msg.get("deprecatedMms3Url") or ""
    if not media_url and isinstance(msg.get("mediaUrl"), str) and msg["mediaUrl"].startswith("http"):
        media_url = msg["mediaUrl"]
    raw_id = msg.get("id")
    sender = msg.get("sender") or {}
    sender_id = sender.get("id") if isinstance(sender.get("id"), dict) else {}
    return {
        "id": _serialized(raw_id),
        "from": msg.get("from"),
        "to": msg.get("to"),
        # Media bodies hold raw base64; the caption is the readable text.
        "body": (msg.get("caption") or "") if is_media else (msg.get("body") or msg.get("caption") or ""),
        "timestamp": msg.get("t") or msg.get("timestamp") or 0,
        "is_group_msg": bool(msg.get("isGroupMsg")),
        "from_me": bool(msg.get("fromMe") or (raw_id.get("fromMe") if isinstance(raw_id, dict) else False)),
        "type": msg_type,
        "caption": msg.get("caption") or "",
        "media_url": media_url,
        "mimetype": msg.get("mimetype") or "",
        "filename": msg.get("filename") or "",
        "sender": {
            "name": sender.get("name") or "",
            "pushname": sender.get("pushname") or "",
            "phone": sender_id.get("user") or "",
        },
    }


class WhatsAppClient:
    def __init__(self, base_url: Optional[str] = None, session: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.wppconnect_url).rstrip("/")
        self.session = session or settings.whatsapp_session
        self.timeout = timeout or settings.http_timeout_s

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/{urllib.parse.quote(self.session, safe='')}{path}"

    def _call(self, method: str, url: str, payload: Optional[dict] = None) -> Any:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        req = urllib.request.Request(url, data=data, method=method, headers={"Accept": "application/json"})
        if data is not None:
            req.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace") if e.fp else ""
            raise WhatsAppError(f"WPPConnect HTTP {e.code}", status=e.code, body=body[:2000]) from e
        except urllib.error.URLError as e:
            raise WhatsAppError(f"WPPConnect unreachable: {e.reason}") from e
        if not body:
            return {}
        try:
            return json.loads(body)
        except ValueError as e:
            raise WhatsAppError("WPPConnect returned invalid JSON", body=body[:2000]) from e

    def _session_call(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        return self._call(method, self._url(path), payload) or {}

    def _action(self, path: str, payload: Optional[dict] = None) -> bool:
        data = self._session_call("POST", path, payload)
        if data.get("success") is False:
            raise WhatsAppError(f"WPPConnect rejected {path}: {data.get('error') or 'unknown error'}")
        return True

    def _quiet(self, what: str, fn, default):
        try:
            return fn()
        except WhatsAppError as e:
            json_log("warning", "whatsapp.read_failed", what=what, error=str(e), status=e.status)
            return default

    # -- server and session ---------------------------------------------------

    def server_available(self) -> bool:
        try:
            self._call("GET", f"{self.base_url}/api/status")
        except WhatsAppError:
            return False
        return True

    def start_session(self) -> dict:
        data = self._session_call("POST", "/start")
        return {"session": self.session, "status": data.get("status"), "qr_code": data.get("qrcode")}

    def qr_code(self) -> Optional[str]:
        return self._quiet("qr_code", lambda: self._session_call("GET", "/qrcode").get("qrCode"), None)

    def session_status(self) -> str:
        """CONNECTED, QR_CODE or DISCONNECTED (a stale session reads as disconnected)."""
        try:
            data = self._session_call("GET", "/status")
        except WhatsAppError:
            return "DISCONNECTED"
        if data.get("connected"):
            return "CONNECTED"
        if data.get("qrReady"):
            return "QR_CODE"
        return "DISCONNECTED"

    def close_session(self) -> bool:
        try:
            self._session_call("POST", "/logout")
            return True
        except WhatsAppError:
            self._session_call("POST", "/close")
            return True

    def request_pairing_code(self, phone: str) -> str:
        data = self._session_call("POST", "/pair-phone", {"phone": digits_only(phone)})
        if not data.get("success") or not data.get("code"):
            raise WhatsAppError(f"pairing code not issued: {data.get('error') or 'unknown error'}")
        return data["code"]

    # -- reads ----------------------------------------------------------------

    def chats(self) -> list:
        def fetch():
            return [normalize_chat(c) for c in self._session_call("GET", "/chats").get("chats") or []]

        return self._quiet("chats", fetch, [])

    def messages(self, chat_id: str, count: int = 20) -> list:
        def fetch():
            path = f"/messages/{urllib.parse.quote(chat_id, safe='')}?count={int(count)}"
            return [normalize_message(m) for m in self._session_call("GET", path).get("messages") or []]

        return self._quiet("messages", fetch, [])

    def unread_messages(self) -> list:
        def fetch():
            return [normalize_message(m) for m in self._session_call("GET", "/unread-messages").get("messages") or []]

        return self._quiet("unread_messages", fetch, [])

    def download_media(self, message_id: str) -> Optional[str]:
        """Data URI of the message's media, or None."""

        def fetch():
            data = self._session_call("POST", "/download-media", {"messageId": message_id})
            return data.get("mediaUrl") if data.get("success") else None

        return self._quiet("download_media", fetch, None)

    def profile_picture(self, contact_id: str) -> Optional[str]:
        def fetch():
            data = self._session_call("GET", f"/profile-pic/{urllib.parse.quote(contact_id, safe='')}")
            pic = data.get("profilePic")
            if not data.get("success") or not pic:
                return None
            if isinstance(pic, str):
                return pic
            return pic.get("eurl") or pic.get("img") or pic.get("imgFull")

        return self._quiet("profile_picture", fetch, None)

    # -- writes ---------------------------------------------------------------

    def send_text(self, phone: str, message: str) -> bool:
        to = digits_only(phone)
        if not to:
            raise WhatsAppError("recipient phone is empty")
        self._session_call("POST", "/send-message", {"phone": to, "message": message, "isGroup": False})
        return True

    def send_image(self, chat_id: str, base64_image: str, caption: str = "", filename: str = "image.jpg") -> bool:
        return self._action(
            "/send-image",
            {"phone": chat_id, "base64": base64_image, "filename": filename or "image.jpg", "caption": caption or ""},
        )

    def send_file(self, chat_id: str, base64_file: str, filename: str, caption: str = "") -> bool:
        return self._action("/send-file", {"phone": chat_id, "base64": base64_file, "filename": filename, "caption": caption or ""})

    def reply(self, chat_id: str, message: str, reply_to_id: str) -> bool:
        return self._action("/reply-message", {"phone": chat_id, "message": message, "messageId": reply_to_id})

    def forward(self, message_id: str, to_chat_id: str) -> bool:
        return self._action("/forward-message", {"messageId": message_id, "to": to_chat_id})

    def delete(self, message_id: str, for_everyone: bool = False) -> bool:
        return self._action("/delete-message", {"messageId": message_id, "forEveryone": bool(for_everyone)})

    def mark_read(self, chat_id: str) -> bool:
        return self._action(f"/mark-as-read/{urllib.parse.quote(chat_id, safe='')}")

    def set_typing(self, chat_id: str, typing: bool) -> bool:
        return self._action("/set-presence", {"chatId": chat_id, "typing": bool(typing)})
