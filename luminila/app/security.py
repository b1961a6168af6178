import hashlib
import hmac
import secrets
from typing import Optional
from passlib.context import CryptContext

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return _pwd_context.verify(password, hashed)


def needs_rehash(hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return _pwd_context.needs_update(hashed)


def new_session_token() -> str:
    return secrets.token_urlsafe(32)


def hash_session_token(token: str) -> str:
    # Sessions are stored as a one-way hash; the prefix keeps a stored hash from being replayed as a token.
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()


def verify_webhook_secret(provided: Optional[str], expected: Optional[str]) -> bool:
    if not expected:
        return False
    return hmac.compare_digest((provided or "").strip(), expected.strip())
