from luminila.app.security import (
    hash_password,
    hash_session_token,
    needs_rehash,
    new_session_token,
    verify_password,
    verify_webhook_secret,
)


def test_password_hash_round_trip():
    hashed = hash_password("s3cret-pass")
    assert hashed != "s3cret-pass"
    assert verify_password("s3cret-pass", hashed)
    assert not verify_password("wrong", hashed)
    assert not needs_rehash(hashed)


def test_verify_password_without_hash():
    assert not verify_password("anything", None)
    assert not verify_password("anything", "")


def test_session_tokens_are_random_and_hashed():
    a = new_session_token()
    b = new_session_token()
    assert a != b
    hashed = hash_session_token(a)
    assert hashed.startswith("sha256:")
    assert hashed == hash_session_token(a)
    assert hashed != hash_session_token(b)


def test_verify_webhook_secret():
    assert verify_webhook_secret("abc", "abc")
    assert verify_webhook_secret(" abc ", "abc")
    assert not verify_webhook_secret("abd", "abc")
    assert not verify_webhook_secret(None, "abc")
    # No configured secret never authenticates.
    assert not verify_webhook_secret("", "")
