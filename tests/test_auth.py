from datetime import timedelta

from jose import jwt

from chatrelay.config import settings
from chatrelay.security.auth import AnonymousIdentity, TokenIdentity, create_access_token, extract_token, verify_token


def test_token_round_trip():
    token = create_access_token("42")
    payload = verify_token(token)
    assert payload["user_id"] == "42"
    assert payload["type"] == "access"


def test_expired_token_rejected():
    token = create_access_token("42", expires_delta=timedelta(seconds=-5))
    assert verify_token(token) is None


def test_wrong_type_or_key_rejected():
    refresh = jwt.encode({"user_id": "1", "type": "refresh"}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    assert verify_token(refresh) is None
    forged = jwt.encode({"user_id": "1", "type": "access"}, "not-the-key", algorithm=settings.ALGORITHM)
    assert verify_token(forged) is None
    assert verify_token("garbage") is None


def test_extract_token_sources():
    assert extract_token("/ws?token=abc", {}) == "abc"
    assert extract_token("ws://host/ws?x=1&token=q", {"authorization": "Bearer h"}) == "q"
    assert extract_token("/ws", {"authorization": "Bearer h"}) == "h"
    assert extract_token("/ws", {"cookie": "theme=dark; access_token=c"}) == "c"
    assert extract_token("/ws", {"authorization": "Basic zzz"}) is None
    assert extract_token("/", {}) is None


def test_token_identity():
    ident = TokenIdentity()
    token = create_access_token("7")
    assert ident.identify(f"/ws?token={token}", {}) == "7"
    assert ident.identify("/ws?token=broken", {}) is None
    assert ident.identify("/ws", {}) is None


def test_anonymous_identity_vouches_for_nobody():
    ident = AnonymousIdentity()
    token = create_access_token("7")
    assert ident.identify(f"/ws?token={token}", {}) is None
    assert ident.identify("/ws", {"Authorization": f"Bearer {token}"}) is None
