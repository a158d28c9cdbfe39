"""Identity port and the JWT-backed implementation.

The relay does not authenticate anyone itself. An :class:`IdentityProvider`
looks at the upgrade request and hands back the UserId it vouches for, or
None, in which case the relay trusts whatever the client registers as.

Browsers cannot set headers on a WebSocket upgrade, so the token is taken
from the ``token`` query parameter first, then ``Authorization: Bearer``,
then the ``access_token`` cookie.
"""
from datetime import datetime, timedelta, timezone
from http.cookies import CookieError, SimpleCookie
from typing import Any, Dict, Mapping, Optional, Protocol
from urllib.parse import parse_qs, urlsplit

from jose import JWTError, jwt

from chatrelay.config import settings


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token for ``user_id``"""
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = {"user_id": user_id, "exp": expire, "type": "access"}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def verify_token(token: str, token_type: str = "access") -> Optional[Dict[str, Any]]:
    """Verify and decode a JWT token"""
    try:
        # jose rejects expired tokens itself
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != token_type:
        return None
    return payload


def extract_token(target: str, headers: Mapping[str, str]) -> Optional[str]:
    query = parse_qs(urlsplit(target).query)
    if query.get("token"):
        return query["token"][0]

    auth = headers.get("authorization") or headers.get("Authorization")
    if auth and auth.lower().startswith("bearer "):
        return auth[7:].strip()

    raw_cookie = headers.get("cookie") or headers.get("Cookie")
    if raw_cookie:
        try:
            cookie = SimpleCookie(raw_cookie)
        except CookieError:
            return None
        if "access_token" in cookie:
            return cookie["access_token"].value
    return None


class IdentityProvider(Protocol):
    def identify(self, target: str, headers: Mapping[str, str]) -> Optional[str]: ...


class AnonymousIdentity:
    """Vouches for nobody; clients are trusted to register as whoever they say."""

    def identify(self, target: str, headers: Mapping[str, str]) -> Optional[str]:
        return None


class TokenIdentity:
    def identify(self, target: str, headers: Mapping[str, str]) -> Optional[str]:
        token = extract_token(target, headers)
        if not token:
            return None
        payload = verify_token(token)
        if payload is None:
            return None
        user_id = payload.get("user_id")
        return str(user_id) if user_id is not None else None
