from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, Optional

from itsdangerous import BadData, URLSafeSerializer
from passlib.context import CryptContext

SESSION_COOKIE_NAME = "gallery_session"
SESSION_MAX_AGE = timedelta(days=7)
SESSION_UPDATE_AGE = timedelta(days=1)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


class PasswordHasher:
    """Salted one-way password hashing backed by passlib.

    The salt is random per hash and stored inside the returned string, so
    ``verify`` only needs the stored value.
    """

    def __init__(self, schemes: Iterable[str] = ("pbkdf2_sha256",)) -> None:
        self.context = CryptContext(schemes=list(schemes), deprecated="auto")

    def hash(self, password: str) -> str:
        return self.context.hash(password)

    def verify(self, password: str, stored: str) -> bool:
        if not stored:
            return False
        try:
            return self.context.verify(password, stored)
        except ValueError:
            # Unknown or malformed hash format.
            return False


@dataclass(frozen=True)
class SessionToken:
    token: str
    token_hash: str


def hash_session_token(token: str) -> str:
    """Digest stored in the database in place of the raw token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_session_token() -> SessionToken:
    token = secrets.token_urlsafe(32)
    return SessionToken(token=token, token_hash=hash_session_token(token))


class SessionCookieSigner:
    """Signs session tokens before they are handed to the browser."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("A signing secret is required")
        self.serializer = URLSafeSerializer(secret, salt="gallery.session")

    def sign(self, token: str) -> str:
        return self.serializer.dumps(token)

    def unsign(self, value: Optional[str]) -> Optional[str]:
        """Return the embedded token, or None when the cookie was tampered with."""
        if not value:
            return None
        try:
            token = self.serializer.loads(value)
        except BadData:
            return None
        return token if isinstance(token, str) and token else None


def cookie_settings(*, secure: bool = False) -> Dict[str, Any]:
    """Standard cookie arguments that make session cookies httponly and samesite=lax."""
    return {
        "http_only": True,
        "same_site": "lax",
        "secure": secure,
        "max_age": int(SESSION_MAX_AGE.total_seconds()),
        "path": "/",
    }


def cookie_clear_settings(*, secure: bool = False) -> Dict[str, Any]:
    """Special cookie instructions required to immediately forget a session."""
    return {
        "max_age": 0,
        "expires": "Thu, 01 Jan 1970 00:00:00 GMT",
        "path": "/",
        "secure": secure,
        "http_only": True,
        "same_site": "lax",
    }


def resolve_client_ip(
    get_header: Callable[[str], Optional[str]],
    header_names: Iterable[str],
) -> Optional[str]:
    """Return the client address from the first populated proxy header.

    ``x-forwarded-for`` style headers may hold a chain; the left-most entry is
    the original client.
    """
    for name in header_names:
        raw = get_header(name)
        if not raw:
            continue
        candidate = raw.split(",")[0].strip()
        if candidate:
            return candidate
    return None


def get_cookie_value(cookie_header: Optional[str], name: str) -> Optional[str]:
    """Extract a single cookie value from a raw ``Cookie`` header."""
    if not cookie_header:
        return None
    for chunk in cookie_header.split(";"):
        key, sep, value = chunk.strip().partition("=")
        if not sep:
            continue
        if key.strip() == name:
            return value.strip()
    return None
