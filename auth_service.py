"""Account registration, sign-in and session lifecycle."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import aiosqlite

from auth import (
    MAX_PASSWORD_LENGTH,
    MIN_PASSWORD_LENGTH,
    SESSION_COOKIE_NAME,
    SESSION_MAX_AGE,
    SESSION_UPDATE_AGE,
    PasswordHasher,
    SessionCookieSigner,
    generate_session_token,
    get_cookie_value,
    hash_session_token,
)
from database import Database, SessionRecord, UserRecord, parse_iso, to_iso, utc_now
from errors import DuplicateEmail, InvalidCredentials, InvalidInput, Unauthenticated

logger = logging.getLogger(__name__)


def _normalize_email(raw: object) -> str:
    return str(raw or "").strip().lower()


def _is_valid_email(email: str) -> bool:
    local, sep, domain = email.partition("@")
    return bool(sep and local and domain and " " not in email)


def _check_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise InvalidInput("Password is too short.")
    if len(password) > MAX_PASSWORD_LENGTH:
        raise InvalidInput("Password is too long.")


@dataclass(frozen=True)
class SignUpInput:
    name: str
    email: str
    password: str

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SignUpInput":
        """Validate a ``{name, email, password}`` body."""
        name = str(payload.get("name") or "").strip()
        email = _normalize_email(payload.get("email"))
        password = payload.get("password")
        if not name:
            raise InvalidInput("Name is required.")
        if not _is_valid_email(email):
            raise InvalidInput("Invalid email.")
        if not isinstance(password, str):
            raise InvalidInput("Password is required.")
        _check_password(password)
        return cls(name=name, email=email, password=password)


@dataclass(frozen=True)
class SignInInput:
    email: str
    password: str

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SignInInput":
        email = _normalize_email(payload.get("email"))
        password = payload.get("password")
        if not _is_valid_email(email):
            raise InvalidInput("Invalid email.")
        if not isinstance(password, str) or not password:
            raise InvalidInput("Password is required.")
        return cls(email=email, password=password)


@dataclass(frozen=True)
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AuthenticatedSession:
    user: UserRecord
    session: SessionRecord
    # Signed cookie value; set when the browser cookie must be (re)written.
    cookie_value: Optional[str] = None


class SessionStore:
    """Issues, resolves and revokes database-backed session tokens."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def issue(self, user_id: int, client: ClientInfo) -> tuple[str, SessionRecord]:
        session_token = generate_session_token()
        expires_at = to_iso(utc_now() + SESSION_MAX_AGE)
        record = await self.db.create_session(
            user_id=user_id,
            token_hash=session_token.token_hash,
            expires_at=expires_at,
            user_agent=client.user_agent,
            ip_address=client.ip_address,
        )
        return session_token.token, record

    async def resolve(
        self, token: str, *, now: Optional[datetime] = None
    ) -> tuple[Optional[SessionRecord], bool]:
        """Return ``(session, renewed)``; expired sessions are deleted."""
        now = now or utc_now()
        session = await self.db.fetch_session_by_token(hash_session_token(token))
        if session is None:
            return None, False
        if parse_iso(session.expires_at) <= now:
            await self.db.delete_session(session.id)
            logger.info("session expired session_id=%s user_id=%s", session.id, session.user_id)
            return None, False
        if now - parse_iso(session.updated_at) > SESSION_UPDATE_AGE:
            session.expires_at = to_iso(now + SESSION_MAX_AGE)
            session.updated_at = to_iso(now)
            await self.db.refresh_session(
                session.id,
                expires_at=session.expires_at,
                updated_at=session.updated_at,
            )
            return session, True
        return session, False

    async def revoke(self, token: str) -> bool:
        return await self.db.delete_session_by_token(hash_session_token(token))


class AuthService:
    def __init__(
        self,
        db: Database,
        signer: SessionCookieSigner,
        *,
        hasher: Optional[PasswordHasher] = None,
        sessions: Optional[SessionStore] = None,
    ) -> None:
        self.db = db
        self.signer = signer
        self.hasher = hasher or PasswordHasher()
        self.sessions = sessions or SessionStore(db)
        self._dummy_hash: Optional[str] = None

    def _token_from_cookie_header(self, cookie_header: Optional[str]) -> Optional[str]:
        return self.signer.unsign(get_cookie_value(cookie_header, SESSION_COOKIE_NAME))

    async def _start_session(
        self, user: UserRecord, client: ClientInfo
    ) -> AuthenticatedSession:
        token, session = await self.sessions.issue(user.id, client)
        return AuthenticatedSession(
            user=user, session=session, cookie_value=self.signer.sign(token)
        )

    async def sign_up(
        self, data: SignUpInput, client: ClientInfo = ClientInfo()
    ) -> AuthenticatedSession:
        """Create the user with a password account and sign them in."""
        if await self.db.count_users_by_email(data.email):
            logger.warning("sign-up rejected reason=duplicate_email")
            raise DuplicateEmail()
        password_hash = self.hasher.hash(data.password)
        try:
            user = await self.db.create_user_with_credentials(
                data.name, data.email, password_hash
            )
        except aiosqlite.IntegrityError as exc:
            # Lost a race against a concurrent sign-up with the same email.
            logger.warning("sign-up rejected reason=duplicate_email")
            raise DuplicateEmail() from exc
        logger.info("sign-up completed user_id=%s", user.id)
        return await self._start_session(user, client)

    async def sign_in(
        self,
        data: SignInInput,
        client: ClientInfo = ClientInfo(),
        *,
        cookie_header: Optional[str] = None,
    ) -> AuthenticatedSession:
        """Verify the password and issue a fresh session.

        There is no lockout: every failed attempt is answered the same way.
        """
        user = await self.db.fetch_user_by_email(data.email)
        stored = await self.db.fetch_password_hash(user.id) if user else None
        if user is None or stored is None:
            # Spend comparable time on unknown emails.
            if self._dummy_hash is None:
                self._dummy_hash = self.hasher.hash("placeholder-password")
            self.hasher.verify(data.password, self._dummy_hash)
            logger.warning("sign-in rejected reason=unknown_email")
            raise InvalidCredentials()
        if not self.hasher.verify(data.password, stored):
            logger.warning("sign-in rejected user_id=%s reason=bad_password", user.id)
            raise InvalidCredentials()
        previous = self._token_from_cookie_header(cookie_header)
        if previous:
            await self.sessions.revoke(previous)
        logger.info("sign-in completed user_id=%s", user.id)
        return await self._start_session(user, client)

    async def get_session(
        self, cookie_header: Optional[str], *, now: Optional[datetime] = None
    ) -> Optional[AuthenticatedSession]:
        """Resolve the caller from the session cookie, renewing it when due."""
        token = self._token_from_cookie_header(cookie_header)
        if not token:
            return None
        session, renewed = await self.sessions.resolve(token, now=now)
        if session is None:
            return None
        user = await self.db.fetch_user_by_id(session.user_id)
        if user is None:
            return None
        return AuthenticatedSession(
            user=user,
            session=session,
            cookie_value=self.signer.sign(token) if renewed else None,
        )

    async def require_session(
        self, cookie_header: Optional[str], *, now: Optional[datetime] = None
    ) -> AuthenticatedSession:
        """Like ``get_session`` but raise ``Unauthenticated`` when nobody is signed in."""
        resolved = await self.get_session(cookie_header, now=now)
        if resolved is None:
            raise Unauthenticated()
        return resolved

    async def sign_out(self, cookie_header: Optional[str]) -> None:
        token = self._token_from_cookie_header(cookie_header)
        if token and await self.sessions.revoke(token):
            logger.info("sign-out completed")
