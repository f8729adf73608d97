from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional, Sequence, Set

import aiosqlite

from config import DEFAULT_DB_PATH

CREDENTIAL_PROVIDER = "credential"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class UserRecord:
    id: int
    name: str
    email: str
    email_verified: bool
    created_at: str
    updated_at: str


@dataclass
class SessionRecord:
    id: str
    user_id: int
    token: str
    created_at: str
    updated_at: str
    expires_at: str
    ip_address: Optional[str]
    user_agent: Optional[str]


@dataclass
class PictureRecord:
    id: int
    user_id: int
    user_name: str
    title: str
    contents: Optional[str]
    image_path: str
    created_at: str


_USER_COLUMNS = "id, name, email, email_verified, created_at, updated_at"
_SESSION_COLUMNS = (
    "id, user_id, token, created_at, updated_at, expires_at, ip_address, user_agent"
)
_PICTURE_COLUMNS = "id, user_id, user_name, title, contents, image_path, created_at"


def _user_from_row(row: aiosqlite.Row) -> UserRecord:
    data = dict(row)
    data["email_verified"] = bool(data["email_verified"])
    return UserRecord(**data)


class Database:
    """Lightweight wrapper around aiosqlite for users, sessions and pictures."""

    def __init__(self, db_path: Path = DEFAULT_DB_PATH) -> None:
        self.db_path = db_path

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection with foreign-key support enabled."""
        async with aiosqlite.connect(self.db_path) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON;")
            yield conn

    async def initialize(self) -> None:
        """Create directories and ensure every table exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connection() as conn:
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS "user" (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    email_verified INTEGER NOT NULL DEFAULT 0,
                    image TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS session (
                    id TEXT PRIMARY KEY,
                    expires_at TEXT NOT NULL,
                    token TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    ip_address TEXT,
                    user_agent TEXT,
                    user_id INTEGER NOT NULL,
                    FOREIGN KEY(user_id) REFERENCES "user"(id) ON DELETE CASCADE
                )
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS account (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    user_id INTEGER NOT NULL,
                    access_token TEXT,
                    refresh_token TEXT,
                    id_token TEXT,
                    access_token_expires_at TEXT,
                    refresh_token_expires_at TEXT,
                    scope TEXT,
                    password TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY(user_id) REFERENCES "user"(id) ON DELETE CASCADE
                )
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS verification (
                    id TEXT PRIMARY KEY,
                    identifier TEXT NOT NULL,
                    value TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            # Pictures keep a plain user reference: removing a user does not
            # remove their uploads.
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS picture (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    user_name TEXT NOT NULL,
                    title TEXT NOT NULL,
                    contents TEXT,
                    image_path TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_picture_user_id ON picture(user_id)"
            )
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_session_user_id ON session(user_id)"
            )
            await conn.commit()

    async def fetch_one(
        self, query: str, params: Sequence[Any]
    ) -> Optional[aiosqlite.Row]:
        """Execute a single-row SELECT statement with given parameters."""
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
            await cursor.close()
            return row

    async def fetch_all(
        self, query: str, params: Sequence[Any] = ()
    ) -> List[aiosqlite.Row]:
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return list(rows)

    async def execute(self, query: str, params: Sequence[Any]) -> int:
        """Run a single write statement and return the affected row count."""
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Users and credential accounts
    # ------------------------------------------------------------------
    async def create_user_with_credentials(
        self, name: str, email: str, password_hash: str
    ) -> UserRecord:
        """Insert a user and its password account in one transaction.

        Raises ``aiosqlite.IntegrityError`` when the email is already taken;
        nothing is written in that case.
        """
        now = to_iso(utc_now())
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO "user" (name, email, email_verified, created_at, updated_at)
                VALUES (?, ?, 0, ?, ?)
                """,
                (name, email.lower(), now, now),
            )
            lastrowid = cursor.lastrowid
            if lastrowid is None:
                raise RuntimeError("Failed to read the inserted user ID.")
            user_id = int(lastrowid)
            await conn.execute(
                """
                INSERT INTO account (
                    id, account_id, provider_id, user_id, password, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    str(user_id),
                    CREDENTIAL_PROVIDER,
                    user_id,
                    password_hash,
                    now,
                    now,
                ),
            )
            await conn.commit()
        return UserRecord(
            id=user_id,
            name=name,
            email=email.lower(),
            email_verified=False,
            created_at=now,
            updated_at=now,
        )

    async def fetch_user_by_email(self, email: str) -> Optional[UserRecord]:
        """Find a user row by their normalized (lowercased) email address."""
        row = await self.fetch_one(
            f'SELECT {_USER_COLUMNS} FROM "user" WHERE email = ?',
            (email.lower(),),
        )
        return _user_from_row(row) if row else None

    async def fetch_user_by_id(self, user_id: int) -> Optional[UserRecord]:
        row = await self.fetch_one(
            f'SELECT {_USER_COLUMNS} FROM "user" WHERE id = ?',
            (user_id,),
        )
        return _user_from_row(row) if row else None

    async def count_users_by_email(self, email: str) -> int:
        row = await self.fetch_one(
            'SELECT COUNT(*) AS total FROM "user" WHERE email = ?',
            (email.lower(),),
        )
        return int(row["total"]) if row else 0

    async def fetch_password_hash(self, user_id: int) -> Optional[str]:
        """Return the stored hash of the user's credential account, if any."""
        row = await self.fetch_one(
            "SELECT password FROM account WHERE user_id = ? AND provider_id = ?",
            (user_id, CREDENTIAL_PROVIDER),
        )
        if not row:
            return None
        return row["password"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    async def create_session(
        self,
        *,
        user_id: int,
        token_hash: str,
        expires_at: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> SessionRecord:
        """Insert a new session row for a user."""
        session_id = str(uuid.uuid4())
        now = to_iso(utc_now())
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO session (
                    id, expires_at, token, created_at, updated_at,
                    ip_address, user_agent, user_id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    expires_at,
                    token_hash,
                    now,
                    now,
                    ip_address,
                    user_agent,
                    user_id,
                ),
            )
            await conn.commit()
        return SessionRecord(
            id=session_id,
            user_id=user_id,
            token=token_hash,
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def fetch_session_by_token(self, token_hash: str) -> Optional[SessionRecord]:
        """Retrieve a session by its hashed token value."""
        row = await self.fetch_one(
            f"SELECT {_SESSION_COLUMNS} FROM session WHERE token = ?",
            (token_hash,),
        )
        return SessionRecord(**row) if row else None

    async def refresh_session(
        self, session_id: str, *, expires_at: str, updated_at: str
    ) -> None:
        """Push the expiry of a session forward (sliding expiry)."""
        await self.execute(
            "UPDATE session SET expires_at = ?, updated_at = ? WHERE id = ?",
            (expires_at, updated_at, session_id),
        )

    async def delete_session(self, session_id: str) -> None:
        await self.execute("DELETE FROM session WHERE id = ?", (session_id,))

    async def delete_session_by_token(self, token_hash: str) -> bool:
        return await self.execute(
            "DELETE FROM session WHERE token = ?", (token_hash,)
        ) > 0

    # ------------------------------------------------------------------
    # Pictures
    # ------------------------------------------------------------------
    async def create_picture(
        self,
        *,
        user_id: int,
        user_name: str,
        title: str,
        contents: str,
        image_path: str,
    ) -> PictureRecord:
        """Insert picture metadata and return the constructed dataclass."""
        created_at = to_iso(utc_now())
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO picture (user_id, user_name, title, contents, image_path, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (user_id, user_name, title, contents, image_path, created_at),
            )
            await conn.commit()
            lastrowid = cursor.lastrowid
        if lastrowid is None:
            raise RuntimeError("Failed to read the inserted picture ID.")
        return PictureRecord(
            id=int(lastrowid),
            user_id=user_id,
            user_name=user_name,
            title=title,
            contents=contents,
            image_path=image_path,
            created_at=created_at,
        )

    async def fetch_picture(self, picture_id: int) -> Optional[PictureRecord]:
        row = await self.fetch_one(
            f"SELECT {_PICTURE_COLUMNS} FROM picture WHERE id = ?",
            (picture_id,),
        )
        return PictureRecord(**row) if row else None

    async def list_pictures(self, user_id: Optional[int] = None) -> List[PictureRecord]:
        """Return pictures newest first; equal timestamps keep insertion order."""
        if user_id is None:
            rows = await self.fetch_all(
                f"SELECT {_PICTURE_COLUMNS} FROM picture ORDER BY created_at DESC, id ASC"
            )
        else:
            rows = await self.fetch_all(
                f"""
                SELECT {_PICTURE_COLUMNS} FROM picture
                WHERE user_id = ?
                ORDER BY created_at DESC, id ASC
                """,
                (user_id,),
            )
        return [PictureRecord(**row) for row in rows]

    async def delete_picture(self, picture_id: int) -> bool:
        return await self.execute(
            "DELETE FROM picture WHERE id = ?", (picture_id,)
        ) > 0

    async def list_image_paths(self) -> Set[str]:
        rows = await self.fetch_all("SELECT image_path FROM picture")
        return {str(row["image_path"]) for row in rows}
