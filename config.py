from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_DB_PATH = BASE_DIR / "data" / "gallery.db"
DEFAULT_STORAGE_DIR = BASE_DIR / "data" / "images"
DEFAULT_BASE_URL = "http://localhost:8080"
DEFAULT_IP_HEADERS = ("cf-connecting-ip", "x-real-ip", "x-forwarded-for")


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _load_secret_key() -> str:
    """Use AUTH_SECRET when set, otherwise generate a throwaway secret."""
    secret = os.getenv("AUTH_SECRET")
    if secret:
        return secret
    logger.warning(
        "Using a randomly generated signing secret. Sessions will break when "
        "the process restarts. Set AUTH_SECRET to a fixed value."
    )
    return secrets.token_urlsafe(32)


def _parse_ip_headers(raw: Optional[str]) -> Tuple[str, ...]:
    if raw is None:
        return DEFAULT_IP_HEADERS
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    db_path: Path
    auth_secret: str
    base_url: str
    storage_dir: Path
    b2_key_id: Optional[str] = None
    b2_app_key: Optional[str] = None
    b2_bucket_name: Optional[str] = None
    secure_cookies: bool = False
    log_level: str = "INFO"
    ip_headers: Tuple[str, ...] = DEFAULT_IP_HEADERS

    @property
    def uses_b2(self) -> bool:
        return bool(self.b2_key_id and self.b2_app_key and self.b2_bucket_name)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (and a local .env file)."""
        load_dotenv()
        db_path = os.getenv("GALLERY_DB_PATH")
        storage_dir = os.getenv("GALLERY_STORAGE_DIR")
        return cls(
            db_path=Path(db_path) if db_path else DEFAULT_DB_PATH,
            auth_secret=_load_secret_key(),
            base_url=(os.getenv("BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
            storage_dir=Path(storage_dir) if storage_dir else DEFAULT_STORAGE_DIR,
            b2_key_id=os.getenv("KEY_ID") or None,
            b2_app_key=os.getenv("APP_KEY") or None,
            b2_bucket_name=os.getenv("BUCKET_NAME") or None,
            secure_cookies=_env_flag(os.getenv("GALLERY_SECURE_COOKIES")),
            log_level=(os.getenv("GALLERY_LOG_LEVEL") or "INFO").upper(),
            ip_headers=_parse_ip_headers(os.getenv("GALLERY_TRUSTED_IP_HEADERS")),
        )
