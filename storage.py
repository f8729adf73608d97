"""Object storage for uploaded image bytes.

Two backends share the same small interface (``put``/``get``/``delete``/
``list_keys``): Backblaze B2 for deployments and a local directory for
development and tests. Calls are blocking; async callers run them in a thread.
"""
from __future__ import annotations

import io
import json
import logging
import os
import secrets
import string
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from b2sdk.v2 import B2Api, InMemoryAccountInfo
from b2sdk.v2.exception import FileNotPresent

from config import Settings

logger = logging.getLogger(__name__)

CONTENT_TYPE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
}

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
_SUFFIX_LENGTH = 11


@dataclass(frozen=True)
class StoredObject:
    data: bytes
    content_type: Optional[str]


def _basename(filename: str) -> str:
    return filename.replace("\\", "/").rsplit("/", 1)[-1]


def extension_for(filename: str, content_type: str) -> str:
    """Take the last dot-segment of the filename, or derive one from the type."""
    _, dot, ext = _basename(filename).rpartition(".")
    if dot and ext:
        return ext
    return CONTENT_TYPE_EXTENSIONS.get(content_type, "bin")


def generate_storage_key(
    filename: str, content_type: str, *, now_ms: Optional[int] = None
) -> str:
    """Build ``<epoch-ms>-<random>.<ext>`` for a new blob."""
    timestamp = now_ms if now_ms is not None else time.time_ns() // 1_000_000
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(_SUFFIX_LENGTH))
    return f"{timestamp}-{suffix}.{extension_for(filename, content_type)}"


class LocalObjectStore:
    """Blobs as files in a directory, content types in ``.meta`` sidecars."""

    META_DIR = ".meta"

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / self.META_DIR).mkdir(exist_ok=True)

    @staticmethod
    def _valid_key(key: str) -> bool:
        return bool(key) and "/" not in key and "\\" not in key and not key.startswith(".")

    def _paths(self, key: str) -> tuple[Path, Path]:
        return self.root / key, self.root / self.META_DIR / f"{key}.json"

    def _write_atomic(self, target: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.remove(tmp_name)
            raise

    def put(self, key: str, data: bytes, content_type: str) -> None:
        if not self._valid_key(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        blob_path, meta_path = self._paths(key)
        self._write_atomic(blob_path, data)
        self._write_atomic(
            meta_path, json.dumps({"content_type": content_type}).encode("utf-8")
        )

    def get(self, key: str) -> Optional[StoredObject]:
        if not self._valid_key(key):
            return None
        blob_path, meta_path = self._paths(key)
        if not blob_path.is_file():
            return None
        content_type = None
        if meta_path.is_file():
            try:
                content_type = json.loads(meta_path.read_text("utf-8")).get("content_type")
            except (ValueError, AttributeError):
                logger.warning("unreadable blob metadata key=%s", key)
        return StoredObject(data=blob_path.read_bytes(), content_type=content_type)

    def delete(self, key: str) -> bool:
        if not self._valid_key(key):
            return False
        blob_path, meta_path = self._paths(key)
        existed = blob_path.is_file()
        blob_path.unlink(missing_ok=True)
        meta_path.unlink(missing_ok=True)
        return existed

    def list_keys(self) -> Iterator[str]:
        for path in sorted(self.root.iterdir()):
            if path.is_file() and self._valid_key(path.name):
                yield path.name


class B2ObjectStore:
    """Backblaze B2 bucket wrapper."""

    def __init__(self, bucket) -> None:
        self.bucket = bucket

    @classmethod
    def from_credentials(
        cls, key_id: str, app_key: str, bucket_name: str
    ) -> "B2ObjectStore":
        info = InMemoryAccountInfo()
        b2_api = B2Api(info)
        b2_api.authorize_account("production", key_id, app_key)
        return cls(b2_api.get_bucket_by_name(bucket_name))

    def put(self, key: str, data: bytes, content_type: str) -> None:
        self.bucket.upload_bytes(data, key, content_type=content_type)

    def get(self, key: str) -> Optional[StoredObject]:
        try:
            downloaded = self.bucket.download_file_by_name(key)
        except FileNotPresent:
            return None
        buffer = io.BytesIO()
        downloaded.save(buffer)
        return StoredObject(
            data=buffer.getvalue(),
            content_type=downloaded.download_version.content_type,
        )

    def delete(self, key: str) -> bool:
        try:
            file_version = self.bucket.get_file_info_by_name(key)
        except FileNotPresent:
            return False
        self.bucket.delete_file_version(file_version.id_, key)
        return True

    def list_keys(self) -> Iterator[str]:
        for file_version, _ in self.bucket.ls(recursive=True):
            yield file_version.file_name


def build_object_store(settings: Settings):
    """Pick B2 when credentials are configured, otherwise the local directory."""
    if settings.uses_b2:
        logger.info("object store backend=b2 bucket=%s", settings.b2_bucket_name)
        return B2ObjectStore.from_credentials(
            settings.b2_key_id, settings.b2_app_key, settings.b2_bucket_name
        )
    logger.info("object store backend=local root=%s", settings.storage_dir)
    return LocalObjectStore(settings.storage_dir)
