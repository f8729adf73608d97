"""Picture upload, listing and deletion.

Upload writes the blob before the metadata row and delete removes the blob
before the row, so a failure part-way leaves an unreferenced blob rather than
a row pointing at nothing.
"""
from __future__ import annotations

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from typing import List, Optional

from database import Database, PictureRecord, UserRecord
from errors import Forbidden, NotFound, StorageFailed, ValidationFailed
from storage import CONTENT_TYPE_EXTENSIONS, StoredObject, generate_storage_key

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 1_572_864  # 1.5 MiB
ALLOWED_CONTENT_TYPES = frozenset(CONTENT_TYPE_EXTENSIONS)
DEFAULT_IMAGE_CONTENT_TYPE = "image/jpeg"

mimetypes.add_type("image/webp", ".webp")


def normalize_content_type(content_type: str, filename: str) -> str:
    candidate = (content_type or "").split(";")[0].strip().lower()
    if candidate.startswith("image/"):
        return candidate
    guessed, _ = mimetypes.guess_type(filename)
    if guessed and guessed.startswith("image/"):
        return guessed
    return "application/octet-stream"


@dataclass(frozen=True)
class UploadForm:
    title: str
    contents: str
    image_bytes: Optional[bytes]
    content_type: str
    filename: str

    @classmethod
    def build(
        cls,
        *,
        title: Optional[str],
        contents: Optional[str],
        image_bytes: Optional[bytes],
        filename: Optional[str],
        content_type: Optional[str] = None,
    ) -> "UploadForm":
        """Normalize raw form fields; call ``validate`` before using the form."""
        name = filename or ""
        return cls(
            title=(title or "").strip(),
            contents=contents or "",
            image_bytes=image_bytes or None,
            content_type=normalize_content_type(content_type or "", name),
            filename=name,
        )

    @property
    def size(self) -> int:
        return len(self.image_bytes or b"")

    def validate(self) -> None:
        if not self.title or not self.image_bytes:
            raise ValidationFailed("A title and an image are required.")
        if self.size > MAX_IMAGE_BYTES:
            raise ValidationFailed("Images must be 1.5 MB or smaller.")
        if self.content_type not in ALLOWED_CONTENT_TYPES:
            raise ValidationFailed("Only PNG, JPEG, GIF and WebP images are accepted.")


class Gallery:
    def __init__(self, db: Database, store) -> None:
        self.db = db
        self.store = store

    async def list_all(self) -> List[PictureRecord]:
        return await self.db.list_pictures()

    async def list_by_user(self, user_id: int) -> List[PictureRecord]:
        return await self.db.list_pictures(user_id)

    async def list_mine(self, caller: UserRecord) -> List[PictureRecord]:
        return await self.db.list_pictures(caller.id)

    async def get_detail(self, picture_id: int) -> PictureRecord:
        picture = await self.db.fetch_picture(picture_id)
        if picture is None:
            raise NotFound("Picture not found.")
        return picture

    async def upload(self, caller: UserRecord, form: UploadForm) -> PictureRecord:
        """Store the image, then record it under the caller's current name."""
        try:
            form.validate()
        except ValidationFailed as exc:
            logger.warning(
                "upload rejected user_id=%s filename=%s bytes=%s reason=%s",
                caller.id,
                form.filename,
                form.size,
                exc.message,
            )
            raise
        key = generate_storage_key(form.filename, form.content_type)
        logger.info(
            "upload started user_id=%s key=%s bytes=%s content_type=%s",
            caller.id,
            key,
            form.size,
            form.content_type,
        )
        try:
            await asyncio.to_thread(
                self.store.put, key, form.image_bytes, form.content_type
            )
        except Exception as exc:
            logger.exception("upload failed user_id=%s key=%s reason=storage", caller.id, key)
            raise StorageFailed("Upload failed.") from exc
        try:
            picture = await self.db.create_picture(
                user_id=caller.id,
                user_name=caller.name,
                title=form.title,
                contents=form.contents,
                image_path=key,
            )
        except Exception as exc:
            # The blob stays behind; sweep_orphans can reclaim it.
            logger.exception("upload failed user_id=%s key=%s reason=db_error", caller.id, key)
            raise StorageFailed("Upload failed.") from exc
        logger.info(
            "upload completed user_id=%s picture_id=%s key=%s",
            caller.id,
            picture.id,
            key,
        )
        return picture

    async def delete(self, caller: UserRecord, picture_id: int) -> None:
        picture = await self.db.fetch_picture(picture_id)
        if picture is None:
            logger.warning(
                "delete rejected user_id=%s picture_id=%s reason=not_found",
                caller.id,
                picture_id,
            )
            raise NotFound("Picture not found.")
        if picture.user_id != caller.id:
            logger.warning(
                "delete rejected user_id=%s picture_id=%s owner_id=%s reason=forbidden",
                caller.id,
                picture_id,
                picture.user_id,
            )
            raise Forbidden("You can only delete your own pictures.")
        try:
            await asyncio.to_thread(self.store.delete, picture.image_path)
        except Exception:
            logger.exception(
                "blob delete failed picture_id=%s key=%s",
                picture_id,
                picture.image_path,
            )
        await self.db.delete_picture(picture_id)
        logger.info("delete completed user_id=%s picture_id=%s", caller.id, picture_id)

    async def fetch_image(self, key: str) -> StoredObject:
        """Read a blob by key. No ownership check: knowing the key is enough."""
        try:
            stored = await asyncio.to_thread(self.store.get, key)
        except Exception as exc:
            logger.exception("image fetch failed key=%s", key)
            raise StorageFailed("Failed to fetch image.") from exc
        if stored is None:
            raise NotFound("Image not found.")
        return stored

    async def sweep_orphans(self, *, dry_run: bool = True) -> List[str]:
        """Find (and unless ``dry_run``, delete) blobs no picture references.

        An upload stores its blob before inserting the row, so run this while
        uploads are paused or a fresh blob may be reported as an orphan.
        """
        referenced = await self.db.list_image_paths()
        keys = await asyncio.to_thread(lambda: list(self.store.list_keys()))
        orphans = [key for key in keys if key not in referenced]
        for key in orphans:
            if dry_run:
                logger.info("orphan found key=%s", key)
                continue
            await asyncio.to_thread(self.store.delete, key)
            logger.info("orphan deleted key=%s", key)
        return orphans
