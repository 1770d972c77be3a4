"""
Amora — Profile Photo Service

Stores photo blobs in Cloud Storage (``users/{uid}/photos/{id}.jpg``) and a
matching ``users/{uid}/photos/{id}`` document, and maintains the profile's
main-photo pointer (``mainPhotoId`` + ``photoURL``).

The GCS client is synchronous; blob calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Optional

import structlog

from app.exceptions import InvalidInputError, NotFoundError
from app.models import PHOTOS, USERS
from app.models.profile import Photo
from app.store import SERVER_TIMESTAMP, DocumentStore, Query, Transaction, join_path
from app.utils import storage

logger = structlog.get_logger("amora.photo_service")

MAX_PHOTO_BYTES = 10 * 1024 * 1024
ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp", "image/heic"}


def cache_busted(url: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}t={int(time.time() * 1000)}"


class PhotoService:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def list_photos(self, uid: str) -> list[Photo]:
        docs = await self.store.query(
            Query(join_path(USERS, uid, PHOTOS)).order("order")
        )
        return [Photo.from_snapshot(d) for d in docs]

    async def upload_photo(
        self,
        uid: str,
        data: bytes,
        content_type: str = "image/jpeg",
        make_main: bool = False,
        width: int = 0,
        height: int = 0,
    ) -> Photo:
        """Upload a photo, record it, and optionally make it the main photo."""
        if not uid:
            raise InvalidInputError("uid is required")
        if not data:
            raise InvalidInputError("Photo is empty")
        if len(data) > MAX_PHOTO_BYTES:
            raise InvalidInputError(
                "Photo is too large", details={"max_bytes": MAX_PHOTO_BYTES, "size": len(data)}
            )
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise InvalidInputError("Unsupported photo type", details={"content_type": content_type})

        photo_id = str(uuid.uuid4())
        path = storage.photo_path(uid, photo_id)
        log = logger.bind(uid=uid, photo_id=photo_id)

        url = await asyncio.to_thread(storage.upload_file, path, data, content_type)
        photo = Photo(
            id=photo_id,
            url=url,
            storage_path=path,
            width=width,
            height=height,
            is_main=make_main,
            order=int(time.time() * 1000),
        )
        await self.store.set(
            join_path(USERS, uid, PHOTOS, photo_id),
            {**photo.to_document(), "uploadedAt": SERVER_TIMESTAMP},
        )
        log.info("photo_uploaded", size=len(data), make_main=make_main)

        if make_main:
            await self.set_main_photo(uid, photo_id)
        return photo

    async def set_main_photo(self, uid: str, photo_id: str) -> str:
        """Make ``photo_id`` the only main photo; returns the new photoURL."""
        photo_path = join_path(USERS, uid, PHOTOS, photo_id)
        current_mains = await self.store.query(
            Query(join_path(USERS, uid, PHOTOS)).where("isMain", "==", True)
        )

        async def _set_main(tx: Transaction) -> str:
            snap = await tx.get(photo_path)
            if not snap.exists:
                raise NotFoundError("Photo", photo_id)
            url = cache_busted(snap.get("url") or "")
            for doc in current_mains:
                if doc.id != photo_id:
                    tx.set(doc.path, {"isMain": False}, merge=True)
            tx.set(photo_path, {"isMain": True}, merge=True)
            tx.set(
                join_path(USERS, uid),
                {"photoURL": url, "mainPhotoId": photo_id, "updatedAt": SERVER_TIMESTAMP},
                merge=True,
            )
            return url

        url = await self.store.run_transaction(_set_main)
        logger.info("main_photo_set", uid=uid, photo_id=photo_id, unset=len(current_mains))
        return url

    async def delete_photo(self, uid: str, photo_id: str) -> None:
        """Delete the blob and the photo document; clears the main pointer."""
        photo_path = join_path(USERS, uid, PHOTOS, photo_id)
        snap = await self.store.get(photo_path)
        if not snap.exists:
            raise NotFoundError("Photo", photo_id)
        storage_path: Optional[str] = snap.get("storagePath") or storage.photo_path(uid, photo_id)
        await asyncio.to_thread(storage.delete_file, storage_path)

        user_path = join_path(USERS, uid)

        async def _delete(tx: Transaction) -> bool:
            user = await tx.get(user_path)
            was_main = user.exists and user.get("mainPhotoId") == photo_id
            tx.delete(photo_path)
            if was_main:
                tx.set(
                    user_path,
                    {"mainPhotoId": None, "photoURL": None, "updatedAt": SERVER_TIMESTAMP},
                    merge=True,
                )
            return was_main

        was_main = await self.store.run_transaction(_delete)
        logger.info("photo_deleted", uid=uid, photo_id=photo_id, was_main=was_main)
