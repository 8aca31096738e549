"""
Media Service

Validation, re-encoding and storage of chat photos and voice notes.
Images are decoded and re-encoded in a worker thread so one request holds at
most one decoded image in memory.
"""

import asyncio
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from kindred.core.config import settings
from kindred.core.errors import UnavailableError, ValidationError
from kindred.core.logging import get_logger
from kindred.infra.storage import MediaStorage, new_media_key

logger = get_logger(__name__)

PHOTO_MIME_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}
VOICE_MIME_TYPES = {
    "audio/mpeg": "mp3",
    "audio/mp4": "mp4",
    "audio/x-m4a": "m4a",
    "audio/m4a": "m4a",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
}

PHOTO_QUALITY = 85
THUMBNAIL_QUALITY = 70


@dataclass
class ProcessedImage:
    data: bytes
    thumbnail: bytes
    width: int
    height: int


def validate_photo(size: int, mime: Optional[str], max_bytes: Optional[int] = None) -> None:
    max_bytes = max_bytes if max_bytes is not None else settings.photo_max_bytes
    if size <= 0:
        raise ValidationError("Photo is empty")
    if size > max_bytes:
        raise ValidationError(f"Photo exceeds {max_bytes // (1024 * 1024)} MB limit")
    if (mime or "").lower() not in PHOTO_MIME_TYPES:
        raise ValidationError("Only JPEG, PNG and WebP photos are supported")


def validate_voice(size: int, mime: Optional[str], duration: float, max_seconds: Optional[float] = None) -> None:
    max_seconds = max_seconds if max_seconds is not None else settings.voice_max_seconds
    if size <= 0:
        raise ValidationError("Voice note is empty")
    if duration <= 0:
        raise ValidationError("Voice note duration is required")
    if duration > max_seconds:
        raise ValidationError(f"Voice note exceeds {max_seconds:g} seconds")
    if (mime or "").lower() not in VOICE_MIME_TYPES:
        raise ValidationError("Unsupported audio format")


def process_image(data: bytes, max_dimension: int, thumbnail_size: int) -> ProcessedImage:
    """Fit inside max_dimension (never enlarge) and cut a square center thumbnail"""
    try:
        with Image.open(BytesIO(data)) as source:
            # JPEG decodes straight at a reduced scale; other formats ignore the request
            bound = max(max_dimension, thumbnail_size)
            source.draft(None, (bound, bound))
            ImageOps.exif_transpose(source, in_place=True)
            image = source if source.mode in ("RGB", "L") else source.convert("RGB")

            thumb = ImageOps.fit(image, (thumbnail_size, thumbnail_size))
            thumb_out = BytesIO()
            thumb.save(thumb_out, format="JPEG", quality=THUMBNAIL_QUALITY)

            image.thumbnail((max_dimension, max_dimension))
            out = BytesIO()
            image.save(out, format="JPEG", quality=PHOTO_QUALITY, optimize=True)

            return ProcessedImage(
                data=out.getvalue(),
                thumbnail=thumb_out.getvalue(),
                width=image.width,
                height=image.height,
            )
    except Image.DecompressionBombError as e:
        raise ValidationError("Photo dimensions are too large") from e
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError("Photo could not be decoded") from e


class MediaService:
    def __init__(self, storage: MediaStorage):
        self.storage = storage

    async def store_photo(self, data: bytes, mime: str, prefix: str) -> dict[str, Any]:
        validate_photo(len(data), mime)
        processed = await asyncio.to_thread(
            process_image, data, settings.photo_max_dimension, settings.thumbnail_size
        )
        try:
            url = await self.storage.put(new_media_key(f"{prefix}/photos", "jpg"), processed.data, "image/jpeg")
            thumbnail_url = await self.storage.put(
                new_media_key(f"{prefix}/thumbnails", "jpg"), processed.thumbnail, "image/jpeg"
            )
        except (OSError, ValueError) as e:
            logger.error(f"Photo upload failed: {e}")
            raise UnavailableError("Photo upload failed") from e

        return {
            "url": url,
            "thumbnailUrl": thumbnail_url,
            "size": len(processed.data),
            "mime": "image/jpeg",
            "width": processed.width,
            "height": processed.height,
        }

    async def store_voice(
        self, data: bytes, mime: str, duration: float, prefix: str, max_seconds: Optional[float] = None
    ) -> dict[str, Any]:
        validate_voice(len(data), mime, duration, max_seconds)
        extension = VOICE_MIME_TYPES[mime.lower()]
        try:
            url = await self.storage.put(new_media_key(f"{prefix}/voice", extension), data, mime)
        except (OSError, ValueError) as e:
            logger.error(f"Voice upload failed: {e}")
            raise UnavailableError("Voice upload failed") from e

        return {
            "url": url,
            "duration": duration,
            "size": len(data),
            "mime": mime.lower(),
        }

    async def release(self, media: Optional[dict[str, Any]]) -> None:
        """Delete every blob referenced by a media descriptor; safe to repeat"""
        if not media:
            return
        for field in ("url", "thumbnailUrl"):
            key = self.storage.key_from_url(media.get(field) or "")
            if key is None:
                continue
            try:
                await self.storage.delete(key)
            except OSError as e:
                logger.warning(f"Failed to release media {key}: {e}")
