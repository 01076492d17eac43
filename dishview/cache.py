"""Extraction cache - skips repeat extraction calls for an unchanged set of menu photos."""

from __future__ import annotations

import hashlib
import io
import logging
from typing import Callable, Optional, Sequence

from PIL import Image

from dishview.models import ImageSetFingerprint, MenuExtractionResult

logger = logging.getLogger(__name__)

FINGERPRINT_THUMBNAIL_SIZE = (256, 256)
FINGERPRINT_JPEG_QUALITY = 10

CachedExtraction = tuple[ImageSetFingerprint, MenuExtractionResult]


def image_digest(image_bytes: bytes) -> str:
    """
    Cheap, lossy content hash of one photo: a low-quality JPEG re-encoding of a
    thumbnail, digested with MD5. It is a change signal only.
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img = img.convert("RGB")
        img.thumbnail(FINGERPRINT_THUMBNAIL_SIZE)
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=FINGERPRINT_JPEG_QUALITY)
        payload = buf.getvalue()
    except Exception:
        # Not a decodable image, digest the raw bytes instead
        payload = image_bytes
    return hashlib.md5(payload).hexdigest()


def fingerprint_images(images: Sequence[bytes]) -> ImageSetFingerprint:
    return ImageSetFingerprint(
        count=len(images),
        content_digests=tuple(image_digest(image) for image in images),
    )


def should_reextract(
    current_images: Sequence[bytes], cached: Optional[CachedExtraction]
) -> bool:
    """
    True when a fresh extraction call is needed: nothing cached, a different
    number of photos, or any photo whose digest differs at the same index.
    """
    if cached is None:
        return True

    cached_fingerprint, _ = cached
    if len(current_images) != cached_fingerprint.count:
        return True

    return fingerprint_images(current_images) != cached_fingerprint


class ExtractionCache:
    """Holds the last extraction result together with the fingerprint of its photos."""

    def __init__(self) -> None:
        self._entry: Optional[CachedExtraction] = None

    @property
    def cached(self) -> Optional[CachedExtraction]:
        return self._entry

    def invalidate(self) -> None:
        self._entry = None

    def get_or_extract(
        self,
        images: Sequence[bytes],
        extractor: Callable[[Sequence[bytes]], MenuExtractionResult],
        force: bool = False,
    ) -> CachedExtraction:
        """
        Returns (fingerprint, result), calling the extractor only when the photos
        changed or force is set. A failing extractor leaves the cache untouched.
        """
        if not force and not should_reextract(images, self._entry):
            logger.info("Menu images unchanged, reusing cached extraction")
            return self._entry

        if force:
            logger.info("Re-extraction requested, ignoring cached result")
        else:
            logger.info("No cached extraction for current images, extracting")

        fingerprint = fingerprint_images(images)
        result = extractor(images)
        self._entry = (fingerprint, result)
        return self._entry
