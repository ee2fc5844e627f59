"""
Image inliner for multimodal chat turns.

Turns an image reference into an ``ImagePart`` the upstream can consume:

- ``data:image/*`` URIs pass through unchanged
- http(s) URLs pointing at this server's upload path are read from disk
  and inlined
- other http(s) URLs pass through; the upstream fetches them itself
- relative upload paths (``/uploads/<name>``) are read from disk and inlined

Inlining a local file auto-rotates it by its EXIF orientation, shrinks it to
fit the configured bound (never upscaling), re-encodes as JPEG and wraps the
result as ``data:image/jpeg;base64,...``.

Failures are per image: the reference is logged and dropped, the request
carries on with the remaining images.
"""

import asyncio
import base64
import io
import logging
import re
from pathlib import Path
from typing import List, Optional, Sequence
from urllib.parse import unquote, urlsplit

from PIL import Image, ImageOps, UnidentifiedImageError

from chatproxy.core.errors import ImageProcessingError
from chatproxy.core.metrics import record_image
from chatproxy.models.schemas import ImagePart
from chatproxy.services.upload_store import UploadStore

logger = logging.getLogger(__name__)

_HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)


class ImageInliner:
    """Resolves image references to bounded inline payloads.

    Usage:
        inliner = ImageInliner(upload_store)
        part = await inliner.inline("/uploads/1718000000000-abc-cat.png")
        parts = await inliner.inline_many(refs)
    """

    def __init__(
        self,
        upload_store: UploadStore,
        max_dimension: int = 1280,
        jpeg_quality: int = 80,
        max_images: int = 6,
        public_base_url: Optional[str] = None,
    ) -> None:
        self.upload_store = upload_store
        self.max_dimension = max_dimension
        self.jpeg_quality = jpeg_quality
        self.max_images = max_images
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

        prefix = re.escape(upload_store.url_path.rstrip("/"))
        self._upload_path = re.compile(rf"{prefix}/([^?#]+)")

    # ------------------------------------------------------------------
    # Reference resolution
    # ------------------------------------------------------------------

    def _upload_name_from_url(self, url: str) -> Optional[str]:
        """Return the upload filename if ``url`` points at a file we host."""
        parts = urlsplit(url)
        if self.public_base_url:
            own = urlsplit(self.public_base_url)
            if parts.netloc.lower() != own.netloc.lower():
                return None

        match = self._upload_path.match(parts.path)
        if match is None:
            return None
        return unquote(match.group(1))

    def _upload_name_from_path(self, ref: str) -> Optional[str]:
        match = self._upload_path.match(ref if ref.startswith("/") else f"/{ref}")
        if match is None:
            return None
        return unquote(match.group(1))

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def encode_file(self, path: Path) -> str:
        """Load, orient, shrink and JPEG-encode an image file as a data URI.

        Raises:
            ImageProcessingError: If the file is missing or not a readable image
        """
        try:
            with Image.open(path) as image:
                image = ImageOps.exif_transpose(image)
                if image.mode != "RGB":
                    image = image.convert("RGB")
                # thumbnail() keeps aspect ratio and never enlarges
                image.thumbnail(
                    (self.max_dimension, self.max_dimension),
                    Image.Resampling.LANCZOS,
                )
                buf = io.BytesIO()
                image.save(buf, format="JPEG", quality=self.jpeg_quality)
        except (OSError, UnidentifiedImageError, ValueError) as e:
            raise ImageProcessingError(f"Failed to inline image {path.name}: {e}") from e

        encoded = base64.b64encode(buf.getvalue()).decode("ascii")
        return f"data:image/jpeg;base64,{encoded}"

    async def _inline_upload(self, name: str) -> ImagePart:
        path = self.upload_store.resolve(name)
        if path is None:
            raise ImageProcessingError(f"Upload reference escapes upload directory: {name}")
        data_url = await asyncio.to_thread(self.encode_file, path)
        return ImagePart.from_url(data_url)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def inline(self, ref: str) -> Optional[ImagePart]:
        """Resolve a single reference. Returns None if it cannot be used."""
        if not isinstance(ref, str) or not ref.strip():
            return None
        ref = ref.strip()

        try:
            if ref.startswith("data:image/"):
                record_image("passthrough")
                return ImagePart.from_url(ref)

            if _HTTP_URL.match(ref):
                name = self._upload_name_from_url(ref)
                if name is None:
                    record_image("passthrough")
                    return ImagePart.from_url(ref)
                part = await self._inline_upload(name)
                record_image("inlined")
                return part

            name = self._upload_name_from_path(ref)
            if name is not None:
                part = await self._inline_upload(name)
                record_image("inlined")
                return part
        except ImageProcessingError as e:
            logger.warning(f"Image processing failed: {e.message}")
            record_image("failed")
            return None

        logger.warning(f"Unsupported image reference dropped: {ref[:100]!r}")
        record_image("failed")
        return None

    async def inline_many(self, refs: Sequence[str]) -> List[ImagePart]:
        """Inline up to ``max_images`` references concurrently, in input order."""
        limited = list(refs[: self.max_images])
        record_image("dropped", len(refs) - len(limited))
        if not limited:
            return []

        results = await asyncio.gather(*(self.inline(ref) for ref in limited))
        return [part for part in results if part is not None]
