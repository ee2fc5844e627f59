"""
Image upload storage.

Uploaded images are written to a server-controlled directory under
collision-resistant generated names and served back from ``url_path``.
The image inliner resolves those names back to local files.
"""

import logging
import re
import secrets
import string
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from chatproxy.core.errors import UploadRejected

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase
_UNSAFE_STEM_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_SAFE_EXTENSION = re.compile(r"^\.[a-zA-Z0-9]{1,10}$")


@dataclass
class IncomingFile:
    """An uploaded file fully read into memory."""

    filename: str
    content_type: str
    data: bytes


def generate_filename(original: str) -> str:
    """``<epoch-ms>-<random base36>-<sanitized stem><ext>``."""
    original_path = Path(original or "")
    ext = original_path.suffix if _SAFE_EXTENSION.match(original_path.suffix) else ""
    stem = _UNSAFE_STEM_CHARS.sub("", original_path.stem)
    rand = "".join(secrets.choice(_BASE36) for _ in range(11))
    return f"{int(time.time() * 1000)}-{rand}-{stem}{ext.lower()}"


class UploadStore:
    """Stores uploaded images and maps their names back to files."""

    def __init__(
        self,
        directory: str,
        url_path: str = "/uploads",
        max_files: int = 10,
        max_file_size: int = 5 * 1024 * 1024,
    ) -> None:
        self.directory = Path(directory).resolve()
        self.url_path = "/" + url_path.strip("/")
        self.max_files = max_files
        self.max_file_size = max_file_size
        self.directory.mkdir(parents=True, exist_ok=True)

    def validate(self, files: Sequence[IncomingFile]) -> None:
        """Reject the whole batch if any file breaks a limit.

        Raises:
            UploadRejected: 400 for no files / too many files, 415 for a
                non-image MIME type, 413 for an oversize file
        """
        if not files:
            raise UploadRejected("No files uploaded")
        if len(files) > self.max_files:
            raise UploadRejected(f"Too many files: at most {self.max_files} images per upload")

        for f in files:
            if not (f.content_type or "").lower().startswith("image/"):
                raise UploadRejected("Only image files are supported", status_code=415)
            if len(f.data) > self.max_file_size:
                raise UploadRejected(
                    f"File too large: {f.filename} exceeds {self.max_file_size // (1024 * 1024)}MB",
                    status_code=413,
                )

    def save(self, files: Sequence[IncomingFile]) -> List[str]:
        """Validate then write all files; returns the stored filenames."""
        self.validate(files)

        names: List[str] = []
        for f in files:
            name = generate_filename(f.filename)
            (self.directory / name).write_bytes(f.data)
            names.append(name)
        logger.info(f"Stored {len(names)} uploaded image(s)")
        return names

    def public_url(self, name: str, base_url: str) -> str:
        return f"{base_url.rstrip('/')}{self.url_path}/{name}"

    def resolve(self, name: str) -> Optional[Path]:
        """Map an upload name to its path, or None if it escapes the directory."""
        candidate = (self.directory / name).resolve()
        if candidate.parent != self.directory:
            return None
        return candidate
