"""
Uploaded product images, stored under the uploads directory by content hash.
"""

from __future__ import annotations
import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Iterable, Optional

from errors import ValidationError

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png"}
ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/jpg", "image/png"}


@dataclass
class ImageUpload:
    filename: str
    content_type: Optional[str]
    data: bytes

    @property
    def extension(self) -> str:
        return PurePosixPath(self.filename or "").suffix.lower()


@dataclass
class StoredImage:
    url: str
    created: bool


class ImageStore:
    def __init__(self, uploads_dir: Path, url_prefix: str = "/uploads", max_bytes: int = 5 * 1024 * 1024):
        self.uploads_dir = Path(uploads_dir)
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        self.url_prefix = url_prefix.rstrip("/")
        self.max_bytes = max_bytes

    def validate(self, upload: ImageUpload) -> None:
        if upload.extension not in ALLOWED_EXTENSIONS:
            raise ValidationError("Only jpg, jpeg, and png files are allowed", field="image")
        if upload.content_type and upload.content_type.lower() not in ALLOWED_CONTENT_TYPES:
            raise ValidationError("Only jpg, jpeg, and png files are allowed", field="image")
        if not upload.data:
            raise ValidationError("Image file is empty", field="image")
        if len(upload.data) > self.max_bytes:
            raise ValidationError(
                f"Image exceeds the {self.max_bytes // (1024 * 1024)}MB limit", field="image"
            )

    def url_for(self, filename: str) -> str:
        return f"{self.url_prefix}/{filename}"

    def path_for(self, url: str) -> Path:
        # only the basename is trusted, so stored URLs cannot escape the uploads dir
        return self.uploads_dir / PurePosixPath(url).name

    def save(self, upload: ImageUpload) -> StoredImage:
        """Store the image, reusing an existing file with identical content."""
        digest = hashlib.sha256(upload.data).hexdigest()
        for existing in sorted(self.uploads_dir.glob(f"{digest}.*")):
            logger.info(f"Reusing stored image {existing.name}")
            return StoredImage(url=self.url_for(existing.name), created=False)
        ext = ".jpg" if upload.extension == ".jpeg" else upload.extension
        target = self.uploads_dir / f"{digest}{ext}"
        target.write_bytes(upload.data)
        logger.info(f"Stored image {target.name} ({len(upload.data)} bytes)")
        return StoredImage(url=self.url_for(target.name), created=True)

    def discard(self, url: Optional[str], records: Iterable[dict[str, Any]]) -> bool:
        """Best-effort removal of an image no remaining record references."""
        if not url or not url.startswith(self.url_prefix + "/"):
            return False
        if any(r.get("imageUrl") == url for r in records):
            return False
        path = self.path_for(url)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Could not delete image {path.name}: {e}")
            return False
        logger.info(f"Deleted unreferenced image {path.name}")
        return True
