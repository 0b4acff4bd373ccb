"""
Local filesystem storage provider.
Document and project image bytes live under settings.storage_dir and are
streamed back through the API, never served directly.
"""
import os
from datetime import datetime
from pathlib import Path
from typing import Optional, BinaryIO

from slugify import slugify

from ..config import settings
from ..logging import structlog
from .provider import StorageProvider


log = structlog.get_logger(__name__)


def document_key(document_id: str, original_name: str) -> str:
    safe_name = slugify(os.path.splitext(original_name)[0]) or "file"
    ext = os.path.splitext(original_name)[1].lower()
    month = datetime.utcnow().strftime("%Y-%m")
    return f"documents/{month}/{document_id}/{safe_name}{ext}"


def project_image_key(project_id: str, image_id: str, original_name: str) -> str:
    safe_name = slugify(os.path.splitext(original_name)[0]) or "image"
    ext = os.path.splitext(original_name)[1].lower()
    return f"projects/{project_id}/images/{image_id}/{safe_name}{ext}"


class LocalStorageProvider(StorageProvider):
    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or settings.storage_dir)
        (self.base_dir / "uploads").mkdir(parents=True, exist_ok=True)

    def _get_path(self, key: str) -> Path:
        # Strip leading slashes and parent references so keys stay inside uploads/
        clean_key = key.lstrip("/").replace("..", "").replace("\\", "/")
        return self.base_dir / "uploads" / clean_key

    def save(self, src: BinaryIO | bytes, key: str) -> int:
        path = self._get_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = src.read() if hasattr(src, "read") else src
        with open(path, "wb") as f:
            f.write(data)
        log.info("storage_saved", key=key, size=len(data))
        return len(data)

    def open(self, key: str) -> BinaryIO:
        return open(self._get_path(key), "rb")

    def exists(self, key: str) -> bool:
        return self._get_path(key).exists()

    def delete(self, key: str) -> None:
        path = self._get_path(key)
        try:
            if path.exists():
                path.unlink()
        except OSError as e:
            log.warning("storage_delete_failed", key=key, error=str(e))


def get_storage() -> StorageProvider:
    return LocalStorageProvider()
