from __future__ import annotations

from typing import Optional

from supabase import Client, create_client

from agora.config import Settings
from agora.logging import get_logger

logger = get_logger(__name__)


class ObjectStorage:
    """Pass-through to a Supabase storage bucket.

    Failures are logged and reported as ``None``/``False``; callers decide
    whether a missing object matters.
    """

    def __init__(self, settings: Settings, client: Optional[Client] = None) -> None:
        self.bucket = settings.supabase_bucket
        self.client = client
        if self.client is None and settings.supabase_url and settings.supabase_key:
            try:
                self.client = create_client(settings.supabase_url, settings.supabase_key)
            except Exception as exc:
                logger.error("object_storage_init_failed", error=str(exc))
                self.client = None
        if self.client is None:
            logger.warning("object_storage_not_configured", bucket=self.bucket)

    @property
    def is_initialized(self) -> bool:
        return self.client is not None

    def _bucket(self):
        return self.client.storage.from_(self.bucket)

    def upload_file(
        self, path: str, data: bytes, content_type: Optional[str] = None
    ) -> Optional[str]:
        """Upload ``data`` to ``path``; returns the stored path or ``None``."""
        if not self.is_initialized:
            return None
        options = {"content-type": content_type} if content_type else None
        try:
            self._bucket().upload(path, data, file_options=options)
        except Exception as exc:
            logger.error("object_upload_failed", path=path, error=str(exc))
            return None
        logger.info("object_uploaded", path=path, size=len(data))
        return path

    def download_file(self, path: str) -> Optional[bytes]:
        if not self.is_initialized:
            return None
        try:
            return self._bucket().download(path)
        except Exception as exc:
            logger.error("object_download_failed", path=path, error=str(exc))
            return None

    def get_public_url(self, path: str) -> Optional[str]:
        if not self.is_initialized:
            return None
        try:
            return self._bucket().get_public_url(path)
        except Exception as exc:
            logger.error("object_public_url_failed", path=path, error=str(exc))
            return None

    def delete_file(self, path: str) -> bool:
        if not self.is_initialized:
            return False
        try:
            self._bucket().remove([path])
        except Exception as exc:
            logger.error("object_delete_failed", path=path, error=str(exc))
            return False
        logger.info("object_deleted", path=path)
        return True
