"""Tests for the Supabase object-storage wrapper."""

from unittest.mock import MagicMock

from agora.config import Settings
from agora.storage.objects import ObjectStorage


def _storage(bucket_api):
    client = MagicMock()
    client.storage.from_.return_value = bucket_api
    return ObjectStorage(Settings(supabase_bucket="media"), client=client), client


class TestObjectStorage:
    def test_not_configured(self):
        storage = ObjectStorage(Settings())

        assert storage.is_initialized is False
        assert storage.upload_file("a.png", b"data") is None
        assert storage.download_file("a.png") is None
        assert storage.get_public_url("a.png") is None
        assert storage.delete_file("a.png") is False

    def test_upload_uses_bucket(self):
        bucket = MagicMock()
        storage, client = _storage(bucket)

        assert storage.upload_file("avatars/1.png", b"png", content_type="image/png") == "avatars/1.png"

        client.storage.from_.assert_called_with("media")
        bucket.upload.assert_called_once_with(
            "avatars/1.png", b"png", file_options={"content-type": "image/png"}
        )

    def test_download_and_public_url(self):
        bucket = MagicMock()
        bucket.download.return_value = b"bytes"
        bucket.get_public_url.return_value = "https://cdn.example.com/media/a.png"
        storage, _ = _storage(bucket)

        assert storage.download_file("a.png") == b"bytes"
        assert storage.get_public_url("a.png") == "https://cdn.example.com/media/a.png"

    def test_delete(self):
        bucket = MagicMock()
        storage, _ = _storage(bucket)

        assert storage.delete_file("a.png") is True
        bucket.remove.assert_called_once_with(["a.png"])

    def test_errors_are_reported_not_raised(self):
        bucket = MagicMock()
        bucket.upload.side_effect = RuntimeError("403")
        bucket.download.side_effect = RuntimeError("404")
        bucket.remove.side_effect = RuntimeError("500")
        storage, _ = _storage(bucket)

        assert storage.upload_file("a.png", b"x") is None
        assert storage.download_file("a.png") is None
        assert storage.delete_file("a.png") is False
