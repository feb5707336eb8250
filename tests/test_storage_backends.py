"""Tests for storage backends."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from google.api_core import exceptions as gcs_exceptions

from docshare.core.exceptions import StorageError
from docshare.storage import local as local_module
from docshare.storage.base import sanitize_filename
from docshare.storage.gcs import GCSStorageBackend
from docshare.storage.local import LocalStorageBackend, ObjectTooLargeError, SignatureError

from conftest import FakeClock


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


def _query(url: str) -> dict:
    from urllib.parse import parse_qs, urlparse

    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class TestSanitizeFilename:
    def test_removes_traversal_and_separators(self):
        assert "../" not in sanitize_filename("../etc/passwd")
        assert "..\\" not in sanitize_filename("..\\windows\\system32")
        assert "/" not in sanitize_filename("path/to/file.pdf")
        assert "\\" not in sanitize_filename("path\\to\\file.pdf")

    def test_replaces_special_characters(self):
        result = sanitize_filename("lecture notes@#$.pdf")
        assert result == "lecture_notes___.pdf"

    def test_preserves_valid_characters(self):
        assert sanitize_filename("valid-file.123.pdf") == "valid-file.123.pdf"

    def test_truncates_and_never_returns_empty(self):
        assert len(sanitize_filename("a" * 400 + ".pdf")) == 255
        assert sanitize_filename("") == "file"


class TestLocalStorageBackend:
    """Tests for local storage backend."""

    @pytest.fixture
    def clock(self):
        return FakeClock(now=1_700_000_000)

    @pytest.fixture
    def local(self, tmp_path, clock):
        return LocalStorageBackend(
            base_path=str(tmp_path), secret="s3cret", public_base_url="http://testserver/", clock=clock
        )

    def test_upload_url_shape(self, local):
        url = local.generate_upload_url("temp/u/s/k-a.pdf", "application/pdf", 900)

        assert url.startswith("http://testserver/storage/local/temp/u/s/k-a.pdf?")
        query = _query(url)
        assert int(query["expires"]) == 1_700_000_000 + 900
        assert len(query["signature"]) == 64

    def test_verify_signature_accepts_matching_request(self, local):
        url = local.generate_upload_url("temp/u/s/k-a.pdf", "application/pdf", 900)
        query = _query(url)

        local.verify_signature(
            "PUT", "temp/u/s/k-a.pdf", int(query["expires"]), query["signature"], "application/pdf"
        )

    def test_verify_signature_rejects_other_content_type(self, local):
        query = _query(local.generate_upload_url("temp/u/s/k-a.pdf", "application/pdf", 900))

        with pytest.raises(SignatureError) as exc_info:
            local.verify_signature("PUT", "temp/u/s/k-a.pdf", int(query["expires"]), query["signature"], "text/plain")
        assert exc_info.value.code == "SignatureDoesNotMatch"

    def test_verify_signature_rejects_other_key_and_method(self, local):
        query = _query(local.generate_upload_url("temp/u/s/k-a.pdf", "application/pdf", 900))

        with pytest.raises(SignatureError):
            local.verify_signature("PUT", "temp/u/s/k-b.pdf", int(query["expires"]), query["signature"], "application/pdf")
        with pytest.raises(SignatureError):
            local.verify_signature("GET", "temp/u/s/k-a.pdf", int(query["expires"]), query["signature"], "application/pdf")

    def test_verify_signature_expired(self, local, clock):
        query = _query(local.generate_upload_url("temp/u/s/k-a.pdf", "application/pdf", 15 * 60))
        clock.advance(16 * 60)

        with pytest.raises(SignatureError) as exc_info:
            local.verify_signature(
                "PUT", "temp/u/s/k-a.pdf", int(query["expires"]), query["signature"], "application/pdf"
            )
        assert exc_info.value.code == "ExpiredToken"

    @pytest.mark.asyncio
    async def test_write_list_and_delete(self, local, tmp_path):
        size = await local.write_object("temp/u/s/k-a.pdf", _chunks(b"%PDF-", b"1.7"), max_bytes=1024)

        assert size == 8
        assert (tmp_path / "temp/u/s/k-a.pdf").read_bytes() == b"%PDF-1.7"
        assert local.object_exists("temp/u/s/k-a.pdf")

        objects = local.list_objects("temp/u/")
        assert [o.key for o in objects] == ["temp/u/s/k-a.pdf"]
        assert objects[0].size == 8
        assert local.list_objects("temp/other/") == []

        assert local.delete_object("temp/u/s/k-a.pdf") is True
        assert local.delete_object("temp/u/s/k-a.pdf") is False
        assert not local.object_exists("temp/u/s/k-a.pdf")

    @pytest.mark.asyncio
    async def test_write_rejects_oversized_object_without_publishing(self, local, tmp_path):
        with pytest.raises(ObjectTooLargeError):
            await local.write_object("temp/u/s/big.pdf", _chunks(b"x" * 10, b"x" * 10), max_bytes=15)

        assert not local.object_exists("temp/u/s/big.pdf")
        assert list(tmp_path.rglob("*.part")) == []

    @pytest.mark.asyncio
    async def test_write_runs_disk_io_in_worker_threads(self, local, monkeypatch):
        real_to_thread = asyncio.to_thread
        offloaded = []

        async def recording_to_thread(func, *args, **kwargs):
            offloaded.append(getattr(func, "__name__", repr(func)))
            return await real_to_thread(func, *args, **kwargs)

        monkeypatch.setattr(local_module.asyncio, "to_thread", recording_to_thread)

        await local.write_object("temp/u/s/k-a.pdf", _chunks(b"%PDF-", b"1.7"), max_bytes=1024)

        assert offloaded.count("write") == 2
        assert {"open", "close", "replace"} <= set(offloaded)

    def test_key_cannot_escape_root(self, local):
        with pytest.raises(ValueError):
            local.delete_object("../outside.pdf")
        assert local.object_exists("../outside.pdf") is False

    def test_get_backend_name(self, local):
        assert local.get_backend_name() == "local"


class TestGCSStorageBackend:
    """Tests for GCS storage backend."""

    @pytest.fixture
    def gcs(self):
        with patch("docshare.storage.gcs.storage.Client") as mock_client_class:
            mock_client = MagicMock()
            mock_bucket = MagicMock()
            mock_blob = MagicMock()
            mock_client_class.return_value = mock_client
            mock_client.bucket.return_value = mock_bucket
            mock_bucket.blob.return_value = mock_blob

            backend = GCSStorageBackend(bucket_name="test-bucket", project_id="test-project")
            signing = MagicMock()
            signing.service_account_email = "svc@test-project.iam.gserviceaccount.com"
            with patch.object(backend, "_get_signing_credentials", return_value=signing):
                yield backend, mock_bucket, mock_blob

    def test_generate_upload_url(self, gcs):
        backend, mock_bucket, mock_blob = gcs
        mock_blob.generate_signed_url.return_value = "https://storage.googleapis.com/signed"

        url = backend.generate_upload_url("temp/u/s/k-a.pdf", "application/pdf", 900)

        assert url == "https://storage.googleapis.com/signed"
        mock_bucket.blob.assert_called_with("temp/u/s/k-a.pdf")
        kwargs = mock_blob.generate_signed_url.call_args.kwargs
        assert kwargs["method"] == "PUT"
        assert kwargs["version"] == "v4"
        assert kwargs["content_type"] == "application/pdf"
        assert kwargs["expiration"] == timedelta(seconds=900)

    def test_generate_download_url_sets_disposition(self, gcs):
        backend, _, mock_blob = gcs
        mock_blob.generate_signed_url.return_value = "https://storage.googleapis.com/read"

        backend.generate_download_url("temp/u/s/k-a.pdf", 600, filename="a.pdf")

        kwargs = mock_blob.generate_signed_url.call_args.kwargs
        assert kwargs["method"] == "GET"
        assert kwargs["response_disposition"] == 'attachment; filename="a.pdf"'

    def test_signing_failure_becomes_storage_error(self, gcs):
        backend, _, mock_blob = gcs
        mock_blob.generate_signed_url.side_effect = RuntimeError("iam down")

        with pytest.raises(StorageError):
            backend.generate_upload_url("temp/u/s/k-a.pdf", "application/pdf", 900)

    def test_object_exists(self, gcs):
        backend, _, mock_blob = gcs
        mock_blob.exists.return_value = True

        assert backend.object_exists("temp/u/s/k-a.pdf") is True

    def test_delete_missing_object(self, gcs):
        backend, _, mock_blob = gcs
        mock_blob.delete.side_effect = gcs_exceptions.NotFound("gone")

        assert backend.delete_object("temp/u/s/k-a.pdf") is False

    def test_list_objects(self, gcs):
        backend, mock_bucket, _ = gcs
        blob = MagicMock()
        blob.name = "temp/u/s/k-a.pdf"
        blob.size = 42
        blob.updated = datetime(2024, 1, 1, tzinfo=timezone.utc)
        mock_bucket.client.list_blobs.return_value = [blob]

        objects = backend.list_objects("temp/")

        assert len(objects) == 1
        assert objects[0].key == "temp/u/s/k-a.pdf"
        assert objects[0].size == 42
        mock_bucket.client.list_blobs.assert_called_once_with(mock_bucket, prefix="temp/")

    def test_get_backend_name(self):
        assert GCSStorageBackend(bucket_name="b").get_backend_name() == "gcs"

    def test_get_bucket_missing_config(self, monkeypatch):
        from docshare.core.config import settings

        monkeypatch.setattr(settings, "GCS_BUCKET_NAME", "")
        backend = GCSStorageBackend()

        with pytest.raises(ValueError, match="GCS_BUCKET_NAME not configured"):
            backend._get_bucket()
