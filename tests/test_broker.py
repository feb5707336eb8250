"""Tests for the pre-signed URL broker."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from docshare.core.exceptions import RateLimitedError, StorageError, ValidationError
from docshare.db.models import Upload
from docshare.models.upload import FileDescriptor
from docshare.services.broker import PresignedUrlBroker, parse_storage_key

from conftest import DOCX, PDF


def descriptor(filename="notes.pdf", mimetype=PDF, size=2048, **kwargs):
    return FileDescriptor(filename=filename, mimetype=mimetype, size=size, **kwargs)


def test_request_urls_issues_one_key_per_file_in_order(broker, store):
    files = [descriptor("a.pdf"), descriptor("b.docx", mimetype=DOCX), descriptor("c.pdf")]

    response = broker.request_urls("user-1", files)

    assert [item.filename for item in response.pre_signed_data] == ["a.pdf", "b.docx", "c.pdf"]
    assert response.expires_in == 15 * 60
    keys = [item.storage_key for item in response.pre_signed_data]
    assert len(set(keys)) == 3
    for item in response.pre_signed_data:
        assert item.storage_key.startswith(f"temp/user-1/{response.session_id}/")
        assert item.pre_signed_url.startswith("http://testserver/storage/local/")
        issued = store.get(item.storage_key)
        assert issued.session_id == response.session_id
        assert issued.owner_id == "user-1"
        assert issued.consumed_by is None


def test_storage_key_sanitizes_filename(broker):
    response = broker.request_urls("user-1", [descriptor("Week 1 (draft).pdf")])

    key = response.pre_signed_data[0].storage_key
    assert key.endswith("-Week_1__draft_.pdf")
    assert parse_storage_key(key) == ("user-1", response.session_id)


@pytest.mark.parametrize(
    "bad, reason",
    [
        (descriptor(size=0), "empty"),
        (descriptor(size=51 * 1024 * 1024), "size"),
        (descriptor(mimetype="image/png"), "not allowed"),
        (descriptor(filename="../secret.pdf"), "path"),
        (descriptor(filename="dir/notes.pdf"), "path"),
        (descriptor(filename="x" * 256 + ".pdf"), "255"),
        (descriptor(filename="   "), "required"),
    ],
)
def test_invalid_file_rejects_whole_batch_without_side_effects(broker, store, bad, reason):
    backend = MagicMock(wraps=broker.backend)
    broker.backend = backend

    with pytest.raises(ValidationError) as exc_info:
        broker.request_urls("user-1", [descriptor("ok.pdf"), bad])

    rejected = exc_info.value.details["files"]
    assert [entry["index"] for entry in rejected] == [1]
    assert any(reason in r for r in rejected[0]["reasons"])
    backend.generate_upload_url.assert_not_called()
    assert store.list_all() == []


def test_batch_limits(broker, upload_settings):
    with pytest.raises(ValidationError):
        broker.request_urls("user-1", [])

    upload_settings.MAX_FILES_PER_BATCH = 2
    with pytest.raises(ValidationError) as exc_info:
        broker.request_urls("user-1", [descriptor(), descriptor(), descriptor()])
    assert exc_info.value.details["limit"] == 2


def test_broker_writes_nothing_to_database(broker, session_factory):
    broker.request_urls("user-1", [descriptor(), descriptor("b.pdf")])

    with session_factory() as db:
        assert db.query(Upload).count() == 0


def test_issue_single_creates_distinct_keys(broker):
    first = broker.issue_single("user-1", "notes.pdf", PDF, 10)
    second = broker.issue_single("user-1", "notes.pdf", PDF, 10)

    assert first.storage_key != second.storage_key


def test_transient_signing_failure_is_retried(store, monkeypatch):
    from docshare.services import broker as broker_module

    monkeypatch.setattr(broker_module.PresignedUrlBroker._sign_upload.retry, "sleep", lambda seconds: None)
    backend = MagicMock()
    backend.generate_upload_url.side_effect = [StorageError("iam hiccup"), "https://signed"]
    broker = PresignedUrlBroker(backend, store)

    issued = broker.issue_single("user-1", "notes.pdf", PDF, 10)

    assert issued.pre_signed_url == "https://signed"
    assert backend.generate_upload_url.call_count == 2


def test_parse_storage_key_rejects_foreign_shapes():
    assert parse_storage_key("temp/user-1/sess/abc-a.pdf") == ("user-1", "sess")
    assert parse_storage_key("other/user-1/sess/abc-a.pdf") is None
    assert parse_storage_key("temp/user-1/abc-a.pdf") is None
    assert parse_storage_key("temp//sess/abc-a.pdf") is None


def test_rate_limit_refuses_batch_over_the_owner_limit(broker, store, upload_settings):
    upload_settings.URL_RATE_LIMIT_FILES = 3
    broker.request_urls("user-1", [descriptor(), descriptor("b.pdf")])

    with pytest.raises(RateLimitedError) as exc_info:
        broker.request_urls("user-1", [descriptor("c.pdf"), descriptor("d.pdf")])

    assert exc_info.value.status_code == 429
    assert exc_info.value.details == {"limit": 3, "window_seconds": 60, "recent": 2}
    assert len(store.list_all()) == 2

    # Other owners have their own budget
    other = broker.request_urls("user-2", [descriptor(), descriptor("b.pdf"), descriptor("c.pdf")])
    assert len(other.pre_signed_data) == 3


def test_rate_limit_window_slides(broker, store, upload_settings):
    upload_settings.URL_RATE_LIMIT_FILES = 2
    broker.request_urls("user-1", [descriptor(), descriptor("b.pdf")])
    with pytest.raises(RateLimitedError):
        broker.request_urls("user-1", [descriptor("c.pdf")])

    for issued in store.list_all():
        issued.issued_at -= timedelta(seconds=61)

    assert len(broker.request_urls("user-1", [descriptor("c.pdf")]).pre_signed_data) == 1


def test_rate_limit_disabled_with_zero(broker, upload_settings):
    upload_settings.URL_RATE_LIMIT_FILES = 0
    upload_settings.MAX_FILES_PER_BATCH = 100

    response = broker.request_urls("user-1", [descriptor(f"{i}.pdf") for i in range(60)])

    assert len(response.pre_signed_data) == 60
