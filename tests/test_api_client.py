"""Tests for the upload service HTTP client."""

import httpx
import pytest

from docshare.client.api import UploadApiClient, error_from_response
from docshare.client.config import ClientConfig
from docshare.core.exceptions import (
    AuthExpiredError,
    ConflictError,
    InvalidReferenceError,
    NetworkTransientError,
    RateLimitedError,
    UploadPipelineError,
    ValidationError,
)
from docshare.models.enums import UploadStatus
from docshare.models.upload import FileDescriptor

from conftest import PDF


def make_client(handler, **config):
    options = {"base_url": "http://service", "token": "user-1", "api_attempts": 3, "backoff_min": 0, "backoff_max": 0}
    options.update(config)
    http_client = httpx.AsyncClient(base_url="http://service", transport=httpx.MockTransport(handler))
    return UploadApiClient(ClientConfig(**options), http_client=http_client)


def url_batch():
    return {
        "sessionId": "s-1",
        "expiresIn": 900,
        "preSignedData": [
            {
                "storageKey": "temp/user-1/s-1/abc-a.pdf",
                "preSignedUrl": "http://storage/put",
                "filename": "a.pdf",
                "size": 4,
                "mimetype": PDF,
            }
        ],
    }


def test_error_from_response_prefers_body_code():
    response = httpx.Response(
        422, json={"detail": "Unknown tag ids", "code": "INVALID_REFERENCE", "details": {"tag_ids": ["x"]}}
    )

    error = error_from_response(response)

    assert isinstance(error, InvalidReferenceError)
    assert error.message == "Unknown tag ids"
    assert error.details == {"tag_ids": ["x"]}


@pytest.mark.parametrize(
    "status,expected",
    [(400, ValidationError), (401, AuthExpiredError), (409, ConflictError), (503, NetworkTransientError), (418, UploadPipelineError)],
)
def test_error_from_response_falls_back_to_status(status, expected):
    error = error_from_response(httpx.Response(status, text="not json"))

    assert type(error) is expected
    assert error.details == {"status_code": status}


@pytest.mark.asyncio
async def test_request_urls_sends_bearer_and_parses_response():
    seen = {}

    async def handler(request):
        seen["auth"] = request.headers["authorization"]
        seen["path"] = request.url.path
        seen["body"] = request.read()
        return httpx.Response(200, json=url_batch())

    client = make_client(handler)

    response = await client.request_urls([FileDescriptor(filename="a.pdf", mimetype=PDF, size=4)])

    assert seen["auth"] == "Bearer user-1"
    assert seen["path"] == "/uploads/request-urls"
    assert b'"filename":"a.pdf"' in seen["body"].replace(b" ", b"")
    assert response.session_id == "s-1"
    assert response.pre_signed_data[0].storage_key == "temp/user-1/s-1/abc-a.pdf"


@pytest.mark.asyncio
async def test_transient_errors_are_retried():
    calls = []

    async def handler(request):
        calls.append(1)
        if len(calls) < 3:
            return httpx.Response(503, json={"detail": "busy", "code": "NETWORK_TRANSIENT"})
        return httpx.Response(200, json=url_batch())

    response = await make_client(handler).request_urls([FileDescriptor(filename="a.pdf", mimetype=PDF, size=4)])

    assert len(calls) == 3
    assert response.expires_in == 900


@pytest.mark.asyncio
async def test_transport_errors_become_network_transient():
    calls = []

    async def handler(request):
        calls.append(1)
        raise httpx.ConnectError("refused")

    with pytest.raises(NetworkTransientError):
        await make_client(handler, api_attempts=2).reconcile()
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_conflict_is_not_retried():
    calls = []

    async def handler(request):
        calls.append(1)
        return httpx.Response(
            409,
            json={"detail": "A folder named 'X' already exists", "code": "CONFLICT", "details": {"name": "X"}},
        )

    with pytest.raises(ConflictError) as exc_info:
        await make_client(handler).complete("r-1")

    assert len(calls) == 1
    assert exc_info.value.details["name"] == "X"


@pytest.mark.asyncio
async def test_my_uploads_passes_query_parameters():
    seen = {}

    async def handler(request):
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200, json={"uploads": [], "pagination": {"page": 2, "limit": 5, "total": 0, "totalPages": 0}}
        )

    response = await make_client(handler).my_uploads(page=2, limit=5, status=UploadStatus.COMPLETED)

    assert seen["params"] == {"page": "2", "limit": "5", "status": "COMPLETED"}
    assert response.pagination.page == 2


@pytest.mark.asyncio
async def test_delete_storage_object_sends_json_body():
    seen = {}

    async def handler(request):
        seen["method"] = request.method
        seen["body"] = request.read()
        return httpx.Response(200, json={"storageKey": "temp/user-1/s/k", "deleted": True})

    result = await make_client(handler).delete_storage_object("temp/user-1/s/k")

    assert seen["method"] == "DELETE"
    assert b"storageKey" in seen["body"]
    assert result["deleted"] is True


@pytest.mark.asyncio
async def test_delete_storage_objects_sends_all_keys_in_one_call():
    seen = []

    async def handler(request):
        seen.append((request.method, request.url.path, request.read()))
        return httpx.Response(200, json={"deleted": ["temp/user-1/s/a"]})

    result = await make_client(handler).delete_storage_objects(["temp/user-1/s/a", "temp/user-1/s/b"])

    assert len(seen) == 1
    method, path, body = seen[0]
    assert (method, path) == ("DELETE", "/uploads/storage-objects")
    assert b'"storageKeys"' in body and b"temp/user-1/s/b" in body
    assert result.deleted == ["temp/user-1/s/a"]


@pytest.mark.asyncio
async def test_rate_limit_is_not_retried():
    calls = []

    async def handler(request):
        calls.append(1)
        return httpx.Response(
            429,
            json={"detail": "Too many upload links requested", "code": "RATE_LIMITED", "details": {"limit": 50}},
        )

    with pytest.raises(RateLimitedError):
        await make_client(handler).request_urls([FileDescriptor(filename="a.pdf", mimetype=PDF, size=4)])

    assert len(calls) == 1
