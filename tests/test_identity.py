"""Tests for bearer token resolution."""

from unittest.mock import AsyncMock

import httpx
import pytest

from docshare.core.exceptions import AuthExpiredError, NetworkTransientError
from docshare.services import identity


@pytest.fixture
def identity_transport(monkeypatch):
    """Route the identity client through a mock transport."""
    responses = []
    seen = []
    real_client = httpx.AsyncClient

    def handler(request):
        seen.append(request)
        return responses.pop(0)

    monkeypatch.setattr(
        identity.httpx,
        "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )
    monkeypatch.setattr(identity._fetch_identity.retry, "sleep", AsyncMock())
    return responses, seen


@pytest.mark.asyncio
async def test_dev_mode_uses_token_as_user_id():
    assert await identity.resolve_user_id(" user-7 ", identity_url="") == "user-7"


@pytest.mark.asyncio
@pytest.mark.parametrize("token", ["", "   ", "a/b"])
async def test_dev_mode_rejects_bad_tokens(token):
    with pytest.raises(AuthExpiredError):
        await identity.resolve_user_id(token, identity_url="")


@pytest.mark.asyncio
async def test_identity_service_resolves_user(identity_transport):
    responses, seen = identity_transport
    responses.append(httpx.Response(200, json={"id": "u-42", "email": "t@example.com"}))

    user_id = await identity.resolve_user_id("token-abc", identity_url="http://identity/")

    assert user_id == "u-42"
    assert str(seen[0].url) == "http://identity/auth/me"
    assert seen[0].headers["authorization"] == "Bearer token-abc"


@pytest.mark.asyncio
async def test_rejected_token_is_auth_expired(identity_transport):
    responses, seen = identity_transport
    responses.append(httpx.Response(401))

    with pytest.raises(AuthExpiredError):
        await identity.resolve_user_id("stale", identity_url="http://identity")
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_identity_outage_is_retried_then_transient(identity_transport):
    responses, seen = identity_transport
    responses.extend(httpx.Response(503) for _ in range(3))

    with pytest.raises(NetworkTransientError):
        await identity.resolve_user_id("token", identity_url="http://identity")
    assert len(seen) == 3


@pytest.mark.asyncio
async def test_identity_recovers_after_transient_failure(identity_transport):
    responses, seen = identity_transport
    responses.extend([httpx.Response(502), httpx.Response(200, json={"user_id": "u-1"})])

    assert await identity.resolve_user_id("token", identity_url="http://identity") == "u-1"


@pytest.mark.asyncio
async def test_missing_user_id_in_payload(identity_transport):
    responses, _ = identity_transport
    responses.append(httpx.Response(200, json={}))

    with pytest.raises(AuthExpiredError):
        await identity.resolve_user_id("token", identity_url="http://identity")
