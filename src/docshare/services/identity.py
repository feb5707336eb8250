"""Client for the external identity service."""

import logging
from typing import Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from docshare.core.config import settings
from docshare.core.exceptions import AuthExpiredError, NetworkTransientError

logger = logging.getLogger(__name__)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=5),
    retry=retry_if_exception_type(NetworkTransientError),
    reraise=True,
)
async def _fetch_identity(token: str, identity_url: str, timeout: int) -> dict:
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(
                f"{identity_url.rstrip('/')}/auth/me",
                headers={"Authorization": f"Bearer {token}"},
            )
    except httpx.TransportError as e:
        logger.warning("Identity service unreachable", extra={"error": str(e)})
        raise NetworkTransientError("Identity service unreachable") from e

    if response.status_code in (401, 403):
        raise AuthExpiredError("Session is invalid or has expired")
    if response.status_code >= 500:
        raise NetworkTransientError(
            "Identity service unavailable", details={"status_code": response.status_code}
        )
    response.raise_for_status()
    return response.json()


async def resolve_user_id(token: str, identity_url: Optional[str] = None) -> str:
    """Resolve a bearer token to a user id.

    With no IDENTITY_SERVICE_URL configured (local development and tests) the
    token itself is taken as the user id.

    Raises:
        AuthExpiredError: Token rejected by the identity service
        NetworkTransientError: Identity service unreachable after retries
    """
    identity_url = identity_url if identity_url is not None else settings.IDENTITY_SERVICE_URL
    if not token or not token.strip():
        raise AuthExpiredError("Missing bearer token")
    if not identity_url:
        user_id = token.strip()
        if "/" in user_id:
            raise AuthExpiredError("Malformed bearer token")
        return user_id

    payload = await _fetch_identity(token, identity_url, settings.REQUEST_TIMEOUT)
    user_id = payload.get("id") or payload.get("user_id")
    if not user_id:
        raise AuthExpiredError("Identity service returned no user id")
    return str(user_id)
