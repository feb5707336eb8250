"""Direct-to-storage uploader.

Streams one file's bytes to a pre-signed URL with the exact Content-Type the
URL was signed for, reporting progress as a 0-100 percentage.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Union

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from docshare.client.config import ClientConfig
from docshare.core.exceptions import AuthExpiredError, NetworkTransientError, StorageError

logger = logging.getLogger(__name__)

_EXPIRY_MARKERS = ("expiredtoken", "expired")
_TRANSIENT_STATUS = {408, 429}

ProgressCallback = Callable[[int], None]


def classify_storage_response(response: httpx.Response) -> Optional[Exception]:
    """Map a storage response to the pipeline error it represents, or None on success."""
    if response.is_success:
        return None

    body = response.text[:2000]
    if response.status_code in (401, 403) or (
        response.status_code == 400 and any(marker in body.lower() for marker in _EXPIRY_MARKERS)
    ):
        return AuthExpiredError(
            "Upload link expired or was rejected; request a fresh link",
            details={"status_code": response.status_code, "body": body},
        )
    if response.status_code >= 500 or response.status_code in _TRANSIENT_STATUS:
        return NetworkTransientError(
            f"Storage temporarily unavailable (HTTP {response.status_code})",
            details={"status_code": response.status_code},
        )
    return StorageError(
        f"Storage rejected the upload (HTTP {response.status_code})",
        details={"status_code": response.status_code, "body": body},
    )


class DirectStorageUploader:
    """PUTs file bytes straight to object storage."""

    def __init__(
        self,
        config: ClientConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=config.transfer_timeout)
        self._clock = clock

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _chunks(
        self, source: Union[bytes, Path], size: int, report: Callable[[int], None]
    ) -> AsyncIterator[bytes]:
        sent = 0
        if isinstance(source, (bytes, bytearray)):
            for offset in range(0, len(source), self.config.chunk_size):
                chunk = bytes(source[offset : offset + self.config.chunk_size])
                sent += len(chunk)
                report(sent)
                yield chunk
        else:
            with open(source, "rb") as f:
                while chunk := await asyncio.to_thread(f.read, self.config.chunk_size):
                    sent += len(chunk)
                    report(sent)
                    yield chunk

    async def _put_once(
        self,
        url: str,
        source: Union[bytes, Path],
        mimetype: str,
        size: int,
        report: Callable[[int], None],
    ) -> None:
        headers = {"Content-Type": mimetype, "Content-Length": str(size)}
        try:
            response = await self._client.put(url, content=self._chunks(source, size, report), headers=headers)
        except httpx.TransportError as e:
            raise NetworkTransientError(f"Connection to storage failed: {e}") from e

        error = classify_storage_response(response)
        if error is not None:
            raise error

    async def upload(
        self,
        url: str,
        source: Union[bytes, Path],
        mimetype: str,
        size: int,
        expires_at: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Upload one file.

        Cancel by cancelling the awaiting task; the in-flight request is aborted.

        Args:
            url: Pre-signed PUT URL
            source: File bytes or path to read from
            mimetype: Content type the URL was signed for
            size: Exact byte size
            expires_at: URL expiry (epoch seconds); checked before every attempt
            on_progress: Called with non-decreasing percentages 0-100

        Raises:
            AuthExpiredError: URL expired or rejected by storage
            NetworkTransientError: Transport failure after all attempts
            StorageError: Storage refused the object
        """
        best = -1

        def report(sent: int) -> None:
            nonlocal best
            percent = 100 if size <= 0 else min(100, int(sent * 100 / size))
            if percent > best:
                best = percent
                if on_progress is not None:
                    on_progress(percent)

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.transfer_attempts),
            wait=wait_exponential(
                multiplier=self.config.backoff_min,
                min=self.config.backoff_min,
                max=self.config.backoff_max,
            ),
            retry=retry_if_exception_type(NetworkTransientError),
            reraise=True,
        ):
            with attempt:
                if expires_at is not None and self._clock() >= expires_at:
                    raise AuthExpiredError(
                        "Upload link expired; request a fresh link",
                        details={"expired_at": expires_at},
                    )
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "Retrying storage transfer",
                        extra={"attempt": attempt.retry_state.attempt_number, "size_bytes": size},
                    )
                await self._put_once(url, source, mimetype, size, report)
