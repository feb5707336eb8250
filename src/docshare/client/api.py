"""Async HTTP client for the upload service."""

import logging
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from docshare.client.config import ClientConfig
from docshare.core.exceptions import (
    ERRORS_BY_CODE,
    AuthExpiredError,
    ConflictError,
    InvalidReferenceError,
    NetworkTransientError,
    NotFoundError,
    PermissionDeniedError,
    RetryLimitExceededError,
    TransactionFailure,
    UploadPipelineError,
    ValidationError,
)
from docshare.models.enums import UploadStatus
from docshare.models.upload import (
    CompletionReport,
    CreateResourceRequest,
    CreateResourceResponse,
    DeleteStorageObjectsRequest,
    DeleteStorageObjectsResponse,
    DownloadResponse,
    FileDescriptor,
    MyUploadsResponse,
    OrphanReport,
    RequestUrlsRequest,
    RequestUrlsResponse,
    RetryResponse,
)

logger = logging.getLogger(__name__)

_ERRORS_BY_STATUS: dict[int, type[UploadPipelineError]] = {
    400: ValidationError,
    401: AuthExpiredError,
    403: PermissionDeniedError,
    404: NotFoundError,
    409: ConflictError,
    422: InvalidReferenceError,
    429: RetryLimitExceededError,
    500: TransactionFailure,
    502: NetworkTransientError,
    503: NetworkTransientError,
    504: NetworkTransientError,
}


def error_from_response(response: httpx.Response) -> UploadPipelineError:
    """Rebuild the service's exception from an error response."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    error_cls = ERRORS_BY_CODE.get(body.get("code", "")) or _ERRORS_BY_STATUS.get(
        response.status_code, UploadPipelineError
    )
    message = body.get("detail")
    if not isinstance(message, str):
        message = f"Upload service returned HTTP {response.status_code}"
    return error_cls(message, details=body.get("details") or {"status_code": response.status_code})


class UploadApiClient:
    """Typed calls to every upload endpoint, with bounded retries on transient failures only."""

    def __init__(self, config: ClientConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=config.base_url, timeout=config.api_timeout
        )

    async def __aenter__(self) -> "UploadApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise NetworkTransientError(
                f"Could not reach upload service: {e}", details={"path": path}
            ) from e
        if response.is_error:
            raise error_from_response(response)
        return response

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.api_attempts),
            wait=wait_exponential(
                multiplier=self.config.backoff_min,
                min=self.config.backoff_min,
                max=self.config.backoff_max,
            ),
            retry=retry_if_exception_type(NetworkTransientError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "Retrying upload service call",
                        extra={"path": path, "attempt": attempt.retry_state.attempt_number},
                    )
                response = await self._send(method, path, **kwargs)
        return response.json()

    async def request_urls(self, files: list[FileDescriptor]) -> RequestUrlsResponse:
        body = RequestUrlsRequest(files=files).model_dump(by_alias=True, exclude_none=True)
        return RequestUrlsResponse.model_validate(await self._request("POST", "/uploads/request-urls", json=body))

    async def create_resource(self, payload: CreateResourceRequest) -> CreateResourceResponse:
        body = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
        return CreateResourceResponse.model_validate(
            await self._request("POST", "/uploads/create-resource", json=body)
        )

    async def complete(self, resource_id: str) -> CompletionReport:
        return CompletionReport.model_validate(
            await self._request("POST", f"/uploads/complete/{resource_id}")
        )

    async def retry_upload(self, upload_id: str) -> RetryResponse:
        return RetryResponse.model_validate(
            await self._request("POST", "/uploads/retry", json={"uploadId": upload_id})
        )

    async def download_url(self, upload_id: str) -> DownloadResponse:
        return DownloadResponse.model_validate(
            await self._request("GET", f"/uploads/download/{upload_id}")
        )

    async def my_uploads(
        self, page: int = 1, limit: int = 10, status: Optional[UploadStatus] = None
    ) -> MyUploadsResponse:
        params: dict[str, Any] = {"page": page, "limit": limit}
        if status is not None:
            params["status"] = status.value
        return MyUploadsResponse.model_validate(
            await self._request("GET", "/uploads/my-uploads", params=params)
        )

    async def delete_resource(self, resource_id: str) -> dict:
        return await self._request("DELETE", f"/uploads/resource/{resource_id}")

    async def delete_storage_object(self, storage_key: str) -> dict:
        return await self._request("DELETE", "/uploads/storage-object", json={"storageKey": storage_key})

    async def delete_storage_objects(self, storage_keys: list[str]) -> DeleteStorageObjectsResponse:
        body = DeleteStorageObjectsRequest(storage_keys=storage_keys).model_dump(by_alias=True)
        return DeleteStorageObjectsResponse.model_validate(
            await self._request("DELETE", "/uploads/storage-objects", json=body)
        )

    async def reconcile(self) -> OrphanReport:
        return OrphanReport.model_validate(await self._request("POST", "/uploads/reconcile"))
