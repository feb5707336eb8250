"""Upload API routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from docshare.api.deps import (
    get_broker,
    get_current_user_id,
    get_resource_service,
    get_retry_service,
    get_verifier,
)
from docshare.core.exceptions import UploadPipelineError
from docshare.models.enums import UploadStatus
from docshare.models.upload import (
    CompletionReport,
    CreateResourceRequest,
    CreateResourceResponse,
    DeleteStorageObjectRequest,
    DeleteStorageObjectsRequest,
    DeleteStorageObjectsResponse,
    DownloadResponse,
    MyUploadsResponse,
    OrphanReport,
    RequestUrlsRequest,
    RequestUrlsResponse,
    RetryRequest,
    RetryResponse,
)
from docshare.services.broker import PresignedUrlBroker
from docshare.services.resources import ResourceTransactionService
from docshare.services.retry import UploadRetryService
from docshare.services.verifier import CompletionVerifier

router = APIRouter(prefix="/uploads", tags=["uploads"])
logger = logging.getLogger(__name__)


@router.post("/request-urls", response_model=RequestUrlsResponse)
def request_upload_urls(
    request: RequestUrlsRequest = Body(...),
    user_id: str = Depends(get_current_user_id),
    broker: PresignedUrlBroker = Depends(get_broker),
) -> RequestUrlsResponse:
    """Validate a batch of files and mint one pre-signed upload URL per file."""
    try:
        return broker.request_urls(user_id, request.files)
    except (HTTPException, UploadPipelineError):
        raise
    except Exception as e:
        logger.error(f"Unexpected error issuing upload URLs: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/create-resource", response_model=CreateResourceResponse, status_code=201)
def create_resource(
    request: CreateResourceRequest = Body(...),
    user_id: str = Depends(get_current_user_id),
    service: ResourceTransactionService = Depends(get_resource_service),
) -> CreateResourceResponse:
    """Commit resource, optional new folder and one upload row per file atomically."""
    try:
        return service.create_resource(user_id, request)
    except (HTTPException, UploadPipelineError):
        raise
    except Exception as e:
        logger.error(f"Unexpected error creating resource: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/complete/{resource_id}", response_model=CompletionReport)
def complete_upload(
    resource_id: str,
    user_id: str = Depends(get_current_user_id),
    verifier: CompletionVerifier = Depends(get_verifier),
) -> CompletionReport:
    """Verify storage objects for a resource's uploads. Idempotent."""
    try:
        return verifier.complete_resource(user_id, resource_id)
    except (HTTPException, UploadPipelineError):
        raise
    except Exception as e:
        logger.error(f"Unexpected error during upload completion: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/retry", response_model=RetryResponse)
def retry_upload(
    request: RetryRequest = Body(...),
    user_id: str = Depends(get_current_user_id),
    service: UploadRetryService = Depends(get_retry_service),
) -> RetryResponse:
    """Issue a fresh storage key and URL for one upload."""
    try:
        return service.retry_upload(user_id, request.upload_id)
    except (HTTPException, UploadPipelineError):
        raise
    except Exception as e:
        logger.error(f"Unexpected error retrying upload: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/download/{upload_id}", response_model=DownloadResponse)
def download_upload(
    upload_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ResourceTransactionService = Depends(get_resource_service),
) -> DownloadResponse:
    try:
        return service.download_url(user_id, upload_id)
    except (HTTPException, UploadPipelineError):
        raise
    except Exception as e:
        logger.error(f"Unexpected error generating download URL: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/my-uploads", response_model=MyUploadsResponse)
def my_uploads(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[UploadStatus] = Query(None),
    user_id: str = Depends(get_current_user_id),
    service: ResourceTransactionService = Depends(get_resource_service),
) -> MyUploadsResponse:
    return service.list_user_uploads(user_id, page=page, limit=limit, status=status)


@router.delete("/resource/{resource_id}")
def delete_resource(
    resource_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ResourceTransactionService = Depends(get_resource_service),
) -> dict:
    """Delete a resource with its uploads; storage cleanup is best-effort."""
    try:
        released = service.delete_resource(user_id, resource_id)
    except (HTTPException, UploadPipelineError):
        raise
    except Exception as e:
        logger.error(f"Unexpected error deleting resource: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
    return {"resourceId": resource_id, "deleted": True, "releasedStorageKeys": released}


@router.delete("/storage-object")
def delete_storage_object(
    request: DeleteStorageObjectRequest = Body(...),
    user_id: str = Depends(get_current_user_id),
    service: ResourceTransactionService = Depends(get_resource_service),
) -> dict:
    """Delete an uploaded object that was never committed to a resource."""
    try:
        deleted = service.delete_storage_object(user_id, request.storage_key)
    except (HTTPException, UploadPipelineError):
        raise
    except Exception as e:
        logger.error(f"Unexpected error deleting storage object: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
    return {"storageKey": request.storage_key, "deleted": deleted}


@router.delete("/storage-objects", response_model=DeleteStorageObjectsResponse)
def delete_storage_objects(
    request: DeleteStorageObjectsRequest = Body(...),
    user_id: str = Depends(get_current_user_id),
    service: ResourceTransactionService = Depends(get_resource_service),
) -> DeleteStorageObjectsResponse:
    """Delete several uncommitted objects at once; nothing is deleted if any key is refused."""
    try:
        deleted = service.delete_storage_objects(user_id, request.storage_keys)
    except (HTTPException, UploadPipelineError):
        raise
    except Exception as e:
        logger.error(f"Unexpected error deleting storage objects: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
    return DeleteStorageObjectsResponse(deleted=deleted)


@router.post("/reconcile", response_model=OrphanReport)
def reconcile(
    user_id: str = Depends(get_current_user_id),
    verifier: CompletionVerifier = Depends(get_verifier),
) -> OrphanReport:
    """Run the orphan sweep now over the caller's own uploads and storage keys."""
    logger.info("On-demand reconciliation requested", extra={"user_id": user_id})
    try:
        return verifier.sweep_orphans(owner_id=user_id)
    except (HTTPException, UploadPipelineError):
        raise
    except Exception as e:
        logger.error(f"Unexpected error during reconciliation: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
