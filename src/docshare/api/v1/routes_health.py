"""Health check endpoint for the DocShare upload service."""

from fastapi import APIRouter

from docshare.core.config import settings

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint.

    Kept free of database and storage calls so it answers quickly during startup.

    Returns:
        dict: Health status response with status, service, version and storage backend
    """
    return {
        "status": "ok",
        "service": settings.SERVICE_NAME,
        "version": settings.SERVICE_VERSION,
        "storage_backend": settings.STORAGE_BACKEND,
    }
