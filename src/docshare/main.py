"""Main application entrypoint for the DocShare upload service."""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from docshare.api.v1 import routes_health
from docshare.api.v1.routes_storage import router as storage_router
from docshare.api.v1.routes_upload import router as upload_router
from docshare.core.config import settings
from docshare.core.exceptions import UploadPipelineError, ValidationError
from docshare.core.logging import setup_logging
from docshare.core.middleware import HTTPErrorLoggingMiddleware
from docshare.db.session import SessionLocal, init_db
from docshare.services.verifier import CompletionVerifier
from docshare.storage.factory import get_storage_backend
from docshare.storage.session_store import session_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()

    stop_event = asyncio.Event()
    sweeper = None
    if settings.RECONCILE_INTERVAL_SECONDS > 0:
        verifier = CompletionVerifier(SessionLocal, get_storage_backend(), session_store)
        sweeper = asyncio.create_task(
            verifier.run_periodic(settings.RECONCILE_INTERVAL_SECONDS, stop_event)
        )

    logger.info(
        "Service started",
        extra={"service": settings.SERVICE_NAME, "storage_backend": settings.STORAGE_BACKEND},
    )
    try:
        yield
    finally:
        stop_event.set()
        if sweeper is not None:
            await sweeper


async def upload_pipeline_error_handler(request: Request, exc: UploadPipelineError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg')}" if location else str(first.get("msg", "Invalid request"))
    error = ValidationError(message, details={"errors": errors})
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    # Initialize logging first
    setup_logging()

    app = FastAPI(
        title=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(HTTPErrorLoggingMiddleware)
    app.add_exception_handler(UploadPipelineError, upload_pipeline_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)

    # Register routers
    app.include_router(routes_health.router, tags=["health"])
    app.include_router(upload_router)
    app.include_router(storage_router)

    return app


# Export app instance for ASGI servers
app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8080"))
    uvicorn.run(app, host="0.0.0.0", port=port)
