"""Shared FastAPI dependencies."""

from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import sessionmaker

from docshare.core.exceptions import AuthExpiredError
from docshare.db.session import get_session_factory
from docshare.services.broker import PresignedUrlBroker
from docshare.services.identity import resolve_user_id
from docshare.services.resources import ResourceTransactionService
from docshare.services.retry import UploadRetryService
from docshare.services.verifier import CompletionVerifier
from docshare.storage.base import StorageBackend
from docshare.storage.factory import get_storage_backend
from docshare.storage.session_store import UploadSessionStore, session_store

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """Resolve the bearer credential on the request to a user id."""
    if credentials is None:
        raise AuthExpiredError("Missing bearer token")
    return await resolve_user_id(credentials.credentials)


def get_session_store() -> UploadSessionStore:
    return session_store


def get_broker(
    backend: StorageBackend = Depends(get_storage_backend),
    store: UploadSessionStore = Depends(get_session_store),
) -> PresignedUrlBroker:
    return PresignedUrlBroker(backend, store)


def get_resource_service(
    session_factory: sessionmaker = Depends(get_session_factory),
    backend: StorageBackend = Depends(get_storage_backend),
    store: UploadSessionStore = Depends(get_session_store),
) -> ResourceTransactionService:
    return ResourceTransactionService(session_factory, store, backend)


def get_retry_service(
    session_factory: sessionmaker = Depends(get_session_factory),
    broker: PresignedUrlBroker = Depends(get_broker),
    store: UploadSessionStore = Depends(get_session_store),
) -> UploadRetryService:
    return UploadRetryService(session_factory, broker, store)


def get_verifier(
    session_factory: sessionmaker = Depends(get_session_factory),
    backend: StorageBackend = Depends(get_storage_backend),
    store: UploadSessionStore = Depends(get_session_store),
) -> CompletionVerifier:
    return CompletionVerifier(session_factory, backend, store)
