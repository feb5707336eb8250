"""Pytest configuration and shared fixtures."""

import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from docshare.api.deps import get_session_store
from docshare.db.models import ClassificationLevel, Tag
from docshare.db.session import create_db_engine, get_session_factory, init_db
from docshare.services.broker import PresignedUrlBroker
from docshare.services.resources import ResourceTransactionService
from docshare.services.retry import UploadRetryService
from docshare.services.verifier import CompletionVerifier
from docshare.storage.factory import get_storage_backend
from docshare.storage.local import LocalStorageBackend
from docshare.storage.session_store import UploadSessionStore

PDF = "application/pdf"
DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


class FakeClock:
    """Settable wall clock in epoch seconds."""

    def __init__(self, now: float | None = None):
        self.now = now if now is not None else time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def upload_settings(monkeypatch, tmp_path):
    """Pin upload settings so tests do not depend on the environment."""
    from docshare.core.config import settings

    monkeypatch.setattr(settings, "STORAGE_BACKEND", "local")
    monkeypatch.setattr(settings, "LOCAL_STORAGE_PATH", str(tmp_path / "objects"))
    monkeypatch.setattr(settings, "STORAGE_KEY_PREFIX", "temp")
    monkeypatch.setattr(settings, "MAX_UPLOAD_MB", 50)
    monkeypatch.setattr(settings, "MAX_FILES_PER_BATCH", 10)
    monkeypatch.setattr(settings, "PRESIGNED_URL_EXPIRY_MINUTES", 15)
    monkeypatch.setattr(settings, "MAX_RETRY_ATTEMPTS", 3)
    monkeypatch.setattr(settings, "ORPHAN_RETENTION_HOURS", 24)
    monkeypatch.setattr(settings, "ORPHAN_AUTO_DELETE", False)
    monkeypatch.setattr(settings, "URL_RATE_LIMIT_FILES", 50)
    monkeypatch.setattr(settings, "URL_RATE_LIMIT_WINDOW_SECONDS", 60)
    monkeypatch.setattr(settings, "IDENTITY_SERVICE_URL", "")
    monkeypatch.setattr(
        settings,
        "ALLOWED_UPLOAD_MIME_TYPES",
        f"{PDF},application/msword,{DOCX}",
    )
    return settings


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_engine():
    """In-memory SQLite shared across threads."""
    engine = create_db_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
def reference_data(session_factory):
    """Seed one classification level and two tags."""
    with session_factory() as db, db.begin():
        db.add(ClassificationLevel(id="level-1", name="Secondary school"))
        db.add_all([Tag(id="tag-1", name="math"), Tag(id="tag-2", name="physics")])
    return {"classification_id": "level-1", "tag_ids": ["tag-1", "tag-2"]}


@pytest.fixture
def backend(tmp_path, clock):
    return LocalStorageBackend(
        base_path=str(tmp_path / "objects"),
        secret="test-secret",
        public_base_url="http://testserver",
        clock=clock,
    )


@pytest.fixture
def store():
    return UploadSessionStore()


@pytest.fixture
def broker(backend, store):
    return PresignedUrlBroker(backend, store)


@pytest.fixture
def resource_service(session_factory, store, backend):
    return ResourceTransactionService(session_factory, store, backend)


@pytest.fixture
def retry_service(session_factory, broker, store):
    return UploadRetryService(session_factory, broker, store)


@pytest.fixture
def verifier(session_factory, backend, store):
    return CompletionVerifier(session_factory, backend, store)


@pytest.fixture
def app(session_factory, backend, store):
    """Application wired to the test database, storage and session store."""
    from docshare.main import create_app

    application = create_app()
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_storage_backend] = lambda: backend
    application.dependency_overrides[get_session_store] = lambda: store
    return application


@pytest.fixture
def client(app):
    """Test client authenticated as user-1."""
    return TestClient(app, headers={"Authorization": "Bearer user-1"})


def put_object(client: TestClient, url: str, data: bytes, content_type: str = PDF):
    """Upload bytes through a local signed URL."""
    return client.put(url, content=data, headers={"Content-Type": content_type})
