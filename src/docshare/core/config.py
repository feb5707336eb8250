"""Configuration management for the DocShare upload service."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    ENV: str = "local"
    SERVICE_NAME: str = "docshare-uploads"
    SERVICE_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./data/docshare.db"
    DATABASE_ECHO: bool = False

    # Storage Configuration
    STORAGE_BACKEND: str = "local"  # "gcs" or "local"
    GCP_PROJECT_ID: str = ""
    GCS_BUCKET_NAME: str = ""
    LOCAL_STORAGE_PATH: str = "data/objects"
    LOCAL_SIGNING_SECRET: str = "dev-only-local-signing-secret"
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    STORAGE_KEY_PREFIX: str = "temp"

    # Upload Constraints
    MAX_UPLOAD_MB: int = 50
    ALLOWED_UPLOAD_MIME_TYPES: str = (
        "application/pdf,"
        "application/msword,"
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
    )  # Comma-separated, empty = allow all
    MAX_FILES_PER_BATCH: int = 10
    MAX_FILENAME_LENGTH: int = 255

    # Pre-signed URL lifetimes
    PRESIGNED_URL_EXPIRY_MINUTES: int = 15
    DOWNLOAD_URL_EXPIRY_MINUTES: int = 15
    UPLOAD_SESSION_TTL_MINUTES: int = 120

    # Retry / reconciliation policy
    MAX_RETRY_ATTEMPTS: int = 3
    ORPHAN_RETENTION_HOURS: int = 24
    ORPHAN_AUTO_DELETE: bool = False
    RECONCILE_INTERVAL_SECONDS: int = 0  # 0 disables the periodic sweep

    # Link issuance limit per owner
    URL_RATE_LIMIT_FILES: int = 50  # 0 disables the limit
    URL_RATE_LIMIT_WINDOW_SECONDS: int = 60

    # External collaborators
    IDENTITY_SERVICE_URL: str = ""  # empty = dev mode, bearer token is the user id
    REQUEST_TIMEOUT: int = 30  # seconds for collaborator calls

    @property
    def allowed_mime_types(self) -> list[str] | None:
        """Parse ALLOWED_UPLOAD_MIME_TYPES into a list."""
        if not self.ALLOWED_UPLOAD_MIME_TYPES:
            return None
        return [mt.strip() for mt in self.ALLOWED_UPLOAD_MIME_TYPES.split(",") if mt.strip()]

    @property
    def max_upload_bytes(self) -> int:
        """Convert MAX_UPLOAD_MB to bytes."""
        return self.MAX_UPLOAD_MB * 1024 * 1024

    @property
    def presigned_url_expiry_seconds(self) -> int:
        """Convert PRESIGNED_URL_EXPIRY_MINUTES to seconds."""
        return self.PRESIGNED_URL_EXPIRY_MINUTES * 60

    @property
    def download_url_expiry_seconds(self) -> int:
        """Convert DOWNLOAD_URL_EXPIRY_MINUTES to seconds."""
        return self.DOWNLOAD_URL_EXPIRY_MINUTES * 60

    @property
    def orphan_retention_seconds(self) -> int:
        """Convert ORPHAN_RETENTION_HOURS to seconds."""
        return self.ORPHAN_RETENTION_HOURS * 3600


# Singleton settings instance
settings = Settings()
