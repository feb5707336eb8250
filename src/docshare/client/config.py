"""Client-side configuration."""

from dataclasses import dataclass, field

DEFAULT_ALLOWED_MIME_TYPES = (
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
)


@dataclass
class ClientConfig:
    """Settings for the upload client.

    Attributes:
        base_url: Upload service root, e.g. ``https://api.example.com``
        token: Bearer credential attached to every service call
        parallelism: Maximum concurrent storage transfers
        api_attempts: Attempts per service call on transient failures
        transfer_attempts: Attempts per storage PUT on transient failures
        backoff_min: Lower bound of the exponential backoff, seconds
        backoff_max: Upper bound of the exponential backoff, seconds
        api_timeout: Timeout for service calls, seconds
        transfer_timeout: Timeout for one storage PUT, seconds
        chunk_size: Bytes per streamed body chunk
        max_retries_per_file: User-initiated retries allowed per file
        max_files_per_batch: Files per link request; matches the service's MAX_FILES_PER_BATCH
        max_file_bytes: Local size check before asking for URLs
        allowed_mime_types: Local type check before asking for URLs; empty allows all
    """

    base_url: str = "http://localhost:8000"
    token: str = ""
    parallelism: int = 4
    api_attempts: int = 3
    transfer_attempts: int = 3
    backoff_min: float = 1.0
    backoff_max: float = 8.0
    api_timeout: float = 30.0
    transfer_timeout: float = 300.0
    chunk_size: int = 64 * 1024
    max_retries_per_file: int = 3
    max_files_per_batch: int = 10
    max_file_bytes: int = 50 * 1024 * 1024
    allowed_mime_types: tuple[str, ...] = field(default=DEFAULT_ALLOWED_MIME_TYPES)
