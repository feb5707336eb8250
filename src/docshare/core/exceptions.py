"""Custom exceptions for the upload pipeline.

The same classes are raised on the server (and mapped to HTTP responses in
``docshare.main``) and re-raised on the client from those responses, so the
coordinator can branch on the class rather than on status codes.
"""

from typing import Any, Optional


class UploadPipelineError(Exception):
    """Base exception for the upload pipeline."""

    code = "UPLOAD_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code, "details": self.details}


class ValidationError(UploadPipelineError):
    """Malformed size/type or a missing required field. Never retried."""

    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidReferenceError(ValidationError):
    """Unknown classification level or tag id."""

    code = "INVALID_REFERENCE"
    status_code = 422


class NotFoundError(UploadPipelineError):
    """Requested resource, upload or folder does not exist for this user."""

    code = "NOT_FOUND"
    status_code = 404


class PermissionDeniedError(UploadPipelineError):
    """Storage key or record belongs to another owner."""

    code = "FORBIDDEN"
    status_code = 403


class AuthExpiredError(UploadPipelineError):
    """Pre-signed URL or session credential expired."""

    code = "AUTH_EXPIRED"
    status_code = 401


class NetworkTransientError(UploadPipelineError):
    """Connection drop or transient upstream failure."""

    code = "NETWORK_TRANSIENT"
    status_code = 503


class ConflictError(UploadPipelineError):
    """Uniqueness violation such as a duplicate folder name."""

    code = "CONFLICT"
    status_code = 409


class TransactionFailure(UploadPipelineError):
    """Database commit failed; the whole submission was rolled back."""

    code = "TRANSACTION_FAILED"
    status_code = 500


class RetryLimitExceededError(UploadPipelineError):
    """A file has used up its allowed retries."""

    code = "RETRY_LIMIT_EXCEEDED"
    status_code = 429


class RateLimitedError(UploadPipelineError):
    """Too many upload links issued to one owner in the current window."""

    code = "RATE_LIMITED"
    status_code = 429


class StorageError(UploadPipelineError):
    """Object storage operation failed."""

    code = "STORAGE_ERROR"
    status_code = 502


ERRORS_BY_CODE: dict[str, type[UploadPipelineError]] = {
    cls.code: cls
    for cls in (
        UploadPipelineError,
        ValidationError,
        InvalidReferenceError,
        NotFoundError,
        PermissionDeniedError,
        AuthExpiredError,
        NetworkTransientError,
        ConflictError,
        TransactionFailure,
        RetryLimitExceededError,
        RateLimitedError,
        StorageError,
    )
}
