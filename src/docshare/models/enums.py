"""Enumerations shared by the wire models, the ORM and the client."""

from enum import Enum


class _CaseInsensitiveEnum(str, Enum):
    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            for member in cls:
                if member.value == value.upper():
                    return member
        return None


class Visibility(_CaseInsensitiveEnum):
    """Who may see a resource, folder or file."""

    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"


class DocumentCategory(_CaseInsensitiveEnum):
    """Kind of teaching material."""

    LECTURE = "LECTURE"
    EXERCISE = "EXERCISE"
    EXAM = "EXAM"
    REFERENCE = "REFERENCE"
    OTHER = "OTHER"


class ResourceStatus(str, Enum):
    """Moderation lifecycle of a resource."""

    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class UploadStatus(str, Enum):
    """Persisted upload status."""

    PENDING = "PENDING"  # Row committed, storage object not yet verified
    COMPLETED = "COMPLETED"  # Storage object verified
    MISSING = "MISSING"  # Verification found no object, flagged for cleanup


class ModerationStatus(str, Enum):
    """Moderation decision for a single upload."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
