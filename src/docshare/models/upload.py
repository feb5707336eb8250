"""Upload data models.

Wire format is camelCase; Python code uses the snake_case field names.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from docshare.models.enums import (
    DocumentCategory,
    ModerationStatus,
    ResourceStatus,
    UploadStatus,
    Visibility,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class FileDescriptor(CamelModel):
    """One file the client wants to upload."""

    filename: str
    mimetype: str
    size: int
    folder_id: Optional[str] = None


class RequestUrlsRequest(CamelModel):
    """Request model for minting pre-signed upload URLs."""

    files: list[FileDescriptor]


class PreSignedItem(CamelModel):
    storage_key: str
    pre_signed_url: str
    filename: str
    size: int
    mimetype: str


class RequestUrlsResponse(CamelModel):
    """Response model for a batch of pre-signed upload URLs."""

    session_id: str
    pre_signed_data: list[PreSignedItem]
    expires_in: int  # seconds


class NewFolderData(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    classification_id: str = Field(min_length=1)
    tag_ids: list[str] = Field(default_factory=list)
    visibility: Visibility = Visibility.PRIVATE

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("folder name must not be blank")
        return value


class FolderManagement(CamelModel):
    """Either an existing folder id or data for a new folder, never both."""

    selected_folder_id: Optional[str] = None
    new_folder_data: Optional[NewFolderData] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "FolderManagement":
        if (self.selected_folder_id is None) == (self.new_folder_data is None):
            raise ValueError("provide exactly one of selectedFolderId or newFolderData")
        return self


class FileMetadata(CamelModel):
    """Per-file metadata keyed by the storage key obtained from the broker."""

    storage_key: str = Field(min_length=1)
    original_filename: str = Field(min_length=1)
    mimetype: str
    size: int = Field(gt=0)
    title: str = Field(min_length=1, max_length=255)
    description: str = ""
    category: DocumentCategory
    visibility: Visibility


class CreateResourceRequest(CamelModel):
    """Request model for the transactional resource commit."""

    title: str = Field(min_length=1, max_length=255)
    description: str = ""
    visibility: Visibility
    category: DocumentCategory = DocumentCategory.OTHER
    session_id: Optional[str] = None
    folder_management: Optional[FolderManagement] = None
    files: list[FileMetadata] = Field(min_length=1)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be blank")
        return value


class ResourceOut(CamelModel):
    id: str
    owner_id: str
    title: str
    description: str
    visibility: Visibility
    category: DocumentCategory
    status: ResourceStatus
    created_at: datetime


class UploadOut(CamelModel):
    id: str
    user_id: str
    resource_id: str
    file_name: str
    title: str
    description: str
    category: DocumentCategory
    visibility: Visibility
    mime_type: str
    size: int
    storage_key: str
    status: UploadStatus
    moderation_status: ModerationStatus
    retry_count: int
    created_at: datetime
    uploaded_at: Optional[datetime] = None


class CreateResourceResponse(CamelModel):
    resource: ResourceOut
    uploads: list[UploadOut]
    folder_id: Optional[str] = None


class CompletionReport(CamelModel):
    """Outcome of verifying a resource's uploads against storage."""

    resource_id: str
    completed: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)
    already_completed: list[str] = Field(default_factory=list)


class RetryRequest(CamelModel):
    upload_id: str


class RetryResponse(CamelModel):
    upload_id: str
    storage_key: str
    pre_signed_url: str
    expires_in: int
    retry_count: int


class DownloadResponse(CamelModel):
    download_url: str
    expires_in: int


class ResourceWithUploads(ResourceOut):
    uploads: list[UploadOut] = Field(default_factory=list)


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class MyUploadsResponse(CamelModel):
    uploads: list[ResourceWithUploads]
    pagination: Pagination


class DeleteStorageObjectRequest(CamelModel):
    storage_key: str = Field(min_length=1)


class DeleteStorageObjectsRequest(CamelModel):
    storage_keys: list[str] = Field(min_length=1, max_length=100)


class DeleteStorageObjectsResponse(CamelModel):
    deleted: list[str]


class OrphanReport(CamelModel):
    """Result of one reconciliation sweep."""

    scanned: int = 0
    verified_completed: list[str] = Field(default_factory=list)  # upload ids
    flagged_missing: list[str] = Field(default_factory=list)  # upload ids
    orphans: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    auto_delete: bool = False
    retention_hours: int = 0
    expired_sessions_purged: int = 0
