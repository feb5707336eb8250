"""ORM models for resources, folders and uploads."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docshare.db.session import Base
from docshare.models.enums import (
    DocumentCategory,
    ModerationStatus,
    ResourceStatus,
    UploadStatus,
    Visibility,
)


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls) -> SAEnum:
    # Stored as VARCHAR of the member values so SQLite and Postgres behave alike
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class ClassificationLevel(Base):
    __tablename__ = "classification_levels"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)


class Folder(Base):
    """A user-owned grouping of resources under one classification level."""

    __tablename__ = "folders"
    __table_args__ = (UniqueConstraint("owner_id", "name", name="uq_folders_owner_name"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    classification_level_id: Mapped[str] = mapped_column(
        ForeignKey("classification_levels.id"), nullable=False
    )
    visibility: Mapped[Visibility] = mapped_column(
        _enum(Visibility), nullable=False, default=Visibility.PRIVATE
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    tags: Mapped[list["FolderTag"]] = relationship(
        back_populates="folder", cascade="all, delete-orphan"
    )


class FolderTag(Base):
    __tablename__ = "folder_tags"

    folder_id: Mapped[str] = mapped_column(
        ForeignKey("folders.id", ondelete="CASCADE"), primary_key=True
    )
    tag_id: Mapped[str] = mapped_column(ForeignKey("tags.id"), primary_key=True)

    folder: Mapped[Folder] = relationship(back_populates="tags")


class Resource(Base):
    """Logical content entity owning one or more uploads."""

    __tablename__ = "resources"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    visibility: Mapped[Visibility] = mapped_column(_enum(Visibility), nullable=False)
    category: Mapped[DocumentCategory] = mapped_column(
        _enum(DocumentCategory), nullable=False, default=DocumentCategory.OTHER
    )
    status: Mapped[ResourceStatus] = mapped_column(
        _enum(ResourceStatus), nullable=False, default=ResourceStatus.PENDING_APPROVAL
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    uploads: Mapped[list["Upload"]] = relationship(
        back_populates="resource", cascade="all, delete-orphan", order_by="Upload.created_at"
    )
    folder_links: Mapped[list["FolderResource"]] = relationship(
        back_populates="resource", cascade="all, delete-orphan"
    )


class FolderResource(Base):
    __tablename__ = "folder_resources"

    folder_id: Mapped[str] = mapped_column(
        ForeignKey("folders.id", ondelete="CASCADE"), primary_key=True
    )
    resource_id: Mapped[str] = mapped_column(
        ForeignKey("resources.id", ondelete="CASCADE"), primary_key=True
    )
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    resource: Mapped[Resource] = relationship(back_populates="folder_links")


class Upload(Base):
    """One stored file belonging to exactly one resource."""

    __tablename__ = "uploads"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    resource_id: Mapped[str] = mapped_column(
        ForeignKey("resources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[DocumentCategory] = mapped_column(_enum(DocumentCategory), nullable=False)
    visibility: Mapped[Visibility] = mapped_column(_enum(Visibility), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    storage_key: Mapped[str] = mapped_column(String(1024), unique=True, nullable=False)
    status: Mapped[UploadStatus] = mapped_column(
        _enum(UploadStatus), nullable=False, default=UploadStatus.PENDING
    )
    moderation_status: Mapped[ModerationStatus] = mapped_column(
        _enum(ModerationStatus), nullable=False, default=ModerationStatus.PENDING
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    uploaded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    resource: Mapped[Resource] = relationship(back_populates="uploads")
