"""FileStorage and StorageProviderRecord model definitions."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from ..config.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class StorageProviderRecord(Base):
    """Object storage backend that holds uploaded files."""

    __tablename__ = "storage_providers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)
    endpoint: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    region: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    bucket: Mapped[str] = mapped_column(String, nullable=False)
    cdn_endpoint: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    config: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class FileStorage(Base):
    """Final stored object for a completed upload."""

    __tablename__ = "file_storage"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    upload_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("audio_uploads.id"), nullable=False, unique=True
    )
    provider_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("storage_providers.id"), nullable=False
    )

    storage_key: Mapped[str] = mapped_column(String, nullable=False)
    file_name: Mapped[str] = mapped_column(String, nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String, nullable=False)
    checksum: Mapped[str] = mapped_column(String, nullable=False)
    cdn_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    upload = relationship("AudioUpload", back_populates="file_storage")
    provider = relationship("StorageProviderRecord")
