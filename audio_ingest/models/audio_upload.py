"""AudioUpload model definition."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from ..config.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class AudioUpload(Base):
    """One client upload of an audio file, single-shot or multipart."""

    __tablename__ = "audio_uploads"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    workspace_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    original_file_name: Mapped[str] = mapped_column(String, nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String, nullable=False)
    storage_path: Mapped[Optional[str]] = mapped_column(String, nullable=True)  # storage key
    storage_provider: Mapped[str] = mapped_column(String, nullable=False)

    upload_status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    upload_progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    storage_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cdn_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    upload_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    chunks = relationship("AudioChunk", back_populates="upload", cascade="all, delete-orphan")
    file_storage = relationship("FileStorage", back_populates="upload", uselist=False)
