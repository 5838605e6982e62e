"""AudioChunk model definition."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..config.database import Base


class AudioChunk(Base):
    """Bookkeeping row for one uploaded part of a multipart upload."""

    __tablename__ = "audio_chunks"
    __table_args__ = (
        UniqueConstraint("upload_id", "chunk_index", name="uq_audio_chunks_upload_chunk"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    upload_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("audio_uploads.id"), nullable=False, index=True
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)

    # Half-open byte range [start_byte, end_byte)
    start_byte: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_byte: Mapped[int] = mapped_column(BigInteger, nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)

    storage_key: Mapped[str] = mapped_column(String, nullable=False)
    etag: Mapped[str] = mapped_column(String, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    upload = relationship("AudioUpload", back_populates="chunks")
