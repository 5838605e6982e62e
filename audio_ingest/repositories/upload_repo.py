"""Upload record store: audio uploads, chunks, stored files and providers."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .base import BaseRepository
from ..models.audio_chunk import AudioChunk
from ..models.audio_upload import AudioUpload
from ..models.file_storage import FileStorage, StorageProviderRecord


class UploadRepository(BaseRepository[AudioUpload]):
    """Repository for upload bookkeeping."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, AudioUpload)

    async def create_upload(
        self,
        user_id: str,
        workspace_id: str,
        original_file_name: str,
        file_size: int,
        mime_type: str,
        storage_provider: str,
        upload_status: str = "pending",
    ) -> AudioUpload:
        """Create a new upload record."""
        return await self.create(
            user_id=user_id,
            workspace_id=workspace_id,
            original_file_name=original_file_name,
            file_size=file_size,
            mime_type=mime_type,
            storage_provider=storage_provider,
            upload_status=upload_status,
            upload_progress=0,
            upload_metadata={},
        )

    async def get_upload(self, upload_id: str) -> Optional[AudioUpload]:
        """Get upload by ID."""
        return await self.get_by_id(upload_id)

    async def update_upload(self, upload_id: str, **values) -> Optional[AudioUpload]:
        """Update upload columns by attribute name."""
        return await self.update(upload_id, **values)

    async def upsert_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        start_byte: int,
        end_byte: int,
        size: int,
        storage_key: str,
        etag: str,
        checksum: str,
        uploaded_at: datetime,
    ) -> AudioChunk:
        """Create the chunk row, or overwrite it when the chunk was re-uploaded."""
        stmt = select(AudioChunk).where(
            AudioChunk.upload_id == upload_id,
            AudioChunk.chunk_index == chunk_index,
        )
        result = await self.session.execute(stmt)
        chunk = result.scalar_one_or_none()

        if chunk is None:
            chunk = AudioChunk(upload_id=upload_id, chunk_index=chunk_index)
            self.session.add(chunk)

        chunk.start_byte = start_byte
        chunk.end_byte = end_byte
        chunk.size = size
        chunk.storage_key = storage_key
        chunk.etag = etag
        chunk.checksum = checksum
        chunk.uploaded_at = uploaded_at

        await self.session.commit()
        await self.session.refresh(chunk)
        return chunk

    async def list_chunks(self, upload_id: str) -> List[AudioChunk]:
        """Chunks of an upload ordered by index."""
        stmt = (
            select(AudioChunk)
            .where(AudioChunk.upload_id == upload_id)
            .order_by(AudioChunk.chunk_index)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def create_file_storage(
        self,
        upload_id: str,
        provider_id: str,
        storage_key: str,
        file_name: str,
        file_size: int,
        mime_type: str,
        checksum: str,
        cdn_url: Optional[str] = None,
        file_metadata: Optional[Dict[str, Any]] = None,
    ) -> FileStorage:
        """Record the stored object for a completed upload."""
        record = FileStorage(
            upload_id=upload_id,
            provider_id=provider_id,
            storage_key=storage_key,
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type,
            checksum=checksum,
            cdn_url=cdn_url,
            file_metadata=file_metadata or {},
        )
        self.session.add(record)
        await self.session.commit()
        await self.session.refresh(record)
        return record

    async def get_file_storage(self, upload_id: str) -> Optional[FileStorage]:
        """Get the stored object of an upload."""
        stmt = select(FileStorage).where(FileStorage.upload_id == upload_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_provider_by_name(self, name: str) -> Optional[StorageProviderRecord]:
        stmt = select(StorageProviderRecord).where(StorageProviderRecord.name == name)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_provider(self, descriptor: Dict[str, Any]) -> StorageProviderRecord:
        """Find the provider row by name, creating it from descriptor if missing."""
        provider = await self.get_provider_by_name(descriptor["name"])
        if provider is not None:
            return provider

        provider = StorageProviderRecord(**descriptor)
        self.session.add(provider)
        try:
            await self.session.commit()
        except IntegrityError:
            # Another request created it first
            await self.session.rollback()
            existing = await self.get_provider_by_name(descriptor["name"])
            if existing is None:
                raise
            return existing
        await self.session.refresh(provider)
        return provider
