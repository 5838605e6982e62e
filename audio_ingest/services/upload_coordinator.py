"""Upload coordination: single-shot and multipart ingestion of audio files."""

from dataclasses import dataclass
from typing import List, NoReturn, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..config.storage import get_provider_descriptor
from ..core.exceptions import (
    InvalidStateError,
    NotFoundError,
    NotInitializedError,
    StorageError,
    UploadError,
    ValidationError,
)
from ..middleware.validation import validate_upload_request
from ..models.audio_upload import AudioUpload
from ..models.file_storage import StorageProviderRecord
from ..repositories.storage_repo import StorageRepository
from ..repositories.upload_repo import UploadRepository
from ..utils.checksum import ChecksumCalculator
from ..utils.constants import CANCELLED_REASON, MIN_PART_NUMBER, UploadMode, UploadStatus
from ..utils.helpers import generate_storage_key, part_storage_key, sanitize_filename, utc_now
from ..utils.logger import get_logger
from .session_registry import ActiveUploadRegistry, ChunkRange, MultipartSession, PartRecord

logger = get_logger(__name__)


@dataclass
class ChunkUploadResult:
    """Outcome of storing one part."""

    part_number: int
    etag: str
    size: int


def _reraise(error: Exception, message: str, upload_id: Optional[str]) -> NoReturn:
    """Propagate domain errors as-is, wrap anything else in StorageError."""
    if isinstance(error, UploadError):
        raise error
    raise StorageError(f"{message}: {error}", upload_id=upload_id) from error


class UploadCoordinator:
    """
    Orchestrates the upload lifecycle.

    Sessions live in the injected ActiveUploadRegistry, which outlives any
    single coordinator; a coordinator is cheap and built per request around
    a database session.
    """

    def __init__(
        self,
        db: AsyncSession,
        registry: ActiveUploadRegistry,
        storage_repo: Optional[StorageRepository] = None,
        upload_repo: Optional[UploadRepository] = None,
    ):
        self.db = db
        self.registry = registry
        self.upload_repo = upload_repo or UploadRepository(db)
        self.storage_repo = storage_repo or StorageRepository()

    async def initialize_upload(
        self,
        user_id: str,
        workspace_id: str,
        filename: str,
        file_size: int,
        mime_type: str,
    ) -> str:
        """
        Create the upload record and, for large files, open a remote
        multipart session. Returns the upload ID.
        """
        validate_upload_request(filename, file_size, mime_type)

        try:
            upload = await self.upload_repo.create_upload(
                user_id=user_id,
                workspace_id=workspace_id,
                original_file_name=filename,
                file_size=file_size,
                mime_type=mime_type,
                storage_provider=self.storage_repo.provider,
                upload_status=UploadStatus.PENDING.value,
            )
        except SQLAlchemyError as e:
            logger.error("Failed to create upload record", error=str(e))
            raise StorageError(f"Failed to initialize upload: {e}") from e

        storage_key = generate_storage_key(workspace_id, user_id, sanitize_filename(filename))
        session: Optional[MultipartSession] = None

        try:
            if file_size > settings.multipart_threshold_bytes:
                remote_upload_id = await self.storage_repo.create_multipart_upload(
                    storage_key, mime_type
                )
                session = MultipartSession(
                    remote_upload_id=remote_upload_id, storage_key=storage_key
                )

            await self.upload_repo.update_upload(
                upload.id,
                storage_path=storage_key,
                upload_status=UploadStatus.UPLOADING.value,
            )
        except Exception as e:
            logger.error("Failed to initialize upload", upload_id=upload.id, error=str(e))
            if session is not None:
                await self._abort_remote(upload.id, session)
            await self._mark_failed(upload.id, str(e), rollback=isinstance(e, SQLAlchemyError))
            _reraise(e, "Failed to initialize upload", upload.id)

        # Registered only once the record points at the storage key
        if session is not None:
            self.registry.register(upload.id, session)

        logger.info(
            "Upload initialized",
            upload_id=upload.id,
            file_size=file_size,
            storage_key=storage_key,
            multipart=session is not None,
        )
        return upload.id

    async def upload_single_file(self, upload_id: str, file_buffer: bytes) -> AudioUpload:
        """Store a file at or below the multipart threshold in one request."""
        upload = await self.upload_repo.get_upload(upload_id)
        if upload is None or not upload.storage_path:
            raise NotFoundError("Upload not found or not initialized", upload_id=upload_id)
        self._ensure_not_terminal(upload)
        if upload_id in self.registry or upload.file_size > settings.multipart_threshold_bytes:
            raise ValidationError(
                "Upload exceeds the multipart threshold; send it in chunks", upload_id=upload_id
            )
        if not file_buffer:
            raise ValidationError("File is empty", upload_id=upload_id)
        if len(file_buffer) > upload.file_size:
            raise ValidationError(
                f"File is {len(file_buffer)} bytes, larger than the declared {upload.file_size}",
                upload_id=upload_id,
            )

        try:
            async with self.registry.lock(upload_id):
                upload = await self.upload_repo.get_upload(upload_id)
                self._ensure_not_terminal(upload)

                try:
                    stored = await self.storage_repo.upload_file(
                        upload.storage_path,
                        bytes(file_buffer),
                        content_type=upload.mime_type,
                        metadata={
                            "uploadId": upload_id,
                            "originalFileName": sanitize_filename(upload.original_file_name),
                        },
                    )
                    provider = await self._get_provider()
                    await self.upload_repo.create_file_storage(
                        upload_id=upload_id,
                        provider_id=provider.id,
                        storage_key=upload.storage_path,
                        file_name=upload.original_file_name,
                        file_size=len(file_buffer),
                        mime_type=upload.mime_type,
                        checksum=ChecksumCalculator.calculate(file_buffer),
                        cdn_url=stored.cdn_url,
                        file_metadata={"uploadedAt": utc_now().isoformat()},
                    )
                    upload = await self._transition(
                        upload,
                        UploadStatus.COMPLETED,
                        upload_progress=100,
                        storage_url=stored.url,
                        cdn_url=stored.cdn_url,
                    )
                except Exception as e:
                    await self._mark_failed(
                        upload_id, str(e), rollback=isinstance(e, SQLAlchemyError)
                    )
                    _reraise(e, "Failed to upload file", upload_id)
        finally:
            self.registry.release(upload_id)

        logger.info("Single file upload completed", upload_id=upload_id, size=len(file_buffer))
        return upload

    async def upload_chunk(
        self,
        upload_id: str,
        chunk_data: bytes,
        chunk_index: int,
        total_chunks: int,
    ) -> ChunkUploadResult:
        """
        Upload one chunk as part chunk_index + 1 of the multipart session.

        Chunks may arrive in any order and concurrently. Re-sending a chunk
        replaces its earlier part. The chunk that brings the number of
        distinct parts to total_chunks finalizes the upload.
        """
        session = self.registry.get(upload_id)
        if session is None:
            raise NotInitializedError("Multipart upload not initialized", upload_id=upload_id)

        if total_chunks < 1:
            raise ValidationError("total_chunks must be at least 1", upload_id=upload_id)
        if not 0 <= chunk_index < total_chunks:
            raise ValidationError(
                f"chunk_index must be between 0 and {total_chunks - 1}", upload_id=upload_id
            )
        if not chunk_data:
            raise ValidationError("Chunk is empty", upload_id=upload_id)
        if session.total_parts is not None and session.total_parts != total_chunks:
            raise ValidationError(
                f"Upload expects {session.total_parts} chunks, got total of {total_chunks}",
                upload_id=upload_id,
            )
        if session.mode == UploadMode.DIRECT:
            raise InvalidStateError(
                "Upload parts are being sent to presigned URLs", upload_id=upload_id
            )

        upload = await self.upload_repo.get_upload(upload_id)
        if upload is None:
            raise NotFoundError("Upload not found", upload_id=upload_id)
        self._ensure_not_terminal(upload)
        if session.finalizing:
            raise InvalidStateError("Upload is being finalized", upload_id=upload_id)

        part_number = chunk_index + 1
        try:
            etag = await self.storage_repo.upload_part(
                session.storage_key, session.remote_upload_id, bytes(chunk_data), part_number
            )
        except StorageError as e:
            # Left uploading; the caller may resend the same chunk
            logger.error(
                "Failed to upload chunk",
                upload_id=upload_id,
                chunk_index=chunk_index,
                error=str(e),
            )
            e.upload_id = upload_id
            raise

        part = PartRecord(
            part_number=part_number,
            etag=etag,
            size=len(chunk_data),
            checksum=ChecksumCalculator.calculate(chunk_data),
        )
        return await self._accept_part(upload_id, part, total_chunks, UploadMode.PROXIED)

    async def register_part(
        self,
        upload_id: str,
        part_number: int,
        etag: str,
        size: int,
        checksum: str,
    ) -> ChunkUploadResult:
        """Record a part the client uploaded straight to a presigned URL."""
        session = self.registry.get(upload_id)
        if session is None:
            raise NotInitializedError("Multipart upload not initialized", upload_id=upload_id)
        if session.mode != UploadMode.DIRECT:
            raise InvalidStateError(
                "Parts can only be reported after presigned URLs were issued",
                upload_id=upload_id,
            )
        if not MIN_PART_NUMBER <= part_number <= session.total_parts:
            raise ValidationError(
                f"part_number must be between {MIN_PART_NUMBER} and {session.total_parts}",
                upload_id=upload_id,
            )
        if not etag or not etag.strip():
            raise ValidationError("etag is required", upload_id=upload_id)
        if size <= 0:
            raise ValidationError("size must be greater than zero", upload_id=upload_id)
        if not ChecksumCalculator.is_valid(checksum):
            raise ValidationError("checksum must be a hex SHA-256 digest", upload_id=upload_id)

        upload = await self.upload_repo.get_upload(upload_id)
        if upload is None:
            raise NotFoundError("Upload not found", upload_id=upload_id)
        self._ensure_not_terminal(upload)

        part = PartRecord(
            part_number=part_number,
            etag=etag.strip(),
            size=size,
            checksum=checksum.lower(),
        )
        return await self._accept_part(upload_id, part, session.total_parts, UploadMode.DIRECT)

    async def _accept_part(
        self,
        upload_id: str,
        part: PartRecord,
        total_parts: int,
        mode: UploadMode,
    ) -> ChunkUploadResult:
        """Record a stored part, update progress and finalize when complete."""
        try:
            async with self.registry.lock(upload_id):
                session = self.registry.get(upload_id)
                if session is None:
                    raise NotInitializedError(
                        "Multipart upload is no longer active", upload_id=upload_id
                    )
                if session.finalizing:
                    raise InvalidStateError("Upload is being finalized", upload_id=upload_id)

                session.claim_mode(mode)
                session.fix_total(total_parts)
                replaced = not session.record_part(part)

                chunk_index = part.part_number - 1
                # Offsets assume full-size non-final chunks; the provider
                # rejects undersized parts when the upload is completed
                chunk_range = ChunkRange.for_chunk(
                    chunk_index, part.size, settings.chunk_size_bytes
                )
                try:
                    await self.upload_repo.upsert_chunk(
                        upload_id=upload_id,
                        chunk_index=chunk_index,
                        start_byte=chunk_range.start,
                        end_byte=chunk_range.end,
                        size=part.size,
                        storage_key=part_storage_key(session.storage_key, part.part_number),
                        etag=part.etag,
                        checksum=part.checksum,
                        uploaded_at=utc_now(),
                    )
                    # 100 is reserved for the completed state
                    if not session.is_complete:
                        progress = min(99, session.parts_received * 100 // session.total_parts)
                        await self.upload_repo.update_upload(upload_id, upload_progress=progress)
                except SQLAlchemyError as e:
                    await self.db.rollback()
                    raise StorageError(f"Failed to record chunk: {e}", upload_id=upload_id) from e

                logger.info(
                    "Chunk uploaded",
                    upload_id=upload_id,
                    part_number=part.part_number,
                    size=part.size,
                    parts_received=session.parts_received,
                    total_parts=session.total_parts,
                    replaced=replaced,
                )

                if session.is_complete:
                    session.finalizing = True
                    await self._finalize(upload_id, session)
        finally:
            self.registry.release(upload_id)

        return ChunkUploadResult(part_number=part.part_number, etag=part.etag, size=part.size)

    async def _finalize(self, upload_id: str, session: MultipartSession) -> None:
        """
        Complete the remote multipart upload and the upload record.

        Caller holds the upload's lock. On failure the record is marked
        failed and the session stays registered so cancel_upload can abort
        the remote upload.
        """
        try:
            upload = await self.upload_repo.get_upload(upload_id)
            if upload is None:
                raise NotFoundError("Upload not found", upload_id=upload_id)

            parts = session.ordered_parts()
            await self.storage_repo.complete_multipart_upload(
                session.storage_key,
                session.remote_upload_id,
                [{"part_number": p.part_number, "etag": p.etag} for p in parts],
            )

            url = await self.storage_repo.get_file_url(session.storage_key)
            cdn_url = self.storage_repo.get_cdn_url(session.storage_key)
            provider = await self._get_provider()

            await self.upload_repo.create_file_storage(
                upload_id=upload_id,
                provider_id=provider.id,
                storage_key=session.storage_key,
                file_name=upload.original_file_name,
                file_size=upload.file_size,
                mime_type=upload.mime_type,
                checksum=ChecksumCalculator.composite(p.checksum for p in parts),
                cdn_url=cdn_url,
                file_metadata={
                    "uploadedAt": utc_now().isoformat(),
                    "multipart": True,
                    "parts": len(parts),
                    "mode": session.mode.value,
                    "checksumAlgorithm": "sha256-composite",
                },
            )
            await self._transition(
                upload,
                UploadStatus.COMPLETED,
                upload_progress=100,
                storage_url=url,
                cdn_url=cdn_url,
            )
        except Exception as e:
            logger.error("Failed to complete multipart upload", upload_id=upload_id, error=str(e))
            await self._mark_failed(upload_id, str(e), rollback=isinstance(e, SQLAlchemyError))
            _reraise(e, "Failed to complete multipart upload", upload_id)

        self.registry.remove(upload_id)
        logger.info("Multipart upload completed", upload_id=upload_id, parts=session.parts_received)

    async def cancel_upload(self, upload_id: str) -> None:
        """
        Cancel an upload: abort the remote session (best effort) and mark the
        record failed with reason "cancelled".
        """
        upload = await self.upload_repo.get_upload(upload_id)
        if upload is None:
            raise NotFoundError("Upload not found", upload_id=upload_id)

        try:
            async with self.registry.lock(upload_id):
                upload = await self.upload_repo.get_upload(upload_id)
                session = self.registry.get(upload_id)
                status = UploadStatus(upload.upload_status)

                # A failed finalize leaves its session behind for cleanup
                leftover = status == UploadStatus.FAILED and session is not None
                if status.is_terminal and not leftover:
                    raise InvalidStateError(
                        f"Upload is already {status.value}", upload_id=upload_id
                    )

                if session is not None:
                    await self._abort_remote(upload_id, session)

                metadata = dict(upload.upload_metadata or {})
                metadata.update(
                    {"reason": CANCELLED_REASON, "cancelledAt": utc_now().isoformat()}
                )

                if leftover:
                    await self.upload_repo.update_upload(upload_id, upload_metadata=metadata)
                else:
                    await self._transition(
                        upload,
                        UploadStatus.FAILED,
                        failed_reason=CANCELLED_REASON,
                        upload_metadata=metadata,
                    )
                self.registry.remove(upload_id)
        finally:
            self.registry.release(upload_id)

        logger.info("Upload cancelled", upload_id=upload_id, had_session=session is not None)

    async def generate_upload_urls(self, upload_id: str, part_count: int) -> List[str]:
        """
        Presigned part URLs for client-direct upload, in part-number order.

        Switches the session to direct mode; the client then reports each
        part's ETag through register_part.
        """
        if self.registry.get(upload_id) is None:
            raise NotInitializedError("Multipart upload not initialized", upload_id=upload_id)
        if not 1 <= part_count <= settings.max_multipart_parts:
            raise ValidationError(
                f"part_count must be between 1 and {settings.max_multipart_parts}",
                upload_id=upload_id,
            )

        try:
            async with self.registry.lock(upload_id):
                session = self.registry.get(upload_id)
                if session is None:
                    raise NotInitializedError(
                        "Multipart upload is no longer active", upload_id=upload_id
                    )
                if session.finalizing:
                    raise InvalidStateError("Upload is being finalized", upload_id=upload_id)
                session.claim_mode(UploadMode.DIRECT)
                session.fix_total(part_count)
                storage_key = session.storage_key
                remote_upload_id = session.remote_upload_id
        finally:
            self.registry.release(upload_id)

        urls = []
        for part_number in range(1, part_count + 1):
            urls.append(
                await self.storage_repo.generate_presigned_part_url(
                    storage_key,
                    remote_upload_id,
                    part_number,
                    settings.presigned_url_expiry_seconds,
                )
            )

        logger.info("Presigned part URLs issued", upload_id=upload_id, part_count=part_count)
        return urls

    async def get_upload(self, upload_id: str) -> AudioUpload:
        """Get an upload record or raise NotFoundError."""
        upload = await self.upload_repo.get_upload(upload_id)
        if upload is None:
            raise NotFoundError("Upload not found", upload_id=upload_id)
        return upload

    def _ensure_not_terminal(self, upload: AudioUpload) -> None:
        status = UploadStatus(upload.upload_status)
        if status.is_terminal:
            raise InvalidStateError(f"Upload is already {status.value}", upload_id=upload.id)

    async def _transition(self, upload: AudioUpload, status: UploadStatus, **values) -> AudioUpload:
        """Move an upload to a new status, enforcing the lifecycle."""
        current = UploadStatus(upload.upload_status)
        if not current.can_transition_to(status):
            raise InvalidStateError(
                f"Cannot move upload from {current.value} to {status.value}",
                upload_id=upload.id,
            )
        return await self.upload_repo.update_upload(
            upload.id, upload_status=status.value, **values
        )

    async def _mark_failed(self, upload_id: str, reason: str, rollback: bool = False) -> None:
        """Record a failure on a non-terminal upload."""
        try:
            if rollback:
                await self.db.rollback()
            upload = await self.upload_repo.get_upload(upload_id)
            if upload is None or UploadStatus(upload.upload_status).is_terminal:
                return
            metadata = dict(upload.upload_metadata or {})
            metadata.update({"error": reason, "failedAt": utc_now().isoformat()})
            await self.upload_repo.update_upload(
                upload_id,
                upload_status=UploadStatus.FAILED.value,
                failed_reason=reason,
                upload_metadata=metadata,
            )
            logger.error("Upload marked failed", upload_id=upload_id, reason=reason)
        except SQLAlchemyError:
            # The original error is what the caller sees
            logger.exception("Could not mark upload failed", upload_id=upload_id)

    async def _abort_remote(self, upload_id: str, session: MultipartSession) -> None:
        """Abort the remote multipart upload; failures are logged only."""
        try:
            await self.storage_repo.abort_multipart_upload(
                session.storage_key, session.remote_upload_id
            )
            logger.info("Multipart upload aborted", upload_id=upload_id)
        except StorageError as e:
            logger.warning(
                "Failed to abort multipart upload",
                upload_id=upload_id,
                remote_upload_id=session.remote_upload_id,
                error=str(e),
            )

    async def _get_provider(self) -> StorageProviderRecord:
        return await self.upload_repo.get_or_create_provider(
            get_provider_descriptor(self.storage_repo.provider)
        )
