"""Audio upload routes."""

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile, status

from ..config import settings
from ..core.dependencies import get_current_user_id, get_upload_coordinator
from ..core.exceptions import NotFoundError
from ..middleware.rate_limit import UPLOAD_INIT_LIMIT, limiter
from ..models.audio_upload import AudioUpload
from ..schemas.upload import (
    ChunkUploadResponse,
    InitializeUploadRequest,
    InitializeUploadResponse,
    PartUrl,
    PresignedUrlsRequest,
    PresignedUrlsResponse,
    RegisterPartRequest,
    UploadResponse,
)
from ..services.upload_coordinator import UploadCoordinator
from ..utils.helpers import calculate_total_chunks

router = APIRouter(prefix="/uploads", tags=["uploads"])


async def _get_owned_upload(
    coordinator: UploadCoordinator, upload_id: str, user_id: str
) -> AudioUpload:
    upload = await coordinator.get_upload(upload_id)
    if upload.user_id != user_id:
        # Don't reveal uploads that belong to someone else
        raise NotFoundError("Upload not found", upload_id=upload_id)
    return upload


def _to_response(coordinator: UploadCoordinator, upload: AudioUpload) -> UploadResponse:
    session = coordinator.registry.get(upload.id)
    response = UploadResponse.model_validate(upload)
    return response.model_copy(
        update={
            "multipart_active": session is not None,
            "parts_received": session.parts_received if session else 0,
        }
    )


@router.post(
    "/initialize",
    response_model=InitializeUploadResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(UPLOAD_INIT_LIMIT)
async def initialize_upload(
    request: Request,
    body: InitializeUploadRequest,
    user_id: str = Depends(get_current_user_id),
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
):
    """
    Start an upload.

    Files above the multipart threshold are sent in chunks of chunk_size
    bytes; with direct=true the response also carries presigned part URLs.
    """
    upload_id = await coordinator.initialize_upload(
        user_id=user_id,
        workspace_id=body.workspace_id,
        filename=body.filename,
        file_size=body.file_size,
        mime_type=body.mime_type,
    )

    multipart = body.file_size > settings.multipart_threshold_bytes
    total_chunks = (
        calculate_total_chunks(body.file_size, settings.chunk_size_bytes) if multipart else 1
    )

    upload_urls = []
    expires_in = None
    if multipart and body.direct:
        urls = await coordinator.generate_upload_urls(upload_id, total_chunks)
        upload_urls = [PartUrl(part_number=i, upload_url=url) for i, url in enumerate(urls, 1)]
        expires_in = settings.presigned_url_expiry_seconds

    return InitializeUploadResponse(
        upload_id=upload_id,
        multipart=multipart,
        chunk_size=settings.chunk_size_bytes,
        total_chunks=total_chunks,
        upload_urls=upload_urls,
        expires_in=expires_in,
    )


@router.post("/{upload_id}/file", response_model=UploadResponse)
async def upload_file(
    upload_id: str,
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user_id),
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
):
    """Upload a small file in one request."""
    await _get_owned_upload(coordinator, upload_id, user_id)
    content = await file.read()
    upload = await coordinator.upload_single_file(upload_id, content)
    return _to_response(coordinator, upload)


@router.post("/{upload_id}/chunks", response_model=ChunkUploadResponse)
async def upload_chunk(
    upload_id: str,
    chunk_index: int = Form(...),
    total_chunks: int = Form(...),
    chunk: UploadFile = File(...),
    user_id: str = Depends(get_current_user_id),
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
):
    """Upload one chunk of a multipart upload. Chunks may be sent in parallel."""
    await _get_owned_upload(coordinator, upload_id, user_id)
    data = await chunk.read()
    result = await coordinator.upload_chunk(upload_id, data, chunk_index, total_chunks)
    return ChunkUploadResponse(
        upload_id=upload_id,
        part_number=result.part_number,
        etag=result.etag,
        size=result.size,
    )


@router.post("/{upload_id}/urls", response_model=PresignedUrlsResponse)
async def generate_upload_urls(
    upload_id: str,
    body: PresignedUrlsRequest,
    user_id: str = Depends(get_current_user_id),
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
):
    """Presigned URLs for uploading parts directly to storage."""
    await _get_owned_upload(coordinator, upload_id, user_id)
    urls = await coordinator.generate_upload_urls(upload_id, body.part_count)
    return PresignedUrlsResponse(
        upload_id=upload_id,
        urls=[PartUrl(part_number=i, upload_url=url) for i, url in enumerate(urls, 1)],
        expires_in=settings.presigned_url_expiry_seconds,
    )


@router.post("/{upload_id}/parts", response_model=ChunkUploadResponse)
async def register_part(
    upload_id: str,
    body: RegisterPartRequest,
    user_id: str = Depends(get_current_user_id),
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
):
    """Report a part uploaded to a presigned URL."""
    await _get_owned_upload(coordinator, upload_id, user_id)
    result = await coordinator.register_part(
        upload_id,
        part_number=body.part_number,
        etag=body.etag,
        size=body.size,
        checksum=body.checksum,
    )
    return ChunkUploadResponse(
        upload_id=upload_id,
        part_number=result.part_number,
        etag=result.etag,
        size=result.size,
    )


@router.post("/{upload_id}/cancel", response_model=UploadResponse)
async def cancel_upload(
    upload_id: str,
    user_id: str = Depends(get_current_user_id),
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
):
    """Cancel an upload and release its multipart session."""
    await _get_owned_upload(coordinator, upload_id, user_id)
    await coordinator.cancel_upload(upload_id)
    upload = await coordinator.get_upload(upload_id)
    return _to_response(coordinator, upload)


@router.get("/{upload_id}", response_model=UploadResponse)
async def get_upload(
    upload_id: str,
    user_id: str = Depends(get_current_user_id),
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
):
    """Get upload status and progress."""
    upload = await _get_owned_upload(coordinator, upload_id, user_id)
    return _to_response(coordinator, upload)
