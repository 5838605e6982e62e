"""Reusable FastAPI dependencies."""

from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config.database import get_db
from ..repositories.storage_repo import StorageRepository
from ..services.session_registry import ActiveUploadRegistry
from ..services.upload_coordinator import UploadCoordinator


async def get_current_user_id(
    x_user_id: str = Header(default="", alias="X-User-Id"),
) -> str:
    """
    Caller identity set by the authenticating gateway in front of this API.
    """
    if not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authenticated user",
        )
    return x_user_id.strip()


def get_upload_registry(request: Request) -> ActiveUploadRegistry:
    """Application-wide registry of active multipart sessions."""
    return request.app.state.upload_registry


def get_storage_repo(request: Request) -> StorageRepository:
    """Application-wide storage gateway."""
    return request.app.state.storage_repo


async def get_upload_coordinator(
    db: AsyncSession = Depends(get_db),
    registry: ActiveUploadRegistry = Depends(get_upload_registry),
    storage_repo: StorageRepository = Depends(get_storage_repo),
) -> AsyncGenerator[UploadCoordinator, None]:
    """Dependency to get an upload coordinator bound to the request's session."""
    yield UploadCoordinator(db, registry, storage_repo=storage_repo)
