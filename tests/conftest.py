"""Pytest configuration and fixtures."""

from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from audio_ingest.main import app
from audio_ingest.config.database import Base, get_db
from audio_ingest.middleware.rate_limit import limiter
from audio_ingest.repositories.storage_repo import StorageRepository, StoredObject
from audio_ingest.services.session_registry import ActiveUploadRegistry
from audio_ingest.services.upload_coordinator import UploadCoordinator
from audio_ingest import models  # noqa: F401


# Test database URL (in-memory SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create test database session on a fresh in-memory database."""
    # One engine per test so the connection never outlives its event loop
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False
    )
    async with session_factory() as session:
        yield session
        await session.rollback()

    await test_engine.dispose()


@pytest.fixture
def storage_repo() -> MagicMock:
    """Storage gateway double; part ETags are derived from the part number."""
    repo = MagicMock(spec=StorageRepository)
    repo.provider = "digitalocean"
    repo.create_multipart_upload = AsyncMock(return_value="remote-upload-1")
    repo.upload_part = AsyncMock(
        side_effect=lambda key, remote_upload_id, body, part_number: f'"etag-{part_number}"'
    )
    repo.complete_multipart_upload = AsyncMock(return_value=None)
    repo.abort_multipart_upload = AsyncMock(return_value=None)
    repo.upload_file = AsyncMock(
        side_effect=lambda key, body, content_type, metadata=None: StoredObject(
            key=key,
            url=f"https://storage.example.com/{key}?signature=abc",
            cdn_url=f"https://cdn.example.com/{key}",
            size=len(body),
            content_type=content_type,
        )
    )
    repo.get_file_url = AsyncMock(
        side_effect=lambda key, expiration=None: f"https://storage.example.com/{key}?signature=abc"
    )
    repo.get_cdn_url = MagicMock(side_effect=lambda key: f"https://cdn.example.com/{key}")
    repo.generate_presigned_part_url = AsyncMock(
        side_effect=lambda key, remote_upload_id, part_number, expiration=None: (
            f"https://storage.example.com/{key}?uploadId={remote_upload_id}&partNumber={part_number}"
        )
    )
    return repo


@pytest.fixture
def registry() -> ActiveUploadRegistry:
    """Fresh session registry per test."""
    return ActiveUploadRegistry()


@pytest.fixture
def coordinator(db_session, registry, storage_repo) -> UploadCoordinator:
    """Coordinator backed by SQLite and the storage double."""
    return UploadCoordinator(db_session, registry, storage_repo=storage_repo)


@pytest.fixture(scope="function")
async def client(db_session: AsyncSession, registry, storage_repo) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    original_registry = app.state.upload_registry
    original_storage_repo = app.state.storage_repo
    app.state.upload_registry = registry
    app.state.storage_repo = storage_repo
    limiter.enabled = False

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    limiter.enabled = True
    app.state.upload_registry = original_registry
    app.state.storage_repo = original_storage_repo
    app.dependency_overrides.clear()


@pytest.fixture
def user_headers():
    """Headers the authenticating gateway would set."""
    return {"X-User-Id": "user-1"}


@pytest.fixture
def small_upload_args():
    return {
        "user_id": "user-1",
        "workspace_id": "ws1",
        "filename": "clip.mp3",
        "file_size": 5_000_000,
        "mime_type": "audio/mpeg",
    }


@pytest.fixture
def large_upload_args():
    return {
        "user_id": "user-1",
        "workspace_id": "ws1",
        "filename": "podcast episode.wav",
        "file_size": 250 * 1000 * 1000,
        "mime_type": "audio/wav",
    }
