"""Unit tests for the upload coordinator against an in-memory database."""

import hashlib

import pytest
from sqlalchemy import select

from audio_ingest.config import settings
from audio_ingest.core.exceptions import (
    InvalidStateError,
    NotFoundError,
    NotInitializedError,
    StorageError,
    ValidationError,
)
from audio_ingest.models.audio_upload import AudioUpload
from audio_ingest.repositories.upload_repo import UploadRepository
from audio_ingest.utils.checksum import ChecksumCalculator


def _sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@pytest.mark.asyncio
async def test_small_upload_has_no_multipart_session(coordinator, registry, storage_repo, small_upload_args):
    """Test files at or below the threshold never open a remote session."""
    upload_id = await coordinator.initialize_upload(**small_upload_args)

    assert upload_id not in registry
    storage_repo.create_multipart_upload.assert_not_awaited()

    upload = await coordinator.get_upload(upload_id)
    assert upload.upload_status == "uploading"
    assert upload.storage_path.startswith("audio/ws1/user-1/")
    assert upload.storage_path.endswith("/clip.mp3")
    assert upload.storage_provider == "digitalocean"


@pytest.mark.asyncio
async def test_threshold_boundary(coordinator, registry, small_upload_args):
    """Test a file of exactly the threshold size is still single-shot."""
    small_upload_args["file_size"] = settings.multipart_threshold_bytes
    at_threshold = await coordinator.initialize_upload(**small_upload_args)

    small_upload_args["file_size"] = settings.multipart_threshold_bytes + 1
    over_threshold = await coordinator.initialize_upload(**small_upload_args)

    assert at_threshold not in registry
    assert over_threshold in registry


@pytest.mark.asyncio
async def test_large_upload_opens_one_session(coordinator, registry, storage_repo, large_upload_args):
    """Test a file above the threshold gets exactly one remote session."""
    upload_id = await coordinator.initialize_upload(**large_upload_args)

    storage_repo.create_multipart_upload.assert_awaited_once()
    key, content_type = storage_repo.create_multipart_upload.await_args.args
    assert content_type == "audio/wav"
    assert key.endswith("/podcast_episode.wav")

    session = registry.get(upload_id)
    assert session.remote_upload_id == "remote-upload-1"
    assert session.storage_key == key
    assert session.parts_received == 0

    upload = await coordinator.get_upload(upload_id)
    assert upload.storage_path == key
    # The record keeps the name the client sent
    assert upload.original_file_name == "podcast episode.wav"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"file_size": 0},
        {"file_size": -5},
        {"mime_type": "text/plain"},
        {"filename": "   "},
        {"filename": "a" * 256},
    ],
)
async def test_initialize_rejects_invalid_request(coordinator, db_session, small_upload_args, overrides):
    """Test invalid requests create no record."""
    small_upload_args.update(overrides)

    with pytest.raises(ValidationError):
        await coordinator.initialize_upload(**small_upload_args)

    result = await db_session.execute(select(AudioUpload))
    assert result.scalars().all() == []


@pytest.mark.asyncio
async def test_initialize_storage_failure_marks_upload_failed(
    coordinator, db_session, registry, storage_repo, large_upload_args
):
    """Test a failure to open the remote session leaves a failed record."""
    storage_repo.create_multipart_upload.side_effect = StorageError("bucket unreachable")

    with pytest.raises(StorageError, match="bucket unreachable"):
        await coordinator.initialize_upload(**large_upload_args)

    assert len(registry) == 0
    result = await db_session.execute(select(AudioUpload))
    upload = result.scalar_one()
    assert upload.upload_status == "failed"
    assert upload.failed_reason == "bucket unreachable"


@pytest.mark.asyncio
async def test_single_file_upload(coordinator, db_session, storage_repo, small_upload_args):
    """Test the single-shot path completes the upload."""
    upload_id = await coordinator.initialize_upload(**small_upload_args)
    content = b"ID3" + b"\x00" * 997

    upload = await coordinator.upload_single_file(upload_id, content)

    assert upload.upload_status == "completed"
    assert upload.upload_progress == 100
    assert upload.storage_url.startswith("https://storage.example.com/audio/ws1/")
    assert upload.cdn_url == f"https://cdn.example.com/{upload.storage_path}"

    storage_repo.upload_file.assert_awaited_once()
    assert storage_repo.upload_file.await_args.kwargs["content_type"] == "audio/mpeg"
    assert storage_repo.upload_file.await_args.kwargs["metadata"]["uploadId"] == upload_id

    repo = UploadRepository(db_session)
    stored = await repo.get_file_storage(upload_id)
    assert stored.checksum == _sha(content)
    assert stored.storage_key == upload.storage_path

    provider = await repo.get_provider_by_name("digitalocean-spaces")
    assert stored.provider_id == provider.id
    assert provider.type == "digitalocean"


@pytest.mark.asyncio
async def test_single_file_upload_twice(coordinator, small_upload_args):
    """Test a completed upload rejects another file."""
    upload_id = await coordinator.initialize_upload(**small_upload_args)
    await coordinator.upload_single_file(upload_id, b"data")

    with pytest.raises(InvalidStateError):
        await coordinator.upload_single_file(upload_id, b"data")


@pytest.mark.asyncio
async def test_single_file_upload_rejects_large_upload(coordinator, large_upload_args):
    upload_id = await coordinator.initialize_upload(**large_upload_args)

    with pytest.raises(ValidationError, match="multipart threshold"):
        await coordinator.upload_single_file(upload_id, b"data")


@pytest.mark.asyncio
async def test_single_file_upload_unknown_upload(coordinator):
    with pytest.raises(NotFoundError):
        await coordinator.upload_single_file("missing", b"data")


@pytest.mark.asyncio
async def test_single_file_storage_failure(coordinator, storage_repo, small_upload_args):
    """Test a failed put marks the upload failed."""
    upload_id = await coordinator.initialize_upload(**small_upload_args)
    storage_repo.upload_file.side_effect = StorageError("put failed")

    with pytest.raises(StorageError):
        await coordinator.upload_single_file(upload_id, b"data")

    upload = await coordinator.get_upload(upload_id)
    assert upload.upload_status == "failed"
    assert upload.failed_reason == "put failed"
    assert upload.upload_metadata["error"] == "put failed"


@pytest.mark.asyncio
async def test_chunks_out_of_order(coordinator, db_session, registry, storage_repo, large_upload_args):
    """Test chunks arriving 2, 0, 1 complete with parts in ascending order."""
    upload_id = await coordinator.initialize_upload(**large_upload_args)
    key = registry.get(upload_id).storage_key
    chunks = {0: b"a" * 40, 1: b"b" * 40, 2: b"c" * 25}

    result = await coordinator.upload_chunk(upload_id, chunks[2], 2, 3)
    assert result.part_number == 3
    assert result.etag == '"etag-3"'
    assert (await coordinator.get_upload(upload_id)).upload_progress == 33

    await coordinator.upload_chunk(upload_id, chunks[0], 0, 3)
    assert (await coordinator.get_upload(upload_id)).upload_progress == 66
    storage_repo.complete_multipart_upload.assert_not_awaited()

    await coordinator.upload_chunk(upload_id, chunks[1], 1, 3)

    storage_repo.complete_multipart_upload.assert_awaited_once_with(
        key,
        "remote-upload-1",
        [
            {"part_number": 1, "etag": '"etag-1"'},
            {"part_number": 2, "etag": '"etag-2"'},
            {"part_number": 3, "etag": '"etag-3"'},
        ],
    )
    assert upload_id not in registry

    upload = await coordinator.get_upload(upload_id)
    assert upload.upload_status == "completed"
    assert upload.upload_progress == 100
    assert upload.cdn_url == f"https://cdn.example.com/{key}"

    repo = UploadRepository(db_session)
    stored = await repo.get_file_storage(upload_id)
    assert stored.checksum == ChecksumCalculator.composite(
        [_sha(chunks[0]), _sha(chunks[1]), _sha(chunks[2])]
    )
    assert stored.file_metadata["parts"] == 3
    assert stored.file_metadata["mode"] == "proxied"

    rows = await repo.list_chunks(upload_id)
    chunk_size = settings.chunk_size_bytes
    assert [(r.chunk_index, r.start_byte, r.end_byte) for r in rows] == [
        (0, 0, 40),
        (1, chunk_size, chunk_size + 40),
        (2, 2 * chunk_size, 2 * chunk_size + 25),
    ]
    assert rows[2].storage_key == f"{key}-part3"
    assert rows[2].etag == '"etag-3"'


@pytest.mark.asyncio
async def test_reuploaded_chunk_replaces_part(coordinator, db_session, storage_repo, large_upload_args):
    """Test re-sending a chunk never duplicates its part."""
    upload_id = await coordinator.initialize_upload(**large_upload_args)

    await coordinator.upload_chunk(upload_id, b"first try", 0, 3)
    await coordinator.upload_chunk(upload_id, b"second try", 0, 3)
    assert (await coordinator.get_upload(upload_id)).upload_progress == 33

    await coordinator.upload_chunk(upload_id, b"bb", 1, 3)
    await coordinator.upload_chunk(upload_id, b"cc", 2, 3)

    assert storage_repo.upload_part.await_count == 4
    storage_repo.complete_multipart_upload.assert_awaited_once()
    parts = storage_repo.complete_multipart_upload.await_args.args[2]
    assert [p["part_number"] for p in parts] == [1, 2, 3]

    rows = await UploadRepository(db_session).list_chunks(upload_id)
    assert len(rows) == 3
    assert rows[0].size == len(b"second try")
    assert rows[0].checksum == _sha(b"second try")


@pytest.mark.asyncio
async def test_single_chunk_upload_finalizes(coordinator, storage_repo, large_upload_args):
    upload_id = await coordinator.initialize_upload(**large_upload_args)

    await coordinator.upload_chunk(upload_id, b"only", 0, 1)

    storage_repo.complete_multipart_upload.assert_awaited_once()
    assert (await coordinator.get_upload(upload_id)).upload_status == "completed"


@pytest.mark.asyncio
async def test_upload_chunk_without_session(coordinator, small_upload_args):
    """Test chunks for a single-shot upload are rejected."""
    upload_id = await coordinator.initialize_upload(**small_upload_args)

    with pytest.raises(NotInitializedError):
        await coordinator.upload_chunk(upload_id, b"data", 0, 1)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "chunk_data,chunk_index,total_chunks",
    [
        (b"data", 3, 3),
        (b"data", -1, 3),
        (b"data", 0, 0),
        (b"", 0, 3),
    ],
)
async def test_upload_chunk_rejects_invalid_input(
    coordinator, storage_repo, large_upload_args, chunk_data, chunk_index, total_chunks
):
    upload_id = await coordinator.initialize_upload(**large_upload_args)

    with pytest.raises(ValidationError):
        await coordinator.upload_chunk(upload_id, chunk_data, chunk_index, total_chunks)

    storage_repo.upload_part.assert_not_awaited()


@pytest.mark.asyncio
async def test_upload_chunk_rejects_changed_total(coordinator, large_upload_args):
    """Test the first chunk fixes the total for the rest of the upload."""
    upload_id = await coordinator.initialize_upload(**large_upload_args)
    await coordinator.upload_chunk(upload_id, b"aa", 0, 3)

    with pytest.raises(ValidationError, match="expects 3"):
        await coordinator.upload_chunk(upload_id, b"bb", 1, 4)


@pytest.mark.asyncio
async def test_chunk_storage_failure_keeps_upload_open(coordinator, registry, storage_repo, large_upload_args):
    """Test a failed part upload can be retried."""
    upload_id = await coordinator.initialize_upload(**large_upload_args)
    storage_repo.upload_part.side_effect = StorageError("connection reset")

    with pytest.raises(StorageError) as exc_info:
        await coordinator.upload_chunk(upload_id, b"aa", 0, 2)
    assert exc_info.value.upload_id == upload_id

    upload = await coordinator.get_upload(upload_id)
    assert upload.upload_status == "uploading"
    assert registry.get(upload_id).parts_received == 0

    storage_repo.upload_part.side_effect = None
    storage_repo.upload_part.return_value = '"etag-retry"'
    result = await coordinator.upload_chunk(upload_id, b"aa", 0, 2)
    assert result.etag == '"etag-retry"'
    assert registry.get(upload_id).parts_received == 1


@pytest.mark.asyncio
async def test_cancel_multipart_upload(coordinator, registry, storage_repo, large_upload_args):
    """Test cancel aborts the session and later chunks are refused."""
    upload_id = await coordinator.initialize_upload(**large_upload_args)
    await coordinator.upload_chunk(upload_id, b"aa", 0, 3)
    key = registry.get(upload_id).storage_key

    await coordinator.cancel_upload(upload_id)

    storage_repo.abort_multipart_upload.assert_awaited_once_with(key, "remote-upload-1")
    assert upload_id not in registry

    upload = await coordinator.get_upload(upload_id)
    assert upload.upload_status == "failed"
    assert upload.failed_reason == "cancelled"
    assert upload.upload_metadata["reason"] == "cancelled"
    assert "cancelledAt" in upload.upload_metadata

    with pytest.raises(NotInitializedError):
        await coordinator.upload_chunk(upload_id, b"bb", 1, 3)


@pytest.mark.asyncio
async def test_cancel_single_shot_upload(coordinator, storage_repo, small_upload_args):
    upload_id = await coordinator.initialize_upload(**small_upload_args)

    await coordinator.cancel_upload(upload_id)

    storage_repo.abort_multipart_upload.assert_not_awaited()
    upload = await coordinator.get_upload(upload_id)
    assert upload.upload_status == "failed"
    assert upload.failed_reason == "cancelled"


@pytest.mark.asyncio
async def test_cancel_twice(coordinator, large_upload_args):
    upload_id = await coordinator.initialize_upload(**large_upload_args)
    await coordinator.cancel_upload(upload_id)

    with pytest.raises(InvalidStateError):
        await coordinator.cancel_upload(upload_id)


@pytest.mark.asyncio
async def test_cancel_completed_upload(coordinator, small_upload_args):
    upload_id = await coordinator.initialize_upload(**small_upload_args)
    await coordinator.upload_single_file(upload_id, b"data")

    with pytest.raises(InvalidStateError, match="completed"):
        await coordinator.cancel_upload(upload_id)


@pytest.mark.asyncio
async def test_rejected_requests_leave_no_locks(coordinator, registry, small_upload_args):
    """Test refused cancels and uploads on a finished upload do not keep its lock."""
    upload_id = await coordinator.initialize_upload(**small_upload_args)
    await coordinator.upload_single_file(upload_id, b"data")

    for _ in range(3):
        with pytest.raises(InvalidStateError):
            await coordinator.cancel_upload(upload_id)
    with pytest.raises(InvalidStateError):
        await coordinator.upload_single_file(upload_id, b"data")

    assert len(registry) == 0
    assert registry._locks == {}


@pytest.mark.asyncio
async def test_single_file_larger_than_declared(coordinator, storage_repo, registry, small_upload_args):
    """Test a file bigger than its declared size is refused before it is stored."""
    small_upload_args["file_size"] = 10
    upload_id = await coordinator.initialize_upload(**small_upload_args)

    with pytest.raises(ValidationError, match="declared"):
        await coordinator.upload_single_file(upload_id, b"x" * 11)

    storage_repo.upload_file.assert_not_awaited()
    assert (await coordinator.get_upload(upload_id)).upload_status == "uploading"
    assert registry._locks == {}


@pytest.mark.asyncio
async def test_single_file_records_actual_size(coordinator, db_session, small_upload_args):
    upload_id = await coordinator.initialize_upload(**small_upload_args)

    await coordinator.upload_single_file(upload_id, b"ID3" + b"\x00" * 61)

    stored = await UploadRepository(db_session).get_file_storage(upload_id)
    assert stored.file_size == 64


@pytest.mark.asyncio
async def test_cancel_unknown_upload(coordinator):
    with pytest.raises(NotFoundError):
        await coordinator.cancel_upload("does-not-exist")


@pytest.mark.asyncio
async def test_cancel_survives_abort_failure(coordinator, registry, storage_repo, large_upload_args):
    """Test abort errors do not stop the record from being cancelled."""
    upload_id = await coordinator.initialize_upload(**large_upload_args)
    storage_repo.abort_multipart_upload.side_effect = StorageError("abort failed")

    await coordinator.cancel_upload(upload_id)

    assert upload_id not in registry
    assert (await coordinator.get_upload(upload_id)).failed_reason == "cancelled"


@pytest.mark.asyncio
async def test_finalize_failure_then_cancel(coordinator, registry, storage_repo, large_upload_args):
    """Test a failed completion is reported and cancel cleans up the remote upload."""
    upload_id = await coordinator.initialize_upload(**large_upload_args)
    storage_repo.complete_multipart_upload.side_effect = StorageError("complete failed")

    await coordinator.upload_chunk(upload_id, b"aa", 0, 2)
    with pytest.raises(StorageError, match="complete failed"):
        await coordinator.upload_chunk(upload_id, b"bb", 1, 2)

    upload = await coordinator.get_upload(upload_id)
    assert upload.upload_status == "failed"
    assert upload.failed_reason == "complete failed"
    assert upload_id in registry

    # No further parts while the leftover session waits for cleanup
    with pytest.raises(InvalidStateError):
        await coordinator.upload_chunk(upload_id, b"bb", 1, 2)

    await coordinator.cancel_upload(upload_id)

    storage_repo.abort_multipart_upload.assert_awaited_once()
    assert upload_id not in registry
    upload = await coordinator.get_upload(upload_id)
    assert upload.upload_status == "failed"
    assert upload.upload_metadata["reason"] == "cancelled"


@pytest.mark.asyncio
async def test_direct_upload(coordinator, db_session, registry, storage_repo, large_upload_args):
    """Test presigned parts reported out of order complete the upload."""
    upload_id = await coordinator.initialize_upload(**large_upload_args)

    urls = await coordinator.generate_upload_urls(upload_id, 2)

    assert len(urls) == 2
    assert urls[0].endswith("partNumber=1")
    assert urls[1].endswith("partNumber=2")
    assert storage_repo.generate_presigned_part_url.await_args.args[3] == settings.presigned_url_expiry_seconds

    first, second = _sha(b"part one"), _sha(b"part two")
    result = await coordinator.register_part(upload_id, 2, '"etag-b"', 8, second)
    assert result.part_number == 2
    assert (await coordinator.get_upload(upload_id)).upload_progress == 50

    await coordinator.register_part(upload_id, 1, ' "etag-a" ', 8, first.upper())

    storage_repo.upload_part.assert_not_awaited()
    parts = storage_repo.complete_multipart_upload.await_args.args[2]
    assert parts == [
        {"part_number": 1, "etag": '"etag-a"'},
        {"part_number": 2, "etag": '"etag-b"'},
    ]
    assert upload_id not in registry

    stored = await UploadRepository(db_session).get_file_storage(upload_id)
    assert stored.checksum == ChecksumCalculator.composite([first, second])
    assert stored.file_metadata["mode"] == "direct"


@pytest.mark.asyncio
async def test_generate_upload_urls_without_session(coordinator, small_upload_args):
    upload_id = await coordinator.initialize_upload(**small_upload_args)

    with pytest.raises(NotInitializedError):
        await coordinator.generate_upload_urls(upload_id, 2)


@pytest.mark.asyncio
@pytest.mark.parametrize("part_count", [0, -1, 10001])
async def test_generate_upload_urls_part_count_bounds(coordinator, large_upload_args, part_count):
    upload_id = await coordinator.initialize_upload(**large_upload_args)

    with pytest.raises(ValidationError):
        await coordinator.generate_upload_urls(upload_id, part_count)


@pytest.mark.asyncio
async def test_modes_cannot_be_mixed(coordinator, large_upload_args):
    """Test an upload sticks to the strategy it started with."""
    proxied = await coordinator.initialize_upload(**large_upload_args)
    await coordinator.upload_chunk(proxied, b"aa", 0, 3)
    with pytest.raises(InvalidStateError):
        await coordinator.generate_upload_urls(proxied, 3)
    with pytest.raises(InvalidStateError):
        await coordinator.register_part(proxied, 2, '"etag"', 2, _sha(b"bb"))

    direct = await coordinator.initialize_upload(**large_upload_args)
    await coordinator.generate_upload_urls(direct, 3)
    with pytest.raises(InvalidStateError):
        await coordinator.upload_chunk(direct, b"aa", 0, 3)


@pytest.mark.asyncio
async def test_generate_upload_urls_is_repeatable(coordinator, large_upload_args):
    """Test URLs can be reissued for the same part count but not another."""
    upload_id = await coordinator.initialize_upload(**large_upload_args)
    await coordinator.generate_upload_urls(upload_id, 3)

    assert len(await coordinator.generate_upload_urls(upload_id, 3)) == 3
    with pytest.raises(ValidationError):
        await coordinator.generate_upload_urls(upload_id, 4)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "part_number,etag,size,checksum",
    [
        (0, '"e"', 4, "a" * 64),
        (3, '"e"', 4, "a" * 64),
        (1, "  ", 4, "a" * 64),
        (1, '"e"', 0, "a" * 64),
        (1, '"e"', 4, "not-a-digest"),
    ],
)
async def test_register_part_rejects_invalid_input(
    coordinator, large_upload_args, part_number, etag, size, checksum
):
    upload_id = await coordinator.initialize_upload(**large_upload_args)
    await coordinator.generate_upload_urls(upload_id, 2)

    with pytest.raises(ValidationError):
        await coordinator.register_part(upload_id, part_number, etag, size, checksum)


@pytest.mark.asyncio
async def test_get_upload_unknown(coordinator):
    with pytest.raises(NotFoundError):
        await coordinator.get_upload("missing")
