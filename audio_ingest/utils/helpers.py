"""Helper functions for common operations."""

import math
import os
import secrets
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def generate_storage_key(
    workspace_id: str, user_id: str, filename: str, prefix: str = "audio"
) -> str:
    """
    Generate S3-compatible storage key.
    Format: prefix/workspace_id/user_id/YYYY/MM/DD/random_hash/filename
    """
    now = utc_now()
    random_hash = secrets.token_hex(8)
    date_path = f"{now.year}/{now.month:02d}/{now.day:02d}"
    return f"{prefix}/{workspace_id}/{user_id}/{date_path}/{random_hash}/{filename}"


def part_storage_key(storage_key: str, part_number: int) -> str:
    """Bookkeeping key recorded for a single multipart part."""
    return f"{storage_key}-part{part_number}"


def calculate_total_chunks(file_size: int, chunk_size: int) -> int:
    """Number of chunks needed to cover file_size bytes."""
    if file_size <= 0 or chunk_size <= 0:
        return 0
    return math.ceil(file_size / chunk_size)


def sanitize_filename(filename: Optional[str]) -> str:
    """Sanitize filename for safe storage."""
    # Remove path components and dangerous characters
    filename = os.path.basename((filename or "").replace("\\", "/"))
    filename = "".join(c if c.isalnum() or c in "._-" else "_" for c in filename)
    return filename[:255] or "unnamed"
