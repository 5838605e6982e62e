"""In-memory multipart session state, keyed by upload ID."""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..core.exceptions import InvalidStateError, ValidationError
from ..utils.constants import UploadMode


@dataclass(frozen=True)
class ChunkRange:
    """Half-open byte range [start, end) of one chunk in the source file."""

    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start

    @classmethod
    def for_chunk(cls, chunk_index: int, size: int, chunk_size: int) -> "ChunkRange":
        """
        Range of a chunk from its index and actual size.

        Every chunk but the last is assumed to be chunk_size bytes long, so
        the start offset follows from the index; the end comes from the real
        length. A shorter non-final chunk leaves a gap before the next start.
        """
        if chunk_index < 0:
            raise ValueError("chunk_index must be >= 0")
        if size < 0:
            raise ValueError("size must be >= 0")
        start = chunk_index * chunk_size
        return cls(start=start, end=start + size)


@dataclass
class PartRecord:
    """One part received for a multipart session."""

    part_number: int
    etag: str
    size: int
    checksum: str


@dataclass
class MultipartSession:
    """Remote multipart upload plus the parts received so far."""

    remote_upload_id: str
    storage_key: str
    parts: Dict[int, PartRecord] = field(default_factory=dict)
    total_parts: Optional[int] = None
    mode: Optional[UploadMode] = None
    finalizing: bool = False

    @property
    def parts_received(self) -> int:
        return len(self.parts)

    @property
    def is_complete(self) -> bool:
        return self.total_parts is not None and self.parts_received == self.total_parts

    def claim_mode(self, mode: UploadMode) -> None:
        """Pin the session to one upload strategy on first use."""
        if self.mode is None:
            self.mode = mode
        elif self.mode != mode:
            raise InvalidStateError(
                f"Upload is using {self.mode.value} parts; {mode.value} parts are not accepted"
            )

    def fix_total(self, total_parts: int) -> None:
        """Set the expected part count, rejecting a different count later."""
        if self.total_parts is None:
            self.total_parts = total_parts
        elif self.total_parts != total_parts:
            raise ValidationError(
                f"Upload expects {self.total_parts} parts, got total of {total_parts}"
            )

    def record_part(self, part: PartRecord) -> bool:
        """Insert or replace a part. Returns True if the part number is new."""
        is_new = part.part_number not in self.parts
        self.parts[part.part_number] = part
        return is_new

    def ordered_parts(self) -> List[PartRecord]:
        """Parts sorted ascending by part number."""
        return [self.parts[n] for n in sorted(self.parts)]


class ActiveUploadRegistry:
    """
    Owner of all active multipart sessions and their per-upload locks.

    One instance is created per application and injected into each
    UploadCoordinator. All access happens on the event loop thread; the
    per-upload asyncio.Lock serializes "record part, then check completion"
    so that two concurrent final parts cannot both finalize. Different
    uploads never share a lock.
    """

    def __init__(self):
        self._sessions: Dict[str, MultipartSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock(self, upload_id: str) -> asyncio.Lock:
        """Lock guarding the session of one upload."""
        return self._locks.setdefault(upload_id, asyncio.Lock())

    def get(self, upload_id: str) -> Optional[MultipartSession]:
        return self._sessions.get(upload_id)

    def register(self, upload_id: str, session: MultipartSession) -> None:
        if upload_id in self._sessions:
            raise InvalidStateError("Multipart session already active", upload_id=upload_id)
        self._sessions[upload_id] = session

    def remove(self, upload_id: str) -> Optional[MultipartSession]:
        """Drop the session. Callers re-check get() after taking the lock."""
        self._locks.pop(upload_id, None)
        return self._sessions.pop(upload_id, None)

    def release(self, upload_id: str) -> None:
        """Drop the lock of an upload that has no active session."""
        if upload_id not in self._sessions:
            self._locks.pop(upload_id, None)

    def __contains__(self, upload_id: object) -> bool:
        return upload_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
