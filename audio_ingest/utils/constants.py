"""Application constants and enums."""

from enum import Enum


class UploadStatus(str, Enum):
    """Audio upload status enum."""

    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStatus.COMPLETED, UploadStatus.FAILED)

    def can_transition_to(self, other: "UploadStatus") -> bool:
        """Check a status change against the upload lifecycle."""
        allowed = {
            UploadStatus.PENDING: {UploadStatus.UPLOADING, UploadStatus.FAILED},
            UploadStatus.UPLOADING: {UploadStatus.COMPLETED, UploadStatus.FAILED},
            UploadStatus.COMPLETED: set(),
            UploadStatus.FAILED: set(),
        }
        return other in allowed[self]


class UploadMode(str, Enum):
    """How the parts of a multipart upload reach storage."""

    PROXIED = "proxied"  # chunks pass through the coordinator
    DIRECT = "direct"  # client PUTs to presigned URLs and reports ETags


CANCELLED_REASON = "cancelled"

# S3 part numbers are 1-indexed
MIN_PART_NUMBER = 1
