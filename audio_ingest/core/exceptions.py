"""Upload coordination error taxonomy."""

from typing import Optional


class UploadError(Exception):
    """Base class for upload coordination errors."""

    status_code = 500

    def __init__(self, message: str, upload_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.upload_id = upload_id


class NotFoundError(UploadError):
    """Upload record does not exist (or was never initialized)."""

    status_code = 404


class NotInitializedError(UploadError):
    """No active multipart session for the upload."""

    status_code = 409


class ValidationError(UploadError):
    """Caller supplied invalid input."""

    status_code = 400


class InvalidStateError(UploadError):
    """Operation not allowed in the upload's current state."""

    status_code = 409


class StorageError(UploadError):
    """Object storage or persistence failure, wrapping the original cause."""

    status_code = 502
