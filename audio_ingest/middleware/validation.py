"""Validators for upload requests."""

from ..config import settings
from ..core.exceptions import ValidationError

MAX_FILENAME_LENGTH = 255


def validate_filename(filename: str) -> str:
    """Filename must be 1-255 characters after trimming."""
    if filename is None or not filename.strip():
        raise ValidationError("Filename is required")
    if len(filename) > MAX_FILENAME_LENGTH:
        raise ValidationError(
            f"Invalid filename. Must be 1-{MAX_FILENAME_LENGTH} characters long."
        )
    return filename


def validate_file_size(file_size: int) -> int:
    """
    Validate declared file size.
    A limit of 0 MB disables the upper bound.
    """
    if file_size is None or file_size <= 0:
        raise ValidationError("File size must be greater than zero")
    if settings.max_file_size_mb > 0 and file_size > settings.max_file_size_bytes:
        raise ValidationError(
            f"File size exceeds maximum allowed size of {settings.max_file_size_mb} MB"
        )
    return file_size


def validate_mime_type(mime_type: str) -> str:
    """Validate MIME type against the allowed audio/video types."""
    if mime_type not in settings.allowed_file_types:
        raise ValidationError(
            f"File type {mime_type} is not allowed. Allowed types: {', '.join(settings.allowed_file_types)}"
        )
    return mime_type


def validate_upload_request(filename: str, file_size: int, mime_type: str) -> None:
    """Combined validator run before an upload record is created."""
    validate_filename(filename)
    validate_file_size(file_size)
    validate_mime_type(mime_type)
