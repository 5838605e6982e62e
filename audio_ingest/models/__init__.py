"""Database models."""

from .audio_upload import AudioUpload
from .audio_chunk import AudioChunk
from .file_storage import FileStorage, StorageProviderRecord

__all__ = ["AudioUpload", "AudioChunk", "FileStorage", "StorageProviderRecord"]
