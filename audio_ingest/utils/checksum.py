"""Content hashing for upload integrity records."""

import hashlib
from typing import Iterable, Union

Buffer = Union[bytes, bytearray, memoryview]


class ChecksumCalculator:
    """SHA-256 checksums for whole files, single parts and multipart objects."""

    algorithm = "sha256"

    @staticmethod
    def calculate(data: Buffer) -> str:
        """Hex SHA-256 of a buffer."""
        return hashlib.sha256(data).hexdigest()

    @classmethod
    def composite(cls, part_checksums: Iterable[str]) -> str:
        """
        Checksum of checksums for a multipart object.

        SHA-256 over the concatenated binary digests of the parts, in the
        order given (callers pass them sorted by part number), suffixed with
        the part count the way S3 composite checksums are.
        """
        digest = hashlib.sha256()
        count = 0
        for checksum in part_checksums:
            try:
                digest.update(bytes.fromhex(checksum))
            except ValueError as e:
                raise ValueError(f"Invalid {cls.algorithm} part checksum: {checksum!r}") from e
            count += 1
        if count == 0:
            raise ValueError("Cannot build a composite checksum without parts")
        return f"{digest.hexdigest()}-{count}"

    @staticmethod
    def is_valid(checksum: str) -> bool:
        """True for a 64-character hex SHA-256 digest."""
        if len(checksum) != 64:
            return False
        try:
            bytes.fromhex(checksum)
        except ValueError:
            return False
        return True
