"""Storage repository for S3-compatible object storage operations."""

import asyncio
import functools
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError

from ..config import settings
from ..config.storage import get_bucket_name, get_cdn_endpoint, get_storage_client
from ..core.exceptions import StorageError
from ..utils.helpers import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class StoredObject:
    """Result of a single-shot upload."""

    key: str
    url: str
    cdn_url: Optional[str]
    size: int
    content_type: str


class StorageRepository:
    """
    Gateway to the object store.

    Every network call runs the blocking boto3 client in the default
    executor and is bounded by ``timeout`` seconds; timeouts and provider
    errors are raised as StorageError. Nothing is retried here.
    """

    def __init__(
        self,
        provider: Optional[str] = None,
        client: Optional[BaseClient] = None,
        bucket_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.provider = (provider or settings.storage_provider).lower()
        self.client = client
        self.bucket_name = bucket_name
        self.timeout = timeout if timeout is not None else settings.storage_call_timeout_seconds

    async def _get_client(self) -> BaseClient:
        """Get or create storage client."""
        if self.client is None:
            self.client = get_storage_client(self.provider)
        if self.bucket_name is None:
            self.bucket_name = get_bucket_name(self.provider)
        return self.client

    async def _call(self, operation: str, func: Callable[..., Any], **kwargs) -> Any:
        """Run a blocking client call off the event loop with a timeout."""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(func, **kwargs)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise StorageError(
                f"Storage call {operation} timed out after {self.timeout}s"
            ) from e
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Storage call {operation} failed: {e}") from e

    async def create_multipart_upload(self, key: str, content_type: str) -> str:
        """
        Initiate multipart upload.
        Returns:
            Remote multipart upload ID
        """
        client = await self._get_client()
        response = await self._call(
            "create_multipart_upload",
            client.create_multipart_upload,
            Bucket=self.bucket_name,
            Key=key,
            ContentType=content_type,
        )
        return response["UploadId"]

    async def upload_part(
        self, key: str, remote_upload_id: str, body: bytes, part_number: int
    ) -> str:
        """Upload one part and return its ETag."""
        client = await self._get_client()
        response = await self._call(
            "upload_part",
            client.upload_part,
            Bucket=self.bucket_name,
            Key=key,
            UploadId=remote_upload_id,
            PartNumber=part_number,
            Body=body,
        )
        return response["ETag"]

    async def complete_multipart_upload(
        self,
        key: str,
        remote_upload_id: str,
        parts: List[Dict[str, Any]],  # [{"part_number": 1, "etag": "..."}]
    ) -> None:
        """Complete multipart upload with parts in the order given."""
        client = await self._get_client()
        multipart_upload = {
            "Parts": [
                {"PartNumber": part["part_number"], "ETag": part["etag"]}
                for part in parts
            ]
        }
        await self._call(
            "complete_multipart_upload",
            client.complete_multipart_upload,
            Bucket=self.bucket_name,
            Key=key,
            UploadId=remote_upload_id,
            MultipartUpload=multipart_upload,
        )

    async def abort_multipart_upload(self, key: str, remote_upload_id: str) -> None:
        """Abort multipart upload and release uploaded parts."""
        client = await self._get_client()
        await self._call(
            "abort_multipart_upload",
            client.abort_multipart_upload,
            Bucket=self.bucket_name,
            Key=key,
            UploadId=remote_upload_id,
        )

    async def upload_file(
        self,
        key: str,
        body: bytes,
        content_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredObject:
        """Upload a whole object in one request."""
        client = await self._get_client()
        object_metadata = {k: str(v) for k, v in (metadata or {}).items()}
        object_metadata["uploadedAt"] = utc_now().isoformat()

        await self._call(
            "put_object",
            client.put_object,
            Bucket=self.bucket_name,
            Key=key,
            Body=body,
            ContentType=content_type or "application/octet-stream",
            Metadata=object_metadata,
        )
        logger.info("File uploaded to storage", key=key, size=len(body))

        return StoredObject(
            key=key,
            url=await self.get_file_url(key),
            cdn_url=self.get_cdn_url(key),
            size=len(body),
            content_type=content_type,
        )

    async def get_file_url(self, key: str, expiration: Optional[int] = None) -> str:
        """Presigned GET URL for a stored object."""
        client = await self._get_client()
        try:
            return client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": key},
                ExpiresIn=expiration or settings.presigned_url_expiry_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to generate presigned URL: {e}") from e

    def get_cdn_url(self, key: str) -> Optional[str]:
        """Public CDN URL, or None when no CDN endpoint is configured."""
        cdn_endpoint = get_cdn_endpoint()
        if not cdn_endpoint:
            return None
        return f"{cdn_endpoint}/{key}"

    async def generate_presigned_part_url(
        self,
        key: str,
        remote_upload_id: str,
        part_number: int,
        expiration: Optional[int] = None,
    ) -> str:
        """Presigned PUT URL for uploading one part directly to storage."""
        client = await self._get_client()
        try:
            return client.generate_presigned_url(
                "upload_part",
                Params={
                    "Bucket": self.bucket_name,
                    "Key": key,
                    "UploadId": remote_upload_id,
                    "PartNumber": part_number,
                },
                ExpiresIn=expiration or settings.presigned_url_expiry_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to generate presigned part URL: {e}") from e

    async def check_connectivity(self) -> bool:
        """Check that the bucket is reachable with the configured credentials."""
        client = await self._get_client()
        try:
            await self._call("head_bucket", client.head_bucket, Bucket=self.bucket_name)
            return True
        except StorageError as e:
            logger.warning("Storage connectivity check failed", provider=self.provider, error=str(e))
            return False
