"""Storage configuration for multi-provider support (S3, DigitalOcean Spaces, Wasabi)."""

from typing import Any, Dict, Optional

import boto3
from botocore.client import BaseClient
from botocore.config import Config

from .settings import settings

PROVIDER_NAMES = {
    "s3": "aws-s3",
    "digitalocean": "digitalocean-spaces",
    "wasabi": "wasabi",
}


def _resolve_provider(provider: Optional[str]) -> str:
    provider = (provider or settings.storage_provider).lower()
    if provider not in PROVIDER_NAMES:
        raise ValueError(f"Unsupported storage provider: {provider}")
    return provider


def get_storage_client(provider: Optional[str] = None) -> BaseClient:
    """
    Get storage client based on configured provider.
    Returns boto3 client configured for the selected storage provider.
    """
    provider = _resolve_provider(provider)

    if provider == "s3":
        return boto3.client(
            "s3",
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_region,
            config=Config(signature_version="s3v4"),
        )

    elif provider == "digitalocean":
        # Spaces speaks the S3 API; the region is encoded in the endpoint
        return boto3.client(
            "s3",
            aws_access_key_id=settings.do_spaces_key,
            aws_secret_access_key=settings.do_spaces_secret,
            endpoint_url=settings.do_spaces_endpoint,
            region_name="us-east-1",
            config=Config(signature_version="s3v4"),
        )

    else:
        return boto3.client(
            "s3",
            aws_access_key_id=settings.wasabi_access_key,
            aws_secret_access_key=settings.wasabi_secret_key,
            endpoint_url=settings.wasabi_endpoint,
            region_name=settings.aws_region,
            config=Config(signature_version="s3v4"),
        )


def get_bucket_name(provider: Optional[str] = None) -> str:
    """Get bucket name for the configured storage provider."""
    provider = _resolve_provider(provider)

    if provider == "s3":
        return settings.s3_bucket_name
    elif provider == "digitalocean":
        return settings.do_spaces_bucket
    else:
        return settings.wasabi_bucket_name


def get_cdn_endpoint() -> Optional[str]:
    """CDN base URL, or None when objects are not fronted by a CDN."""
    if not settings.cdn_endpoint:
        return None
    return settings.cdn_endpoint.rstrip("/")


def get_provider_descriptor(provider: Optional[str] = None) -> Dict[str, Any]:
    """Describe the configured provider for the storage_providers table."""
    provider = _resolve_provider(provider)

    if provider == "s3":
        endpoint = f"https://s3.{settings.aws_region}.amazonaws.com"
        region = settings.aws_region
    elif provider == "digitalocean":
        endpoint = settings.do_spaces_endpoint
        region = settings.do_spaces_region
    else:
        endpoint = settings.wasabi_endpoint
        region = settings.aws_region

    return {
        "name": PROVIDER_NAMES[provider],
        "type": provider,
        "endpoint": endpoint,
        "region": region,
        "bucket": get_bucket_name(provider),
        "cdn_endpoint": get_cdn_endpoint(),
        "is_active": True,
        "is_default": True,
        "config": {
            "provider": provider,
            "features": ["multipart", "cdn", "presigned-urls"],
        },
    }
