"""
Cloudflare R2 object storage (S3-compatible) through boto3.

boto3 is synchronous, so calls run in a worker thread; botocore's own
connect/read timeouts bound each request.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import boto3
from botocore.config import Config as BotoConfig

from config import r2_endpoint_url, settings
from services.errors import ImageFormatError, classify_exception

logger = logging.getLogger(__name__)

MAX_OBJECT_BYTES = 20 * 1024 * 1024
MAX_SIGNED_URL_TTL = 7 * 24 * 60 * 60


class R2Storage:
    """put / get / signed_url against the originals and staged buckets."""

    def __init__(self, client: Any = None) -> None:
        if client is None:
            s3_config = BotoConfig(
                signature_version="s3v4",
                region_name="auto",
                connect_timeout=settings.STORAGE_TIMEOUT_SECONDS,
                read_timeout=settings.STORAGE_TIMEOUT_SECONDS,
                # Retries are handled by services.retry
                retries={"max_attempts": 1, "mode": "standard"},
                s3={"addressing_style": "path"},
            )
            client = boto3.client(
                "s3",
                endpoint_url=r2_endpoint_url(),
                aws_access_key_id=settings.R2_ACCESS_KEY_ID,
                aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY,
                config=s3_config,
            )
        self._client = client

    def object_url(self, bucket: str, key: str) -> str:
        """Stable (unsigned) URL for an object."""
        return f"{r2_endpoint_url()}/{bucket}/{key}"

    async def put(self, bucket: str, key: str, body: bytes, content_type: str) -> str:
        """Upload bytes and return the object's URL."""
        if not key:
            raise ImageFormatError("Object key must not be empty")
        if len(body) > MAX_OBJECT_BYTES:
            raise ImageFormatError(f"Image too large: {len(body)} bytes (max {MAX_OBJECT_BYTES})")
        if not content_type.startswith("image/"):
            raise ImageFormatError(f"Invalid format: {content_type}")
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
            )
        except Exception as exc:
            raise classify_exception(exc) from exc
        logger.info("[Storage] Uploaded %d bytes to %s/%s", len(body), bucket, key)
        return self.object_url(bucket, key)

    async def get(self, bucket: str, key: str) -> bytes:
        def _read() -> bytes:
            response = self._client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()

        try:
            return await asyncio.to_thread(_read)
        except Exception as exc:
            raise classify_exception(exc) from exc

    async def signed_url(self, bucket: str, key: str, expires_in: Optional[int] = None) -> str:
        """Presigned GET URL, valid for ``expires_in`` seconds (max 7 days)."""
        ttl = expires_in or settings.SIGNED_URL_TTL_SECONDS
        if ttl <= 0 or ttl > MAX_SIGNED_URL_TTL:
            raise ValueError(f"expires_in must be between 1 and {MAX_SIGNED_URL_TTL} seconds")
        try:
            return await asyncio.to_thread(
                self._client.generate_presigned_url,
                ClientMethod="get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=ttl,
                HttpMethod="GET",
            )
        except Exception as exc:
            raise classify_exception(exc) from exc
