import asyncio
import logging
import re
import secrets
import string
import time
from dataclasses import dataclass
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from image_input import extension_for_mime, extension_from_filename

logger = logging.getLogger(__name__)

# Object key prefixes, one per purpose
UPLOADED_PREFIX = "uploaded-"
GENERATED_PREFIX = "generated-"
COMBINED_PREFIX = "combined-"
SHARED_PREFIX = "my-ai-time-travel-newspaper-"

LONG_CACHE_CONTROL = "public, max-age=31536000"

_BASE36 = string.digits + string.ascii_lowercase

# Extensions that can sit in a key without changing what its public URL points at
_SAFE_EXTENSION_RE = re.compile(r"[a-z0-9]{1,5}")


class StorageError(Exception):
    """Raised when the object store rejects a write."""


@dataclass(frozen=True)
class StoredAsset:
    key: str
    url: str
    content_type: str
    size: int
    cache_control: Optional[str] = None


def random_suffix(length: int = 6) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def output_extension(mime_type: Optional[str], filename: Optional[str] = None, default: str = "png") -> str:
    """
    Pick the file extension for a stored object.

    The uploaded filename wins, then the MIME type, then the per-path default.
    A filename extension is only used when it is short and alphanumeric.
    """
    from_filename = extension_from_filename(filename)
    if from_filename and _SAFE_EXTENSION_RE.fullmatch(from_filename):
        return from_filename
    return extension_for_mime(mime_type) or default


def build_asset_key(
    prefix: str,
    extension: str,
    index: Optional[int] = None,
    suffix_length: int = 6,
    timestamp_ms: Optional[int] = None,
) -> str:
    """Build `<prefix><timestamp>[-<index>]-<random>.<extension>`."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    parts = [str(timestamp_ms)]
    if index is not None:
        parts.append(str(index))
    parts.append(random_suffix(suffix_length))
    return f"{prefix}{'-'.join(parts)}.{extension}"


class ObjectStorage:
    """S3-compatible bucket holding uploaded and generated images."""

    def __init__(
        self,
        bucket: str,
        public_base_url: str,
        client: Any = None,
        endpoint_url: Optional[str] = None,
        region_name: Optional[str] = None,
    ):
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")
        self._client = client
        self._endpoint_url = endpoint_url
        self._region_name = region_name

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("s3", endpoint_url=self._endpoint_url, region_name=self._region_name)
            logger.info(f"S3 client initialized for bucket {self.bucket}")
        return self._client

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def _put_object(self, client: Any, key: str, data: bytes, content_type: str, cache_control: Optional[str]) -> None:
        params = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
        }
        if cache_control:
            params["CacheControl"] = cache_control
        try:
            client.put_object(**params)
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            logger.error(f"S3 ClientError - Code: {error_code}, Key: {key}, Message: {e}")
            raise StorageError(f"S3 error ({error_code}): {e}")
        except BotoCoreError as e:
            logger.error(f"S3 upload failed for {key}: {e}")
            raise StorageError(f"S3 error: {e}")

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        cache_control: Optional[str] = None,
    ) -> StoredAsset:
        start_time = time.time()
        # resolved on the event loop thread; boto3 client creation is not thread-safe
        client = self.client
        await asyncio.to_thread(self._put_object, client, key, data, content_type, cache_control)
        elapsed = time.time() - start_time
        logger.info(f"Stored {key} ({len(data)} bytes, {content_type}) in {elapsed:.2f}s")
        return StoredAsset(
            key=key,
            url=self.public_url(key),
            content_type=content_type,
            size=len(data),
            cache_control=cache_control,
        )

    async def store_image(
        self,
        prefix: str,
        data: bytes,
        mime_type: str,
        filename: Optional[str] = None,
        default_extension: str = "png",
        index: Optional[int] = None,
        suffix_length: int = 6,
        cache_control: Optional[str] = LONG_CACHE_CONTROL,
    ) -> StoredAsset:
        """Write image bytes under a freshly generated, purpose-prefixed key."""
        extension = output_extension(mime_type, filename, default_extension)
        key = build_asset_key(prefix, extension, index=index, suffix_length=suffix_length)
        return await self.put(key, data, mime_type, cache_control=cache_control)
