"""Object storage for parcel images and documents.

The registry hands bytes over and keeps only the URL it gets back.
"""

import logging
from abc import ABC, abstractmethod
from urllib.parse import quote

import httpx

from .config import Settings
from .errors import UpstreamFailure, UpstreamTimeout

logger = logging.getLogger(__name__)


class ObjectStore(ABC):
    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store ``data`` under ``key`` and return its durable public URL."""


class HttpObjectStore(ObjectStore):
    """Bucket-style storage API: POST /object/{bucket}/{key}, served from /object/public/..."""

    def __init__(self, base_url: str, bucket: str, api_key: str | None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self.api_key = api_key
        self.timeout = timeout

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/object/public/{self.bucket}/{quote(key)}"

    def put(self, key: str, data: bytes, content_type: str) -> str:
        headers = {"Content-Type": content_type, "x-upsert": "false"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = httpx.post(
                f"{self.base_url}/object/{self.bucket}/{quote(key)}",
                content=data,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"Storage upload of {key} timed out") from e
        except httpx.HTTPError as e:
            logger.error("Storage upload of %s failed: %s", key, e)
            raise UpstreamFailure(f"Storage upload of {key} failed") from e
        return self.public_url(key)


class UnconfiguredObjectStore(ObjectStore):
    def put(self, key: str, data: bytes, content_type: str) -> str:
        raise UpstreamFailure("Object storage is not configured")


def build_object_store(settings: Settings) -> ObjectStore:
    if settings.storage_url:
        return HttpObjectStore(
            settings.storage_url, settings.storage_bucket, settings.storage_api_key, settings.http_timeout_seconds
        )
    return UnconfiguredObjectStore()
