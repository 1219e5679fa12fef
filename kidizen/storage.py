"""
Blob storage abstraction for S3-compatible object storage and in-memory testing.

Images are referenced by public URLs of the form
`{public_base_url}/{bucket}/{file_name}`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from kidizen.errors import StorageError, UnprocessableImage

logger = logging.getLogger(__name__)

IMAGE_MIME_TYPES_ALLOWED = ("image/jpeg", "image/png")


@dataclass(frozen=True)
class ParsedImageUrl:
    base_url: str
    bucket_name: str
    file_name: str

    @classmethod
    def parse(cls, image_url: str) -> "ParsedImageUrl":
        # scheme:, "", host, bucket, file
        parts = image_url.split("/")
        if len(parts) != 5 or parts[1] != "" or not all(parts[i] for i in (0, 2, 3, 4)):
            raise ValueError("The image URL has the wrong number of components.")
        return cls(
            base_url=f"{parts[0]}//{parts[2]}",
            bucket_name=parts[3],
            file_name=parts[4],
        )


class BlobStorage(Protocol):
    """Defines the operations the API needs from object storage."""

    public_base_url: str
    bucket: str

    def write_image(self, file_name: str, data: bytes, content_type: str) -> str:
        ...

    def delete_image(self, image_url: str) -> None:
        ...

    def probe_image(self, image_url: str) -> Optional[str]:
        ...


def public_url(storage: BlobStorage, file_name: str) -> str:
    return f"{storage.public_base_url.rstrip('/')}/{storage.bucket}/{file_name}"


def safe_file_name(file_name: str) -> str:
    return (file_name or "image").replace("/", "_").replace("\\", "_")


def validate_image_url(storage: BlobStorage, image_url: str) -> None:
    """
    Raise UnprocessableImage unless `image_url` points into our bucket, the image
    exists, and it is served as JPEG or PNG.
    """
    try:
        parsed = ParsedImageUrl.parse(image_url)
    except ValueError as exc:
        raise UnprocessableImage() from exc
    if parsed.base_url != storage.public_base_url.rstrip("/"):
        raise UnprocessableImage()
    if parsed.bucket_name != storage.bucket:
        raise UnprocessableImage()

    content_type = storage.probe_image(image_url)
    if content_type not in IMAGE_MIME_TYPES_ALLOWED:
        raise UnprocessableImage()


@dataclass
class InMemoryBlobStorage:
    """Test double for storage interactions."""

    public_base_url: str = "https://storage.googleapis.com"
    bucket: str = "kidizen-science-images"
    stored_objects: dict = field(default_factory=dict)

    def write_image(self, file_name: str, data: bytes, content_type: str) -> str:
        name = safe_file_name(file_name)
        self.stored_objects[name] = (data, content_type)
        return public_url(self, name)

    def delete_image(self, image_url: str) -> None:
        try:
            parsed = ParsedImageUrl.parse(image_url)
        except ValueError as exc:
            raise StorageError(f"Cannot delete image at {image_url!r}: {exc}") from exc
        # Deleting a missing object is not an error, matching S3 semantics.
        self.stored_objects.pop(parsed.file_name, None)

    def probe_image(self, image_url: str) -> Optional[str]:
        try:
            parsed = ParsedImageUrl.parse(image_url)
        except ValueError:
            return None
        stored = self.stored_objects.get(parsed.file_name)
        if stored is None:
            return None
        return stored[1]


@dataclass
class S3BlobStorage:
    """
    S3-compatible storage client for public image buckets.
    """

    bucket: str
    public_base_url: str
    region: str = ""
    endpoint: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    probe_timeout: float = 10.0

    def __post_init__(self):
        config = Config(signature_version="s3v4")
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            config=config,
        )

    def write_image(self, file_name: str, data: bytes, content_type: str) -> str:
        name = safe_file_name(file_name)
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=name,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to upload {name}: {exc}") from exc
        return public_url(self, name)

    def delete_image(self, image_url: str) -> None:
        try:
            parsed = ParsedImageUrl.parse(image_url)
            self._client.delete_object(Bucket=self.bucket, Key=parsed.file_name)
        except (ValueError, BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to delete image at {image_url!r}: {exc}") from exc

    def probe_image(self, image_url: str) -> Optional[str]:
        try:
            response = requests.get(image_url, timeout=self.probe_timeout)
        except requests.RequestException as exc:
            logger.info("Image probe failed for %s: %s", image_url, exc)
            return None
        if response.status_code != 200:
            return None
        content_type = response.headers.get("content-type", "")
        return content_type.split(";", 1)[0].strip().lower()
