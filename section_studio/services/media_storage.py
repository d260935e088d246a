from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from section_studio.config import Settings

logger = logging.getLogger(__name__)

IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"


class MediaStorageError(RuntimeError):
    pass


class MediaStorageConfigurationError(MediaStorageError):
    pass


@dataclass(frozen=True)
class StoredObject:
    key: str
    uri: str
    sha256: str
    size_bytes: int


class MediaStorage:
    """
    S3-compatible storage for generated section images.

    Objects are content-addressed and written once; nothing here deletes.
    """

    def __init__(self, settings: Settings) -> None:
        if not settings.MEDIA_STORAGE_BUCKET:
            raise MediaStorageConfigurationError("MEDIA_STORAGE_BUCKET is required")
        if not settings.MEDIA_STORAGE_ACCESS_KEY or not settings.MEDIA_STORAGE_SECRET_KEY:
            raise MediaStorageConfigurationError(
                "MEDIA_STORAGE_ACCESS_KEY and MEDIA_STORAGE_SECRET_KEY are required"
            )

        addressing_style = "path" if settings.MEDIA_STORAGE_FORCE_PATH_STYLE else "auto"
        self.bucket = settings.MEDIA_STORAGE_BUCKET
        self.prefix = (settings.MEDIA_STORAGE_PREFIX or "").strip("/")
        self.presign_ttl = int(settings.MEDIA_STORAGE_PRESIGN_TTL_SECONDS or 900)
        self.public_base_url = (settings.PUBLIC_ASSET_BASE_URL or "").rstrip("/") or None

        session = boto3.session.Session()
        self.client = session.client(
            "s3",
            endpoint_url=settings.MEDIA_STORAGE_ENDPOINT,
            aws_access_key_id=settings.MEDIA_STORAGE_ACCESS_KEY,
            aws_secret_access_key=settings.MEDIA_STORAGE_SECRET_KEY,
            region_name=settings.MEDIA_STORAGE_REGION or "us-east-1",
            use_ssl=bool(settings.MEDIA_STORAGE_USE_SSL),
            config=Config(
                s3={"addressing_style": addressing_style},
                signature_version="s3v4",
            ),
        )

    def build_key(self, *, sha256: str, ext: str) -> str:
        """Content-addressed keys: <prefix>/sections/<sha[:2]>/<sha>.<ext>"""
        ext_clean = ext.lstrip(".") if ext else "bin"
        parts = [p for p in [self.prefix, "sections"] if p]
        parts.append(sha256[:2])
        return "/".join(parts + [f"{sha256}.{ext_clean}"])

    def object_exists(self, *, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise MediaStorageError(f"Failed to check object {key}: {exc}") from exc

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return self.client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=self.presign_ttl,
        )

    def put_image(self, data: bytes, *, content_type: str = "image/png", ext: str = "png") -> StoredObject:
        if not data:
            raise MediaStorageError("Refusing to store an empty image")
        sha256 = hashlib.sha256(data).hexdigest()
        key = self.build_key(sha256=sha256, ext=ext)
        try:
            if not self.object_exists(key=key):
                self.client.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=data,
                    ContentType=content_type,
                    CacheControl=IMMUTABLE_CACHE_CONTROL,
                )
        except (ClientError, BotoCoreError) as exc:
            logger.error("media_storage.upload_failed", extra={"key": key, "error": str(exc)})
            raise MediaStorageError(f"Failed to upload {key}: {exc}") from exc
        logger.debug("media_storage.uploaded", extra={"key": key, "size_bytes": len(data)})
        return StoredObject(key=key, uri=self.public_url(key), sha256=sha256, size_bytes=len(data))
