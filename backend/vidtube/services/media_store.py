from __future__ import annotations

import asyncio
from dataclasses import dataclass
import mimetypes
from pathlib import Path
import re
from typing import Any
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import UploadFile
import structlog

from vidtube.core.errors import UpstreamError, ValidationError
from vidtube.core.settings import Settings

logger = structlog.get_logger(__name__)

_FILENAME_SAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")
_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class MediaRef:
    key: str
    url: str


def sanitize_filename(name: str) -> str:
    # Strip paths and normalize whitespace/special chars.
    base = (name or "").split("/")[-1].split("\\")[-1].strip()
    base = _FILENAME_SAFE_RE.sub("_", base)
    base = base.strip("._-")
    if not base:
        return "file"
    return base[:120]


def _s3_client(settings: Settings):
    kwargs: dict[str, Any] = {"service_name": "s3", "region_name": settings.s3_region}
    if settings.s3_endpoint_url:
        kwargs["endpoint_url"] = settings.s3_endpoint_url
    if settings.s3_access_key_id and settings.s3_secret_access_key:
        kwargs["aws_access_key_id"] = settings.s3_access_key_id
        kwargs["aws_secret_access_key"] = settings.s3_secret_access_key
    return boto3.client(**kwargs)


async def save_upload_to_tmp(upload: UploadFile, *, tmp_dir: str, max_size_bytes: int) -> Path:
    """Spool an incoming multipart file to local disk for the media store to pick up."""
    directory = Path(tmp_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{uuid4().hex}_{sanitize_filename(upload.filename or '')}"

    written = 0
    try:
        with path.open("wb") as fh:
            while True:
                chunk = await upload.read(_CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_size_bytes:
                    raise ValidationError("File too large")
                fh.write(chunk)
    except BaseException:
        path.unlink(missing_ok=True)
        raise
    finally:
        await upload.close()

    if written == 0:
        path.unlink(missing_ok=True)
        raise ValidationError("Uploaded file is empty")
    return path


class S3MediaStore:
    """
    Uploads local temp files to an S3-compatible bucket.

    The local file is always removed once ``upload`` returns or raises.
    """

    def __init__(self, settings: Settings, client=None) -> None:
        self.bucket = settings.s3_bucket
        self.region = settings.s3_region
        self.endpoint_url = settings.s3_endpoint_url
        self.public_base_url = (settings.media_public_base_url or "").rstrip("/") or None
        self._settings = settings
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = _s3_client(self._settings)
        return self._client

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    async def upload(self, local_path: Path | str, *, folder: str, content_type: str | None = None) -> MediaRef:
        path = Path(local_path)
        try:
            if not self.bucket:
                raise UpstreamError("Media storage is not configured (missing S3_BUCKET)")

            key = f"{folder.strip('/')}/{path.name}"
            ctype = content_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"

            def _put() -> None:
                with path.open("rb") as fh:
                    self.client.put_object(Bucket=self.bucket, Key=key, Body=fh, ContentType=ctype)

            try:
                await asyncio.to_thread(_put)
            except (BotoCoreError, ClientError, OSError) as e:
                logger.warning("media_upload_failed", key=key, error=str(e))
                raise UpstreamError("Failed to upload media") from e

            return MediaRef(key=key, url=self.public_url(key))
        finally:
            path.unlink(missing_ok=True)

    async def delete(self, key: str) -> None:
        if not self.bucket:
            raise UpstreamError("Media storage is not configured (missing S3_BUCKET)")
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise UpstreamError("Failed to delete media") from e
