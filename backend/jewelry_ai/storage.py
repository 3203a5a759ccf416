"""
S3 object storage adapter and the key layout shared by the AI pipelines.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import settings
from .exceptions import S3StorageError
from .logger import logger
from .models import utcnow


def ai_preview_key(configuration_id: str, job_id: str) -> str:
    return f"ai-previews/{configuration_id}/{job_id}/preview.png"


def ai_frame_key(configuration_id: str, job_id: str, index: int) -> str:
    return f"ai-previews/{configuration_id}/{job_id}/frames/frame_{index:02d}.png"


def upgrade_image_key(extension: str, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    if extension and not extension.startswith("."):
        extension = f".{extension}"
    return f"upgrade-images/{now:%Y}/{now:%m}/{now:%d}/{uuid.uuid4()}{extension}"


def upgrade_preview_key(analysis_id: str, job_id: str) -> str:
    return f"upgrade-previews/{analysis_id}/{job_id}/preview.png"


def _is_not_found(error: ClientError) -> bool:
    code = str(error.response.get("Error", {}).get("Code", ""))
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return code in ("404", "NoSuchKey", "NotFound") or status == 404


class S3Storage:
    """Blocking boto3 wrapper; async callers go through asyncio.to_thread."""

    def __init__(self, client=None, bucket: Optional[str] = None, public_base_url: Optional[str] = None):
        self.client = client or boto3.client(
            "s3",
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
            region_name=settings.AWS_REGION_NAME,
            endpoint_url=settings.AWS_ENDPOINT_URL,
        )
        self.bucket = bucket or settings.S3_BUCKET_NAME
        base = public_base_url or settings.S3_PUBLIC_BASE_URL
        if not base:
            base = f"{settings.AWS_ENDPOINT_URL.rstrip('/')}/{self.bucket}"
        self.public_base_url = base.rstrip("/")

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def upload(self, data: bytes, key: str, content_type: str) -> str:
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to upload object to S3: {key}, error: {e}")
            raise S3StorageError(f"Failed to upload {key}: {e}")
        logger.info(f"Uploaded object to S3: {key}", extra={"s3_key": key, "size_bytes": len(data)})
        return self.public_url(key)

    def delete(self, key: str) -> bool:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                return False
            logger.error(f"Failed to delete object from S3: {key}, error: {e}")
            raise S3StorageError(f"Failed to delete {key}: {e}")
        except BotoCoreError as e:
            raise S3StorageError(f"Failed to delete {key}: {e}")
        logger.info(f"Deleted object from S3: {key}")
        return True

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if _is_not_found(e):
                return False
            raise S3StorageError(f"Failed to check {key}: {e}")
        except BotoCoreError as e:
            raise S3StorageError(f"Failed to check {key}: {e}")
