"""
S3/R2 storage helpers for generated videos.

Everything a job produces lives under:
  {user_id}/projects/{project_id}/generations/{job_id}/...

Keys are deterministic per unit/job, so re-uploading after a retry
overwrites the same object instead of leaving duplicates behind.
"""

import os
import asyncio
import logging
from typing import Optional

import httpx

from .errors import StorageError

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")

DOWNLOAD_TIMEOUT = 120  # seconds


# ── Keys ─────────────────────────────────────────────────────────────────────

def generation_prefix(user_id: str, project_id: str, job_id: str) -> str:
    return f"{user_id}/projects/{project_id}/generations/{job_id}"


def room_clip_key(user_id: str, project_id: str, job_id: str, unit_id: str) -> str:
    return f"{generation_prefix(user_id, project_id, job_id)}/rooms/{unit_id}.mp4"


def room_thumbnail_key(user_id: str, project_id: str, job_id: str, unit_id: str) -> str:
    return f"{generation_prefix(user_id, project_id, job_id)}/rooms/{unit_id}.jpg"


def final_video_key(user_id: str, project_id: str, job_id: str) -> str:
    return f"{generation_prefix(user_id, project_id, job_id)}/final.mp4"


def final_thumbnail_key(user_id: str, project_id: str, job_id: str) -> str:
    return f"{generation_prefix(user_id, project_id, job_id)}/final.jpg"


# ── Download ─────────────────────────────────────────────────────────────────

async def download_bytes(url: str) -> bytes:
    """Download a public URL (provider output, logo, clip) and return raw bytes."""
    try:
        async with httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT, follow_redirects=True) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.content
    except httpx.HTTPError as e:
        raise StorageError(f"Download failed for {url}: {e}") from e


# ── Object storage ───────────────────────────────────────────────────────────

class ObjectStorage:
    """R2 bucket behind the S3 API. boto3 is blocking, so calls run in a thread."""

    def __init__(
        self,
        bucket: str = R2_BUCKET_NAME,
        public_url: str = R2_PUBLIC_URL,
        client=None,
    ):
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")
        self._client = client

    def _s3(self):
        if self._client is None:
            import boto3
            from botocore.config import Config as BotoConfig

            self._client = boto3.client(
                "s3",
                endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
                aws_access_key_id=R2_ACCESS_KEY_ID,
                aws_secret_access_key=R2_SECRET_ACCESS_KEY,
                config=BotoConfig(signature_version="s3v4"),
                region_name="auto",
            )
        return self._client

    def url_for(self, key: str) -> str:
        return f"{self.public_url}/{key}"

    def key_for_url(self, url: str) -> Optional[str]:
        prefix = f"{self.public_url}/"
        if not url.startswith(prefix):
            return None
        return url[len(prefix):]

    async def put(self, key: str, data: bytes, content_type: str = "video/mp4") -> str:
        """Upload bytes and return the public URL."""
        try:
            await asyncio.to_thread(
                self._s3().put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except Exception as e:
            logger.error(f"R2 upload failed for key={key}: {e}")
            raise StorageError(f"Upload failed for {key}: {e}") from e

        url = self.url_for(key)
        logger.info(f"Uploaded to R2: {url} ({len(data)} bytes)")
        return url

    async def delete(self, url: str) -> None:
        key = self.key_for_url(url)
        if key is None:
            raise StorageError(f"URL is not in bucket {self.bucket}: {url}")
        try:
            await asyncio.to_thread(self._s3().delete_object, Bucket=self.bucket, Key=key)
        except Exception as e:
            raise StorageError(f"Delete failed for {key}: {e}") from e
        logger.info(f"Deleted from R2: {key}")
