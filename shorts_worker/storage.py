"""
R2 object storage for pipeline artifacts.

Artifacts live under the job's base path:
  project-assets/u_{user_id}/p_{project_id}/j_{job_id}/...

Talks to Cloudflare R2 through the S3 API (boto3). boto3 is blocking, so
calls run in a worker thread.
"""

import asyncio
import logging

import boto3
from botocore.config import Config as BotoConfig

logger = logging.getLogger(__name__)


def create_r2_client(settings):
    return boto3.client(
        "s3",
        endpoint_url=f"https://{settings.r2_account_id}.r2.cloudflarestorage.com",
        aws_access_key_id=settings.r2_access_key_id,
        aws_secret_access_key=settings.r2_secret_access_key,
        config=BotoConfig(signature_version="s3v4"),
        region_name="auto",
    )


class R2ObjectStore:
    """Upload/download of pipeline artifacts, keyed by storage path."""

    def __init__(self, s3_client, bucket: str):
        self._s3 = s3_client
        self._bucket = bucket

    async def upload(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """Upload bytes and return the storage key."""
        try:
            await asyncio.to_thread(
                self._s3.put_object,
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except Exception as e:
            logger.error(f"R2 upload failed for key={key}: {e}")
            raise RuntimeError(f"Upload failed for {key}: {e}") from e

        logger.info(f"Uploaded to R2: {key} ({len(data)} bytes)")
        return key

    async def download(self, key: str) -> bytes:
        try:
            response = await asyncio.to_thread(self._s3.get_object, Bucket=self._bucket, Key=key)
            return await asyncio.to_thread(response["Body"].read)
        except Exception as e:
            logger.error(f"R2 download failed for key={key}: {e}")
            raise RuntimeError(f"Download failed for {key}: {e}") from e
