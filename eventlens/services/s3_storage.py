"""Object storage for event pictures, overlays, guest photos and QR codes.

Uses S3 when a bucket is configured, otherwise the local filesystem (served
by the app under ``/storage``).
"""
import logging
import os
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class ObjectStorage:
    def __init__(
        self,
        bucket: str = "",
        region: str = "",
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        local_dir: str = "storage",
        public_base_url: str = "",
        client=None,
    ):
        """
        Args:
            bucket: S3 bucket name; empty selects the local filesystem
            region: AWS region
            access_key: AWS access key (optional; uses IAM role on EC2)
            secret_key: AWS secret key (optional; uses IAM role on EC2)
            local_dir: root directory for the filesystem fallback
            public_base_url: prefix joined with the key to build public URLs
            client: preconfigured boto3 S3 client (tests)
        """
        self.bucket = bucket
        self.region = region
        self.local_dir = Path(local_dir)
        self.public_base_url = (public_base_url or "").rstrip("/")
        self.use_s3 = bool(bucket)
        self.client = None
        if self.use_s3:
            self.client = client or boto3.client(
                "s3",
                region_name=region or None,
                aws_access_key_id=access_key or None,
                aws_secret_access_key=secret_key or None,
            )
            logger.info(f"S3 storage initialized for bucket '{bucket}' in region '{region}'")
        else:
            logger.info("S3 bucket not configured; storing files under %s", self.local_dir)

    @classmethod
    def from_settings(cls, settings) -> "ObjectStorage":
        bucket = getattr(settings, "S3_UPLOADS_BUCKET", "") or ""
        region = getattr(settings, "AWS_REGION", "") or ""
        default_base = (
            f"https://{bucket}.s3.{region}.amazonaws.com" if bucket and region else ""
        )
        return cls(
            bucket=bucket,
            region=region,
            access_key=getattr(settings, "AWS_ACCESS_KEY_ID", None),
            secret_key=getattr(settings, "AWS_SECRET_ACCESS_KEY", None),
            local_dir=getattr(settings, "LOCAL_STORAGE_DIR", "storage"),
            public_base_url=(
                default_base if bucket else getattr(settings, "PUBLIC_STORAGE_BASE_URL", "")
            ),
        )

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"/storage/{key}"

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """Store ``data`` under ``key`` and return its public URL."""
        if self.use_s3:
            try:
                self.client.put_object(  # type: ignore[union-attr]
                    Bucket=self.bucket,
                    Key=key,
                    Body=data,
                    ContentType=content_type,
                    ServerSideEncryption="AES256",
                )
            except ClientError as e:
                logger.error(f"S3 upload failed for {key}: {e}")
                raise
            logger.info(f"Uploaded to S3: s3://{self.bucket}/{key}")
        else:
            path = self.local_dir / key
            os.makedirs(path.parent, exist_ok=True)
            path.write_bytes(data)
            logger.debug("Stored %s (%d bytes) on local filesystem", key, len(data))
        return self.public_url(key)

    def delete(self, key: str) -> bool:
        if self.use_s3:
            try:
                self.client.delete_object(Bucket=self.bucket, Key=key)  # type: ignore[union-attr]
                return True
            except ClientError as e:
                logger.error(f"S3 delete failed for {key}: {e}")
                return False
        path = self.local_dir / key
        if path.exists():
            path.unlink()
            return True
        return False

    def exists(self, key: str) -> bool:
        if not self.use_s3:
            return (self.local_dir / key).exists()
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)  # type: ignore[union-attr]
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchKey", "NotFound"):
                return False
            logger.error(f"Error checking S3 file existence: {e}")
            raise
