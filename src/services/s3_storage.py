"""Object storage access for backup repositories and exports."""
import asyncio
import logging

import boto3
from botocore.exceptions import ClientError

from src.config.settings import S3Settings
from src.core.resilience import resilient

logger = logging.getLogger(__name__)


class S3Storage:
    """Thin async wrapper over a boto3 S3 client.

    boto3 is blocking, so every call is pushed to the default executor.
    """

    def __init__(self, config: S3Settings, client=None):
        self.config = config
        self.bucket = config.bucket
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.config.access_key and self.config.secret_key)

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self.config.endpoint or None,
                region_name=self.config.region,
                aws_access_key_id=self.config.access_key,
                aws_secret_access_key=self.config.secret_key,
            )
        return self._client

    @resilient("s3")
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every object under prefix. Returns the number deleted."""
        prefix = prefix.lstrip("/")
        if not prefix:
            raise ValueError("Refusing to delete the bucket root")

        def _delete() -> int:
            deleted = 0
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
                # delete_objects accepts at most 1000 keys per request
                for i in range(0, len(keys), 1000):
                    self.client.delete_objects(
                        Bucket=self.bucket, Delete={"Objects": keys[i:i + 1000], "Quiet": True}
                    )
                    deleted += len(keys[i:i + 1000])
            return deleted

        loop = asyncio.get_running_loop()
        deleted = await loop.run_in_executor(None, _delete)
        logger.info(f"Deleted {deleted} objects under s3://{self.bucket}/{prefix}")
        return deleted

    @resilient("s3")
    async def delete_file(self, key: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, lambda: self.client.delete_object(Bucket=self.bucket, Key=key)
        )

    @resilient("s3")
    async def object_size(self, key: str) -> int | None:
        def _head() -> int | None:
            try:
                return self.client.head_object(Bucket=self.bucket, Key=key)["ContentLength"]
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey"):
                    return None
                raise

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _head)

    def presigned_get_url(self, key: str, expires_seconds: int) -> str:
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_seconds,
        )

    def presigned_put_url(self, key: str, expires_seconds: int) -> str:
        return self.client.generate_presigned_url(
            "put_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_seconds,
        )
