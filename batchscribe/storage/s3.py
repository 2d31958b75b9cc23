"""Amazon S3 artifact store.

boto3 is synchronous, so every call runs in the default thread executor.
Errors are classified but never retried here.
"""

import asyncio
from functools import partial
from typing import List, Optional

from batchscribe import aws
from batchscribe.jobs.errors import ArtifactNotFoundError, StorageError, TransientStorageError
from batchscribe.storage.base import ArtifactStore, ObjectInfo

# DeleteObjects accepts at most 1000 keys per request
_DELETE_BATCH = 1000


class S3ArtifactStore(ArtifactStore):
    kind = "s3"

    def __init__(self, bucket: str, region: Optional[str] = None, client=None):
        if not bucket:
            raise StorageError("S3_BUCKET must be set for the s3 artifact store")
        self._bucket = bucket
        self._client = client or aws.make_client("s3", region)

    @property
    def bucket(self) -> str:
        return self._bucket

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, *args, **kwargs))
        except Exception as exc:
            if not aws.is_aws_error(exc):
                raise
            if aws.is_transient(exc):
                raise TransientStorageError(f"S3 {type(exc).__name__}: {exc}") from exc
            raise StorageError(f"S3 {type(exc).__name__}: {exc}") from exc

    async def put(self, key: str, data: bytes) -> None:
        await self._run(self._client.put_object, Bucket=self._bucket, Key=key, Body=data)

    def _get_sync(self, key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
        except Exception as exc:
            if aws.error_code(exc) in ("NoSuchKey", "404"):
                raise ArtifactNotFoundError(key) from exc
            raise
        return response["Body"].read()

    async def get(self, key: str) -> bytes:
        return await self._run(self._get_sync, key)

    def _list_sync(self, prefix: str) -> List[ObjectInfo]:
        paginator = self._client.get_paginator("list_objects_v2")
        found = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                # Skip "directory" placeholder objects
                if obj["Key"].endswith("/"):
                    continue
                found.append(ObjectInfo(key=obj["Key"], size=obj.get("Size", 0)))
        return found

    async def list_objects(self, prefix: str) -> List[ObjectInfo]:
        return await self._run(self._list_sync, prefix)

    def _copy_sync(self, src_key: str, dst_key: str) -> None:
        try:
            self._client.copy_object(
                Bucket=self._bucket,
                Key=dst_key,
                CopySource={"Bucket": self._bucket, "Key": src_key},
            )
        except Exception as exc:
            if aws.error_code(exc) in ("NoSuchKey", "404"):
                raise ArtifactNotFoundError(src_key) from exc
            raise

    async def copy(self, src_key: str, dst_key: str) -> None:
        await self._run(self._copy_sync, src_key, dst_key)

    async def delete(self, keys: List[str]) -> None:
        for start in range(0, len(keys), _DELETE_BATCH):
            batch = keys[start:start + _DELETE_BATCH]
            await self._run(
                self._client.delete_objects,
                Bucket=self._bucket,
                Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
            )
