"""Artifact store interface.

Implementations provide a handful of object primitives; the job-level
operations the tracker needs (sync, exists_nonempty, put_marker) are
built on top of them here. Stores never retry internally: transient
failures surface as TransientStorageError so the tracker's backoff policy
is the only retry loop.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int


def _under(key: str, prefix: str) -> bool:
    if prefix == "" or prefix.endswith("/"):
        return key.startswith(prefix)
    return key == prefix or key.startswith(prefix + "/")


class ArtifactStore(ABC):
    """Abstract interface for durable object storage (memory, local or S3)."""

    kind = "abstract"

    @abstractmethod
    async def put(self, key: str, data: bytes) -> None:
        """Create or overwrite one object."""
        ...

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Read one object. Raises ArtifactNotFoundError if missing."""
        ...

    @abstractmethod
    async def list_objects(self, prefix: str) -> List[ObjectInfo]:
        """All objects whose key starts with prefix, sorted by key."""
        ...

    @abstractmethod
    async def copy(self, src_key: str, dst_key: str) -> None:
        ...

    @abstractmethod
    async def delete(self, keys: List[str]) -> None:
        ...

    async def list_keys(self, prefix: str) -> List[str]:
        return [o.key for o in await self.list_objects(prefix)]

    async def sync(self, src_prefix: str, dst_prefix: str) -> int:
        """Recursively copy src_prefix to dst_prefix.

        src_prefix names either one object or a directory: "in/talk" matches
        in/talk and in/talk/*, never in/talk.wav. Existing destination
        objects are overwritten. Returns the number of objects copied; zero
        means nothing matched.
        """
        copied = 0
        for obj in await self.list_objects(src_prefix):
            if not _under(obj.key, src_prefix):
                continue
            await self.copy(obj.key, dst_prefix + obj.key[len(src_prefix):])
            copied += 1
        return copied

    async def exists_nonempty(self, prefix: str) -> bool:
        """True if at least one non-empty object lives under prefix."""
        return any(o.size > 0 for o in await self.list_objects(prefix))

    async def put_marker(self, path: str) -> None:
        await self.put(path, b"")

    async def delete_prefix(self, prefix: str) -> int:
        keys = await self.list_keys(prefix)
        if keys:
            await self.delete(keys)
        return len(keys)
