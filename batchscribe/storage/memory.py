"""In-memory artifact store for local development and tests."""

from collections import Counter
from typing import Dict, List, Optional, Type

from batchscribe.jobs.errors import ArtifactNotFoundError, StorageError, TransientStorageError
from batchscribe.storage.base import ArtifactStore, ObjectInfo


class InMemoryArtifactStore(ArtifactStore):
    """Dict-backed store with per-operation call counts and fault injection.

    inject_fault("copy", times=2) makes the next two copy calls raise
    TransientStorageError. Counted operations are the primitives plus
    put_marker.
    """

    kind = "memory"

    def __init__(self, objects: Optional[Dict[str, bytes]] = None):
        self._objects: Dict[str, bytes] = dict(objects or {})
        self._faults: Dict[str, List[Type[StorageError]]] = {}
        self.calls: Counter = Counter()

    def inject_fault(
        self,
        op: str,
        times: int = 1,
        error: Type[StorageError] = TransientStorageError,
    ) -> None:
        self._faults.setdefault(op, []).extend([error] * times)

    def _enter(self, op: str) -> None:
        self.calls[op] += 1
        pending = self._faults.get(op)
        if pending:
            error = pending.pop(0)
            raise error(f"injected {op} failure")

    @property
    def objects(self) -> Dict[str, bytes]:
        return dict(self._objects)

    async def put(self, key: str, data: bytes) -> None:
        self._enter("put")
        self._objects[key] = bytes(data)

    async def get(self, key: str) -> bytes:
        self._enter("get")
        if key not in self._objects:
            raise ArtifactNotFoundError(key)
        return self._objects[key]

    async def list_objects(self, prefix: str) -> List[ObjectInfo]:
        self._enter("list")
        return [
            ObjectInfo(key=k, size=len(v))
            for k, v in sorted(self._objects.items())
            if k.startswith(prefix)
        ]

    async def copy(self, src_key: str, dst_key: str) -> None:
        self._enter("copy")
        if src_key not in self._objects:
            raise ArtifactNotFoundError(src_key)
        self._objects[dst_key] = self._objects[src_key]

    async def delete(self, keys: List[str]) -> None:
        self._enter("delete")
        for key in keys:
            self._objects.pop(key, None)

    async def put_marker(self, path: str) -> None:
        self.calls["put_marker"] += 1
        await super().put_marker(path)
