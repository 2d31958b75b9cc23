"""Filesystem-backed artifact store.

Object keys map to paths under a base directory. Blocking file I/O runs
in the default thread executor to keep the event loop free.
"""

import asyncio
import os
import shutil
from functools import partial
from typing import List

from batchscribe.jobs.errors import ArtifactNotFoundError, StorageError, TransientStorageError
from batchscribe.storage.base import ArtifactStore, ObjectInfo


class LocalArtifactStore(ArtifactStore):
    kind = "local"

    def __init__(self, base_dir: str):
        self._base_dir = os.path.abspath(base_dir)
        os.makedirs(self._base_dir, exist_ok=True)

    @property
    def base_dir(self) -> str:
        return self._base_dir

    def _path(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self._base_dir, key))
        if not path.startswith(self._base_dir + os.sep):
            raise StorageError(f"Key escapes the store root: {key}")
        return path

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, *args))
        except (ArtifactNotFoundError, StorageError):
            raise
        except FileNotFoundError as exc:
            raise ArtifactNotFoundError(exc.filename or "") from exc
        except OSError as exc:
            raise TransientStorageError(f"{type(exc).__name__}: {exc}") from exc

    def _put_sync(self, key: str, data: bytes) -> None:
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = path + ".partial"
        with open(tmp_path, "wb") as dst:
            dst.write(data)
        os.replace(tmp_path, path)

    def _get_sync(self, key: str) -> bytes:
        path = self._path(key)
        if not os.path.isfile(path):
            raise ArtifactNotFoundError(key)
        with open(path, "rb") as src:
            return src.read()

    def _list_sync(self, prefix: str) -> List[ObjectInfo]:
        found = []
        for root, _dirs, files in os.walk(self._base_dir):
            for name in files:
                if name.endswith(".partial"):
                    continue
                path = os.path.join(root, name)
                key = os.path.relpath(path, self._base_dir).replace(os.sep, "/")
                if key.startswith(prefix):
                    found.append(ObjectInfo(key=key, size=os.path.getsize(path)))
        return sorted(found, key=lambda o: o.key)

    def _copy_sync(self, src_key: str, dst_key: str) -> None:
        src = self._path(src_key)
        if not os.path.isfile(src):
            raise ArtifactNotFoundError(src_key)
        dst = self._path(dst_key)
        os.makedirs(os.path.dirname(dst), exist_ok=True)
        shutil.copyfile(src, dst)

    def _delete_sync(self, keys: List[str]) -> None:
        for key in keys:
            path = self._path(key)
            if os.path.isfile(path):
                os.remove(path)
        # Drop directories emptied by the delete
        for root, _dirs, _files in os.walk(self._base_dir, topdown=False):
            if root != self._base_dir and not os.listdir(root):
                os.rmdir(root)

    async def put(self, key: str, data: bytes) -> None:
        await self._run(self._put_sync, key, data)

    async def get(self, key: str) -> bytes:
        return await self._run(self._get_sync, key)

    async def list_objects(self, prefix: str) -> List[ObjectInfo]:
        return await self._run(self._list_sync, prefix)

    async def copy(self, src_key: str, dst_key: str) -> None:
        await self._run(self._copy_sync, src_key, dst_key)

    async def delete(self, keys: List[str]) -> None:
        await self._run(self._delete_sync, keys)
