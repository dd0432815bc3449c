from __future__ import annotations

import glob as local_glob
import os
import posixpath
from typing import IO, Any, Dict, List, Optional

import fsspec

GCS_SCHEME = "gs://"


class Filesystem:
    """Abstraction over the staging filesystems (local disk, Google Cloud Storage)."""

    def __init__(self, impl) -> None:
        self._impl = impl

    @property
    def root(self) -> str:
        return self._impl.root

    @property
    def is_remote(self) -> bool:
        return isinstance(self._impl, _GcsStorage)

    @classmethod
    def for_root(cls, root: str, storage_options: Optional[Dict[str, Any]] = None) -> "Filesystem":
        if root.startswith(GCS_SCHEME):
            impl = _GcsStorage(root.rstrip("/"), storage_options or {})
        else:
            impl = _LocalStorage(root)
        return cls(impl)

    @classmethod
    def for_path(cls, path: str, storage_options: Optional[Dict[str, Any]] = None) -> "Filesystem":
        if path.startswith(GCS_SCHEME):
            return cls.for_root(posixpath.dirname(path.rstrip("/")) or path, storage_options)
        return cls.for_root(os.path.dirname(os.path.abspath(path)) or os.getcwd())

    def join(self, *parts: str) -> str:
        return self._impl.join(*parts)

    def exists(self, path: str) -> bool:
        return self._impl.exists(path)

    def makedirs(self, path: str) -> None:
        self._impl.makedirs(path)

    def open(self, path: str, mode: str = "rb") -> IO:
        return self._impl.open(path, mode)

    def size(self, path: str) -> int:
        return self._impl.size(path)

    def glob(self, pattern: str) -> List[str]:
        return sorted(self._impl.glob(pattern))

    def delete(self, path: str) -> bool:
        """Delete one file; returns False when it was already gone."""
        return self._impl.delete(path)


def is_remote_path(path: str) -> bool:
    return path.startswith(GCS_SCHEME)


class _LocalStorage:
    def __init__(self, root: str) -> None:
        self.root = os.path.abspath(root)

    def _full(self, path: str) -> str:
        if not path:
            return self.root
        if os.path.isabs(path):
            return path
        return os.path.join(self.root, path)

    def join(self, *parts: str) -> str:
        parts = [p for p in parts if p]
        if not parts:
            return self.root
        return os.path.join(*parts)

    def exists(self, path: str) -> bool:
        return os.path.exists(self._full(path))

    def makedirs(self, path: str) -> None:
        os.makedirs(self._full(path), exist_ok=True)

    def open(self, path: str, mode: str) -> IO:
        full = self._full(path)
        if "w" in mode or "a" in mode:
            os.makedirs(os.path.dirname(full), exist_ok=True)
        return open(full, mode)

    def size(self, path: str) -> int:
        return os.path.getsize(self._full(path))

    def glob(self, pattern: str) -> List[str]:
        return local_glob.glob(self._full(pattern))

    def delete(self, path: str) -> bool:
        full = self._full(path)
        try:
            os.remove(full)
        except FileNotFoundError:
            return False
        return True


class _GcsStorage:
    def __init__(self, root: str, storage_options: Dict[str, Any]) -> None:
        self.root = root
        self.fs = fsspec.filesystem("gs", **storage_options)

    def _full(self, path: str) -> str:
        if not path:
            return self.root
        if path.startswith(GCS_SCHEME):
            return path
        return f"{self.root}/{path.lstrip('/')}"

    def join(self, *parts: str) -> str:
        clean: List[str] = []
        for part in parts:
            if not part:
                continue
            if part.startswith(GCS_SCHEME):
                clean = [part.rstrip("/")]
            else:
                clean.append(part.strip("/"))
        if not clean:
            return self.root
        return "/".join(clean)

    def exists(self, path: str) -> bool:
        return self.fs.exists(self._full(path))

    def makedirs(self, path: str) -> None:
        # Object stores have no directories.
        return None

    def open(self, path: str, mode: str) -> IO:
        return self.fs.open(self._full(path), mode)

    def size(self, path: str) -> int:
        return int(self.fs.size(self._full(path)))

    def glob(self, pattern: str) -> List[str]:
        return [GCS_SCHEME + match for match in self.fs.glob(self._full(pattern))]

    def delete(self, path: str) -> bool:
        try:
            self.fs.rm(self._full(path))
        except FileNotFoundError:
            return False
        return True
