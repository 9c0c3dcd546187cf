"""On-disk chunk storage laid out by user and a transformed file key."""

from __future__ import annotations

import hashlib
import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

log = logging.getLogger(__name__)

DEFAULT_ROOT = "globenetwork"
_BUFFER_SIZE = 32 * 1024


@dataclass(frozen=True)
class PathKey:
    pathname: str
    filename: str

    def first_path_name(self) -> str:
        """Return the first segment of pathname."""
        return self.pathname.split("/")[0]

    def full_path(self) -> str:
        return f"{self.pathname}/{self.filename}"


def cas_path_transform(key: str) -> PathKey:
    """Address content by the SHA-1 hex digest of key."""
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
    return PathKey(pathname=digest, filename=digest)


def default_path_transform(key: str) -> PathKey:
    return PathKey(pathname=key, filename=key)


class Store:
    """Stores chunks under root/user_id/<pathname of the original file>/chunk_name."""

    def __init__(
        self,
        root: str | Path = "",
        path_transform: Callable[[str], PathKey] | None = None,
    ) -> None:
        self.root = Path(root) if str(root) else Path(DEFAULT_ROOT)
        self.path_transform = path_transform or cas_path_transform

    def chunk_dir(self, user_id: str, filename: str) -> Path:
        """Return the directory that holds the chunks of filename."""
        return self.root / user_id / self.path_transform(filename).pathname

    def clear(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)

    def has(self, user_id: str, key: str) -> bool:
        return self.chunk_dir(user_id, key).exists()

    def delete(self, user_id: str, key: str) -> None:
        """Remove everything stored for key; a missing key is not an error."""
        path_key = self.path_transform(key)
        target = self.root / user_id / path_key.first_path_name()
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            else:
                target.unlink(missing_ok=True)
        finally:
            log.info("deleted [%s] from disk", path_key.filename)

    def write(
        self,
        user_id: str,
        original_filename: str,
        chunk_name: str,
        data: bytes | bytearray | memoryview | BinaryIO,
    ) -> int:
        """Write a chunk and return the number of bytes written."""
        directory = self.chunk_dir(user_id, original_filename)
        directory.mkdir(parents=True, exist_ok=True)
        with open(directory / chunk_name, "wb") as fh:
            if isinstance(data, (bytes, bytearray, memoryview)):
                return fh.write(data)
            return sum(fh.write(block) for block in iter(lambda: data.read(_BUFFER_SIZE), b""))

    def read(self, user_id: str, original_filename: str, chunk_name: str) -> bytes:
        """Return a stored chunk; raises FileNotFoundError if it is absent."""
        return (self.chunk_dir(user_id, original_filename) / chunk_name).read_bytes()