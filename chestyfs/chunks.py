"""Splitting file content into fixed-size chunks."""

from __future__ import annotations

from collections.abc import Iterable

from chestyfs.messages import FileChunk

CHUNK_SIZE = 50


def split_file_into_chunks(content: bytes) -> list[FileChunk]:
    """Cut content into CHUNK_SIZE pieces indexed from zero."""
    return [
        FileChunk(content=bytes(content[start:start + CHUNK_SIZE]), index=start // CHUNK_SIZE)
        for start in range(0, len(content), CHUNK_SIZE)
    ]


def contains(items: Iterable[str], item: str) -> bool:
    """Return whether item is among items."""
    return item in items