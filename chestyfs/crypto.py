"""Identifier helpers and AES-CTR stream encryption."""

from __future__ import annotations

import hashlib
import secrets
from typing import BinaryIO

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

_BLOCK_SIZE = 16
_BUFFER_SIZE = 32 * 1024


def generate_id() -> str:
    """Return 32 random bytes as hex."""
    return secrets.token_hex(32)


def hash_key(key: str) -> str:
    """Return the MD5 hex digest of key."""
    return hashlib.md5(key.encode("utf-8")).hexdigest()


def new_encryption_key() -> bytes:
    """Return a fresh 32-byte AES key."""
    return secrets.token_bytes(32)


def _copy_stream(transform, src: BinaryIO, dst: BinaryIO) -> int:
    written = _BLOCK_SIZE
    for block in iter(lambda: src.read(_BUFFER_SIZE), b""):
        written += dst.write(transform.update(block))
    tail = transform.finalize()
    if tail:
        written += dst.write(tail)
    return written


def copy_encrypt(key: bytes, src: BinaryIO, dst: BinaryIO) -> int:
    """Encrypt src into dst, prefixed by a random IV; return bytes written."""
    algorithm = algorithms.AES(key)
    iv = secrets.token_bytes(_BLOCK_SIZE)
    dst.write(iv)
    encryptor = Cipher(algorithm, modes.CTR(iv)).encryptor()
    return _copy_stream(encryptor, src, dst)


def copy_decrypt(key: bytes, src: BinaryIO, dst: BinaryIO) -> int:
    """Read the IV from src, decrypt the rest into dst; return the IV size plus bytes written."""
    algorithm = algorithms.AES(key)
    iv = src.read(_BLOCK_SIZE)
    if len(iv) < _BLOCK_SIZE:
        raise ValueError("stream is too short to hold an IV")
    decryptor = Cipher(algorithm, modes.CTR(iv)).decryptor()
    return _copy_stream(decryptor, src, dst)