# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
SHA-256 helpers.

Corpus identity and exported adapter checksums both go through here, so
that "same corpus" and "same artifact" mean the same thing everywhere.
"""

import hashlib
from pathlib import Path
from typing import Iterable

HASH_BUFFER_SIZE = 65536


def compute_sha256(file_path: Path) -> str:
    """Hex SHA-256 of a file, read in 64 KiB chunks."""
    hasher = hashlib.sha256()
    with open(file_path, "rb") as f:
        while True:
            chunk = f.read(HASH_BUFFER_SIZE)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()


def compute_sha256_bytes(data: bytes) -> str:
    """Hex SHA-256 of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def compute_sha256_parts(parts: Iterable[str]) -> str:
    """
    Hex SHA-256 over a sequence of strings.

    Each part is length-prefixed before hashing, so ``["ab", "c"]`` and
    ``["a", "bc"]`` produce different digests.
    """
    hasher = hashlib.sha256()
    for part in parts:
        encoded = part.encode("utf-8")
        hasher.update(len(encoded).to_bytes(8, "little"))
        hasher.update(encoded)
    return hasher.hexdigest()
