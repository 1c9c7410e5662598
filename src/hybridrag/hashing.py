from __future__ import annotations

import hashlib
from pathlib import Path

def blake2b_hex(data: bytes) -> str:
    h = hashlib.blake2b(digest_size=32)
    h.update(data)
    return h.hexdigest()

def hash_text(text: str) -> str:
    return blake2b_hex(text.encode("utf-8"))

def hash_file(path: str | Path, chunk_size: int = 1024 * 1024) -> str:
    """Compute a stable hash of a file's bytes."""
    p = Path(path)
    h = hashlib.blake2b(digest_size=32)
    with p.open("rb") as f:
        while True:
            b = f.read(chunk_size)
            if not b:
                break
            h.update(b)
    return h.hexdigest()

def document_id(origin: str, chunk_index: int) -> str:
    """Stable Document key: one id per (origin, chunk_index)."""
    return blake2b_hex(f"{origin}#{chunk_index}".encode("utf-8"))[:32]
