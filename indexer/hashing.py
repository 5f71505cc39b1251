"""Content hashing used for change detection."""

import hashlib
from pathlib import Path
from typing import Union

HASH_PREFIX = "sha256:"


def hash_bytes(data: bytes) -> str:
    """Return ``sha256:<hex>`` for raw bytes."""
    return HASH_PREFIX + hashlib.sha256(data).hexdigest()


def hash_text(text: str) -> str:
    """Hash a string through its UTF-8 encoding."""
    return hash_bytes(text.encode('utf-8'))


def hash_file(path: Union[str, Path], block_size: int = 65536) -> str:
    """Hash a file's bytes without loading it whole."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for block in iter(lambda: f.read(block_size), b''):
            digest.update(block)
    return HASH_PREFIX + digest.hexdigest()
