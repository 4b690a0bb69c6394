"""Content fingerprint used to tell whether a fetched config changed anything."""
from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Union

_CHUNK_SIZE = 64 * 1024


def file_digest(path: Union[str, Path]) -> str:
    """Return the MD5 hex digest of the file's full content.

    Only used as an equality check between the managed file and its backup.
    ``OSError`` from opening or reading propagates.
    """
    digest = hashlib.md5(usedforsecurity=False)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()
