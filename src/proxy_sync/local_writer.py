"""Persist fetched config content to the managed nginx.conf."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)


def save(content: str, path: Union[str, Path]) -> Path:
    """Write *content* to *path*, creating the file if it does not exist yet."""
    target = Path(path)
    if not target.exists():
        target.parent.mkdir(parents=True, exist_ok=True)
        target.touch()
        logger.info("Created managed config file %s", target)
    target.write_bytes(content.encode("utf-8"))
    return target
