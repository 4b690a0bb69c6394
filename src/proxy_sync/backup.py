"""
Backup Manager

Snapshots the managed nginx.conf before each cycle mutates it and restores
that snapshot when a reload fails.  Copies go through a temp file in the
destination directory followed by ``os.replace``, so the destination is
either the old content or the full new content, never a partial write.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class BackupError(RuntimeError):
    pass


class BackupSourceMissingError(BackupError):
    """The file to copy from does not exist."""


def _fsync_dir(directory: Path) -> None:
    try:
        dir_fd = os.open(str(directory), os.O_DIRECTORY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    finally:
        os.close(dir_fd)


def _replace_contents(dst: Path, data: bytes, *, mode_from: Path) -> Path:
    """Swap *data* in at the file *dst* points to, keeping its mode and owner.

    Symlinks are followed so the link itself survives; the file's mode and
    ownership come from the existing target, or from *mode_from* when the
    target does not exist yet.
    """
    target = dst.resolve()
    target.parent.mkdir(parents=True, exist_ok=True)
    reference = target if target.exists() else mode_from
    ref_stat = reference.stat()

    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=str(target.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        shutil.copymode(reference, tmp_path)
        tmp_stat = tmp_path.stat()
        if (tmp_stat.st_uid, tmp_stat.st_gid) != (ref_stat.st_uid, ref_stat.st_gid):
            try:
                os.chown(tmp_path, ref_stat.st_uid, ref_stat.st_gid)
            except PermissionError:
                logger.warning("Cannot keep owner of %s; running without privileges", target)
        os.replace(tmp_path, target)
        _fsync_dir(target.parent)
    finally:
        tmp_path.unlink(missing_ok=True)
    return target


def snapshot(src: PathLike, dst: PathLike) -> Path:
    """Copy *src* over *dst* byte-for-byte and return the destination."""
    src_path = Path(src)
    dst_path = Path(dst)
    if not src_path.exists():
        raise BackupSourceMissingError(f"nginx config file does not exist: {src_path}")
    try:
        data = src_path.read_bytes()
        _replace_contents(dst_path, data, mode_from=src_path)
    except OSError as exc:
        raise BackupError(f"Failed to copy {src_path} -> {dst_path}: {exc}") from exc
    logger.debug("Copied %d bytes %s -> %s", len(data), src_path, dst_path)
    return dst_path


def restore(backup: PathLike, managed: PathLike) -> Path:
    """Put the backup content back over the managed file."""
    return snapshot(backup, managed)
