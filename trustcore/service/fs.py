from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional, Union


def atomic_write(path: Union[str, Path], data: bytes, *, mode: Optional[int] = None) -> Path:
    """Write ``data`` to ``path`` through a temp file in the same directory.

    Readers see either the old file or the complete new one. ``mode`` is applied
    to the temp file before the rename, so a private key is never briefly
    world-readable.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=str(target.parent), prefix=f".{target.name}_", suffix=".tmp"
    )
    try:
        try:
            os.write(fd, data)
            if mode is not None:
                os.fchmod(fd, mode)
            os.fsync(fd)
        finally:
            os.close(fd)
        os.replace(tmp_name, target)
    except OSError:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    return target


def read_private_text(path: Union[str, Path]) -> Optional[str]:
    """Contents of a persisted secret file, or None when absent or a symlink."""
    target = Path(path)
    if not target.exists() or target.is_symlink():
        return None
    return target.read_text().strip()
