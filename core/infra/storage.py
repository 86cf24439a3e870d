"""
Storage helpers: download directory layout, unique file names, file stats.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from core.models import FileStats

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")
_CHUNK_SIZE = 1024 * 1024


def sanitize_file_name(file_name: str) -> str:
    return _UNSAFE_CHARS.sub("_", file_name)


def _path_segment(name: str) -> str:
    """A sanitized directory name that cannot step out of its parent."""
    cleaned = sanitize_file_name(name)
    return cleaned if cleaned.strip(".") else "_"


def format_file_size(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    i = min(int(math.floor(math.log(size, 1024))), len(units) - 1)
    return f"{round(size / 1024 ** i, 2):g} {units[i]}"


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def remove_quietly(path: PathLike) -> None:
    """Delete ``path`` if it exists; used to discard partial downloads."""
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not remove {path}: {e}")


class FileStorage:
    """Lays out fetched artifacts as ``<root>/<source id>/<category>/<file>``."""

    def __init__(self, root: PathLike):
        self.root = Path(root)

    def ensure_root(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def ensure_source_directory(
        self,
        source_id: str,
        category: Optional[str] = None,
        root: Optional[Path] = None,
    ) -> Path:
        base = (root or self.root) / _path_segment(source_id)
        directory = base / _path_segment(category) if category else base
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    @staticmethod
    def unique_file_name(original_name: str, directory: Path) -> str:
        """Return a sanitized name that does not yet exist in ``directory``."""
        sanitized = sanitize_file_name(original_name) or "artifact"
        candidate = sanitized
        stem, suffix = Path(sanitized).stem, Path(sanitized).suffix
        counter = 1
        while (directory / candidate).exists():
            candidate = f"{stem}_{counter}{suffix}"
            counter += 1
        return candidate

    @staticmethod
    async def copy_file(source: PathLike, target: PathLike) -> None:
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copy2, str(source), str(target))

    @staticmethod
    async def compute_file_stats(path: PathLike) -> FileStats:
        path = Path(path).resolve()
        try:
            stat = path.stat()
        except OSError:
            return FileStats(exists=False)
        if not path.is_file():
            return FileStats(exists=False)

        checksum = await asyncio.to_thread(_sha256, path)
        return FileStats(
            exists=True,
            size=stat.st_size,
            modified_at=datetime.fromtimestamp(stat.st_mtime),
            checksum=checksum,
        )
