"""
Filesystem source - watches a directory tree and reports new or modified files.

Every immediate subdirectory of the watch path is a category; files inside a
category are found recursively. Files lying directly in the watch path are
not artifacts and are ignored.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel

from core.errors import ConfigurationError
from core.infra.storage import FileStorage, format_file_size, remove_quietly
from core.interfaces import Source, SourceLogAdapter
from core.models import ArtifactCandidate, SourceConfig
from core.versioning import extract_version

logger = logging.getLogger(__name__)

METHOD_FOLDER_CHECK = "folder_check"
METHOD_EXISTING = "existing_file"
PRE_EXISTING_TAG = "pre-existing"


class KnownFile(BaseModel):
    filename: str
    category: str
    version: str
    last_modified: datetime
    size: int
    relative_path: str


# (absolute path, category, size, mtime)
_WalkEntry = Tuple[Path, str, int, float]


class FilesystemSource(Source):
    """Diffs a watched tree against an in-memory index of known files."""

    source_type = "filesystem"
    required_fields = ("watch_path",)

    def __init__(self, config: SourceConfig):
        super().__init__(config)
        self.log = SourceLogAdapter(logger, {"source_id": config.id})
        self._known: Dict[str, KnownFile] = {}
        self._last_scan: Optional[datetime] = None

    # ------------------------------------------------------------------ #
    @property
    def watch_path(self) -> Path:
        return Path(self.settings["watch_path"])

    @property
    def known_files(self) -> Dict[str, KnownFile]:
        return dict(self._known)

    # ------------------------------------------------------------------ #
    async def initialize(self) -> None:
        self.log.info(f"Initializing filesystem source on {self.watch_path}")
        if not self.watch_path.is_dir():
            raise ConfigurationError(
                f"Watch path does not exist: {self.watch_path}", source_id=self.id
            )

        self._known.clear()
        for path, category, size, mtime in await self._walk():
            self._remember(path, category, size, mtime)
        self._last_scan = datetime.utcnow()
        self.log.info(f"Initial scan indexed {len(self._known)} files")

    async def discover(self) -> List[ArtifactCandidate]:
        self.log.info("Checking watched tree for new files")
        candidates: List[ArtifactCandidate] = []

        for path, category, size, mtime in await self._walk():
            key = str(path)
            known = self._known.get(key)
            modified = datetime.fromtimestamp(mtime)
            if known is not None and modified <= known.last_modified:
                continue

            info = self._remember(path, category, size, mtime)
            candidates.append(self._candidate(info, path, METHOD_FOLDER_CHECK))
            if known is None:
                self.log.debug(f"New file: {info.relative_path}")
            else:
                self.log.debug(f"Modified file: {info.relative_path}")

        self._last_scan = datetime.utcnow()
        if candidates:
            self.log.info(f"{len(candidates)} new or modified files found")
        else:
            self.log.info("No new files")
        return candidates

    async def fetch(self, candidate: ArtifactCandidate, destination: Path) -> bool:
        self.log.info(f"Copying {candidate.display_name}")
        source_path = Path(candidate.locator)
        try:
            if not source_path.is_file():
                raise FileNotFoundError(f"Source file not found: {source_path}")

            await FileStorage.copy_file(source_path, destination)

            size = destination.stat().st_size
            if size <= 0:
                raise ValueError("Copied file is empty")
            self.log.info(f"Copied {destination.name} ({format_file_size(size)})")
            return True
        except Exception as e:
            self.log.error(f"Copy of {source_path} failed: {e}")
            remove_quietly(destination)
            return False

    async def enumerate_existing(self) -> List[ArtifactCandidate]:
        self.log.info("Enumerating existing files for catalog seeding")
        if not self.watch_path.is_dir():
            self.log.warning(f"Watch path does not exist: {self.watch_path}")
            return []

        existing: List[ArtifactCandidate] = []
        for path, category, size, mtime in await self._walk():
            info = self._remember(path, category, size, mtime)
            existing.append(self._candidate(info, path, METHOD_EXISTING, pre_existing=True))

        self.log.info(f"{len(existing)} existing files found")
        return existing

    async def release(self) -> None:
        self._known.clear()
        self.log.info("Filesystem source released")

    def statistics(self) -> Dict[str, Any]:
        categories: Dict[str, int] = {}
        for info in self._known.values():
            categories[info.category] = categories.get(info.category, 0) + 1
        return {
            "total": len(self._known),
            "categories": categories,
            "last_scan": self._last_scan.isoformat() if self._last_scan else None,
        }

    # ------------------------------------------------------------------ #
    def _remember(self, path: Path, category: str, size: int, mtime: float) -> KnownFile:
        info = KnownFile(
            filename=path.name,
            category=category,
            version=extract_version(path.name),
            last_modified=datetime.fromtimestamp(mtime),
            size=size,
            relative_path=os.path.relpath(path, self.watch_path.resolve()),
        )
        self._known[str(path)] = info
        return info

    @staticmethod
    def _candidate(
        info: KnownFile, path: Path, method: str, pre_existing: bool = False
    ) -> ArtifactCandidate:
        metadata: Dict[str, Any] = {
            "relative_path": info.relative_path,
            "last_modified": info.last_modified.isoformat(),
            "sync_method": "existing" if pre_existing else METHOD_FOLDER_CHECK,
        }
        if pre_existing:
            metadata["is_existing"] = True
            metadata["tag"] = PRE_EXISTING_TAG
        return ArtifactCandidate(
            title=info.filename,
            version=info.version,
            locator=str(path),
            category=info.category,
            display_name=f"{info.category} - {info.filename}",
            method=method,
            size=info.size,
            metadata=metadata,
        )

    async def _walk(self) -> List[_WalkEntry]:
        return await asyncio.to_thread(self._walk_sync)

    def _walk_sync(self) -> List[_WalkEntry]:
        entries: List[_WalkEntry] = []
        root = self.watch_path.resolve()
        try:
            categories = sorted(p for p in root.iterdir() if p.is_dir())
        except OSError as e:
            self.log.error(f"Cannot list {root}: {e}")
            return entries

        for category_dir in categories:
            self._walk_category(category_dir, category_dir.name, entries)
        return entries

    def _walk_category(self, directory: Path, category: str, entries: List[_WalkEntry]) -> None:
        try:
            children = sorted(directory.iterdir())
        except OSError as e:
            self.log.error(f"Cannot scan {directory}: {e}")
            return

        for child in children:
            try:
                if child.is_dir():
                    self._walk_category(child, category, entries)
                elif child.is_file():
                    stat = child.stat()
                    entries.append((child, category, stat.st_size, stat.st_mtime))
            except OSError as e:
                self.log.warning(f"Skipping {child}: {e}")
