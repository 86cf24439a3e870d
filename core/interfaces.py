"""
Core interfaces for the artifact synchronizer.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from .models import (
    ArtifactCandidate,
    CatalogRecord,
    FileStats,
    SourceConfig,
    SourceStatus,
)


class SourceLogAdapter(logging.LoggerAdapter):
    """Prefixes every message with the id of the source that logged it."""

    def process(self, msg, kwargs):
        return f"[{self.extra['source_id']}] {msg}", kwargs


class Source(ABC):
    """Capability interface every source implements.

    Concrete sources are selected by their ``source_type`` tag. The orchestrator
    owns the config object and is the only writer of status and last check.
    """

    source_type: ClassVar[str] = ""
    required_fields: ClassVar[Tuple[str, ...]] = ()
    # Serialize discovery across all instances of this type.
    exclusive: ClassVar[bool] = False

    def __init__(self, config: SourceConfig):
        self._config = config

    @property
    def config(self) -> SourceConfig:
        return self._config

    @property
    def id(self) -> str:
        return self._config.id

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def status(self) -> SourceStatus:
        return self._config.status

    @property
    def last_check(self) -> Optional[datetime]:
        return self._config.last_check

    @property
    def settings(self) -> Dict[str, Any]:
        return self._config.config

    @property
    def storage_root(self) -> Optional[Path]:
        """Storage root for this source, or None to use the orchestrator's."""
        return None

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare resources. Raises if the source cannot be activated."""

    @abstractmethod
    async def discover(self) -> List[ArtifactCandidate]:
        """Run one discovery pass and return the candidates found."""

    @abstractmethod
    async def fetch(self, candidate: ArtifactCandidate, destination: Path) -> bool:
        """Store the bytes of ``candidate`` at ``destination``.

        Returns False on a recoverable failure, after removing any partial file.
        """

    @abstractmethod
    async def enumerate_existing(self) -> List[ArtifactCandidate]:
        """Return artifacts that already exist at the source, for seeding."""

    @abstractmethod
    async def release(self) -> None:
        """Tear down sessions, handles and indices."""

    def file_name_for(self, candidate: ArtifactCandidate) -> Optional[str]:
        """Preferred storage file name for ``candidate``, if the source has one."""
        return None

    def statistics(self) -> Dict[str, Any]:
        return {}


class Catalog(ABC):
    """Durable registry of fetched artifacts."""

    @abstractmethod
    async def create(self, record: CatalogRecord) -> CatalogRecord:
        ...

    @abstractmethod
    async def get(self, record_id: str) -> Optional[CatalogRecord]:
        ...

    @abstractmethod
    async def find_all(
        self, source_id: Optional[str] = None, category: Optional[str] = None
    ) -> List[CatalogRecord]:
        ...

    @abstractmethod
    async def find_by_origin(self, source_id: str, origin: str) -> List[CatalogRecord]:
        ...

    @abstractmethod
    async def update(self, record_id: str, **changes: Any) -> Optional[CatalogRecord]:
        """Update metadata fields (title, description, tags, metadata) only."""

    @abstractmethod
    async def compute_file_stats(self, path: Path) -> FileStats:
        ...


class ConfigStore(ABC):
    """Persistence for source configurations."""

    @abstractmethod
    async def exists(self, source_id: str) -> bool:
        ...

    @abstractmethod
    async def get(self, source_id: str) -> Optional[SourceConfig]:
        ...

    @abstractmethod
    async def find_all(self) -> List[SourceConfig]:
        ...

    @abstractmethod
    async def create(self, config: SourceConfig) -> SourceConfig:
        ...

    @abstractmethod
    async def update(self, source_id: str, **changes: Any) -> Optional[SourceConfig]:
        ...

    @abstractmethod
    async def update_status(
        self,
        source_id: str,
        status: SourceStatus,
        last_check: Optional[datetime] = None,
    ) -> None:
        ...


class ActivitySink(ABC):
    """Receives one event per check cycle and per fetch outcome."""

    @abstractmethod
    def log_check(self, source_id: str, source_name: str, status: str, **metadata: Any) -> None:
        ...

    @abstractmethod
    def log_fetch(
        self,
        source_id: str,
        title: str,
        status: str,
        record_id: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    def log_system(self, message: str, status: str = "info") -> None:
        ...
