"""
Core data models for the artifact synchronizer.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


UNKNOWN_VERSION = "unknown"


class SourceStatus(str, Enum):
    """Lifecycle status of a configured source."""
    DISABLED = "disabled"
    ACTIVE = "active"
    CHECKING = "checking"
    ERROR = "error"


class SourceConfig(BaseModel):
    """Persisted configuration of one source instance."""
    id: str
    name: str
    description: str = ""
    type: str
    enabled: bool = False
    status: SourceStatus = SourceStatus.DISABLED
    last_check: Optional[datetime] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class ArtifactCandidate(BaseModel):
    """An artifact found during discovery, not yet confirmed as new."""
    title: str
    version: str = UNKNOWN_VERSION
    locator: str  # URL or filesystem path
    category: str
    display_name: str
    method: str
    size: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def has_known_version(self) -> bool:
        return self.version != UNKNOWN_VERSION


class CatalogRecord(BaseModel):
    """A registered artifact."""
    id: str
    source_id: str
    category: str
    title: str
    description: str = ""
    version: str
    file_name: str
    file_path: str
    file_size: int = 0
    discovered_at: datetime = Field(default_factory=datetime.utcnow)
    created_at: Optional[datetime] = None
    origin: Optional[str] = None
    checksum: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class FileStats(BaseModel):
    """Size and checksum of a stored file."""
    exists: bool
    size: Optional[int] = None
    modified_at: Optional[datetime] = None
    checksum: Optional[str] = None


class CheckResult(BaseModel):
    """Outcome of one check or rescan cycle for a single source."""
    source_id: str
    success: bool = True
    skipped: bool = False
    discovered: int = 0
    new: int = 0
    fetched: int = 0
    failed: int = 0
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None


class Event(BaseModel):
    """Activity events for logging and monitoring."""
    level: str  # success, error, info, warning
    kind: str  # check, fetch, system
    message: str
    source: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)
