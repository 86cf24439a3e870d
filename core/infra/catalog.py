"""
SQLite-backed artifact catalog and source configuration store.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from core.interfaces import Catalog, ConfigStore
from core.models import CatalogRecord, FileStats, SourceConfig, SourceStatus
from core.infra.db import Database
from core.infra.storage import FileStorage

logger = logging.getLogger(__name__)

# Only these fields of a record may change after creation.
_MUTABLE_RECORD_FIELDS = ("title", "description", "tags", "metadata")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    # CURRENT_TIMESTAMP yields "YYYY-MM-DD HH:MM:SS"
    return datetime.fromisoformat(value.replace(" ", "T"))


class SqliteCatalog(Catalog):
    """Artifact catalog stored in the ``artifacts`` table."""

    def __init__(self, db: Database):
        self.db = db

    async def create(self, record: CatalogRecord) -> CatalogRecord:
        await self.db.insert("artifacts", {
            "id": record.id,
            "source_id": record.source_id,
            "category": record.category,
            "title": record.title,
            "description": record.description,
            "version": record.version,
            "file_name": record.file_name,
            "file_path": record.file_path,
            "file_size": record.file_size,
            "discovered_at": _iso(record.discovered_at),
            "origin": record.origin,
            "checksum": record.checksum,
            "tags": json.dumps(record.tags),
            "metadata": json.dumps(record.metadata, default=str),
        })
        created = await self.get(record.id)
        if created is None:
            raise RuntimeError(f"Failed to create catalog record {record.id}")
        logger.debug(f"Registered {record.source_id}/{record.category} {record.version}: {record.file_name}")
        return created

    async def get(self, record_id: str) -> Optional[CatalogRecord]:
        row = await self.db.fetch_one("SELECT * FROM artifacts WHERE id = ?", (record_id,))
        return self._row_to_record(row) if row else None

    async def find_all(
        self, source_id: Optional[str] = None, category: Optional[str] = None
    ) -> List[CatalogRecord]:
        clauses, params = [], []
        if source_id is not None:
            clauses.append("source_id = ?")
            params.append(source_id)
        if category is not None:
            clauses.append("category = ?")
            params.append(category)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self.db.fetch_all(
            f"SELECT * FROM artifacts {where} ORDER BY discovered_at DESC", tuple(params)
        )
        return [self._row_to_record(row) for row in rows]

    async def find_by_origin(self, source_id: str, origin: str) -> List[CatalogRecord]:
        rows = await self.db.fetch_all(
            "SELECT * FROM artifacts WHERE source_id = ? AND origin = ?",
            (source_id, origin),
        )
        return [self._row_to_record(row) for row in rows]

    async def update(self, record_id: str, **changes: Any) -> Optional[CatalogRecord]:
        illegal = set(changes) - set(_MUTABLE_RECORD_FIELDS)
        if illegal:
            raise ValueError(f"Catalog fields are immutable: {sorted(illegal)}")

        data: Dict[str, Any] = {}
        for field, value in changes.items():
            data[field] = json.dumps(value, default=str) if field in ("tags", "metadata") else value
        if data:
            data["updated_at"] = datetime.utcnow().isoformat()
            await self.db.update("artifacts", {"id": record_id}, data)
        return await self.get(record_id)

    async def compute_file_stats(self, path: Path) -> FileStats:
        return await FileStorage.compute_file_stats(path)

    async def stats(self) -> Dict[str, Any]:
        total = await self.db.fetch_one(
            "SELECT COUNT(*) AS count, COALESCE(SUM(file_size), 0) AS size FROM artifacts"
        )
        by_source = await self.db.fetch_all(
            "SELECT source_id, COUNT(*) AS count FROM artifacts GROUP BY source_id"
        )
        by_category = await self.db.fetch_all(
            "SELECT category, COUNT(*) AS count FROM artifacts GROUP BY category"
        )
        return {
            "total_artifacts": total["count"],
            "total_size": total["size"],
            "by_source": {row["source_id"]: row["count"] for row in by_source},
            "by_category": {row["category"]: row["count"] for row in by_category},
        }

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> CatalogRecord:
        return CatalogRecord(
            id=row["id"],
            source_id=row["source_id"],
            category=row["category"],
            title=row["title"],
            description=row["description"],
            version=row["version"],
            file_name=row["file_name"],
            file_path=row["file_path"],
            file_size=row["file_size"],
            discovered_at=_parse_dt(row["discovered_at"]),
            created_at=_parse_dt(row["created_at"]),
            origin=row["origin"],
            checksum=row["checksum"],
            tags=json.loads(row["tags"]) if row["tags"] else [],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )


class SqliteConfigStore(ConfigStore):
    """Source configurations stored in the ``sources`` table."""

    def __init__(self, db: Database):
        self.db = db

    async def exists(self, source_id: str) -> bool:
        row = await self.db.fetch_one("SELECT id FROM sources WHERE id = ?", (source_id,))
        return row is not None

    async def get(self, source_id: str) -> Optional[SourceConfig]:
        row = await self.db.fetch_one("SELECT * FROM sources WHERE id = ?", (source_id,))
        return self._row_to_config(row) if row else None

    async def find_all(self) -> List[SourceConfig]:
        rows = await self.db.fetch_all("SELECT * FROM sources ORDER BY name")
        return [self._row_to_config(row) for row in rows]

    async def create(self, config: SourceConfig) -> SourceConfig:
        await self.db.insert("sources", {
            "id": config.id,
            "name": config.name,
            "description": config.description,
            "type": config.type,
            "enabled": int(config.enabled),
            "status": config.status.value,
            "last_check": _iso(config.last_check),
            "config": json.dumps(config.config),
        })
        created = await self.get(config.id)
        if created is None:
            raise RuntimeError(f"Failed to create source {config.id}")
        return created

    async def update(self, source_id: str, **changes: Any) -> Optional[SourceConfig]:
        data: Dict[str, Any] = {}
        for field in ("name", "description", "type"):
            if field in changes:
                data[field] = changes[field]
        if "enabled" in changes:
            data["enabled"] = int(bool(changes["enabled"]))
        if "status" in changes:
            data["status"] = SourceStatus(changes["status"]).value
        if "last_check" in changes:
            data["last_check"] = _iso(changes["last_check"])
        if "config" in changes:
            data["config"] = json.dumps(changes["config"])

        if data:
            data["updated_at"] = datetime.utcnow().isoformat()
            await self.db.update("sources", {"id": source_id}, data)
        return await self.get(source_id)

    async def update_status(
        self,
        source_id: str,
        status: SourceStatus,
        last_check: Optional[datetime] = None,
    ) -> None:
        data: Dict[str, Any] = {
            "status": status.value,
            "updated_at": datetime.utcnow().isoformat(),
        }
        if last_check:
            data["last_check"] = last_check.isoformat()
        await self.db.update("sources", {"id": source_id}, data)

    @staticmethod
    def _row_to_config(row: aiosqlite.Row) -> SourceConfig:
        return SourceConfig(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            type=row["type"],
            enabled=bool(row["enabled"]),
            status=SourceStatus(row["status"]),
            last_check=_parse_dt(row["last_check"]),
            config=json.loads(row["config"]) if row["config"] else {},
        )
