"""
Database infrastructure with SQLite and async support.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite


logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS sources (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        type TEXT NOT NULL,
        enabled INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL,
        last_check TEXT,
        config TEXT NOT NULL DEFAULT '{}',
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS artifacts (
        id TEXT PRIMARY KEY,
        source_id TEXT NOT NULL,
        category TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        version TEXT NOT NULL,
        file_name TEXT NOT NULL,
        file_path TEXT NOT NULL,
        file_size INTEGER NOT NULL DEFAULT 0,
        discovered_at TEXT NOT NULL,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT,
        origin TEXT,
        checksum TEXT,
        tags TEXT NOT NULL DEFAULT '[]',
        metadata TEXT NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_artifacts_identity
    ON artifacts(source_id, category, version)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_artifacts_origin
    ON artifacts(source_id, origin)
    """,
]


class Database:
    """Async SQLite database wrapper."""

    def __init__(self, db_path: str = "artifacts.db"):
        # Handle sqlite+aiosqlite:///path format
        if db_path.startswith("sqlite"):
            if "///" in db_path:
                actual_path = db_path.split("///")[-1]
            else:
                actual_path = db_path.split("//")[-1]
            self.db_path = Path(actual_path)
        else:
            self.db_path = Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        """Connect to the database and run migrations."""
        if self._connection:
            return

        if self.db_path.parent and not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path, timeout=30)
        self._connection.row_factory = aiosqlite.Row
        # WAL so readers (CLI, health checks) don't block the service
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA busy_timeout=30000;")
        await self._run_migrations()
        logger.info(f"Connected to database: {self.db_path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def execute(self, sql: str, params: Tuple[Any, ...] = ()) -> aiosqlite.Cursor:
        """Execute a SQL statement."""
        if not self._connection:
            await self.connect()
        return await self._connection.execute(sql, params)

    async def execute_commit(self, sql: str, params: Tuple[Any, ...] = ()) -> int:
        """Execute a write statement, commit, and return the affected row count."""
        cursor = await self.execute(sql, params)
        await self._connection.commit()
        return cursor.rowcount

    async def fetch_one(self, sql: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        """Fetch one row."""
        cursor = await self.execute(sql, params)
        return await cursor.fetchone()

    async def fetch_all(self, sql: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        """Fetch all rows."""
        cursor = await self.execute(sql, params)
        return await cursor.fetchall()

    async def insert(self, table: str, data: Dict[str, Any]) -> None:
        """Insert one row and commit."""
        columns = list(data.keys())
        placeholders = ", ".join("?" * len(columns))
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        await self.execute_commit(sql, tuple(data.values()))

    async def update(self, table: str, key: Dict[str, Any], data: Dict[str, Any]) -> int:
        """Update the rows matching ``key`` and commit."""
        if not data:
            return 0
        set_clause = ", ".join(f"{col} = ?" for col in data)
        where_clause = " AND ".join(f"{col} = ?" for col in key)
        sql = f"UPDATE {table} SET {set_clause} WHERE {where_clause}"
        return await self.execute_commit(sql, tuple(data.values()) + tuple(key.values()))

    async def _run_migrations(self) -> None:
        """Run database migrations."""
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor = await self._connection.execute("SELECT MAX(version) FROM migrations")
        row = await cursor.fetchone()
        current = row[0] or 0
        if current >= SCHEMA_VERSION:
            return

        for statement in _SCHEMA:
            await self._connection.execute(statement)
        await self._connection.execute(
            "INSERT INTO migrations (version) VALUES (?)", (SCHEMA_VERSION,)
        )
        await self._connection.commit()
        logger.info(f"Applied schema version {SCHEMA_VERSION}")
