"""
Shared fixtures: a migrated SQLite database in a temp dir and the stores on top of it.
"""

import pytest

from core.activity import ActivityLog
from core.infra.catalog import SqliteCatalog, SqliteConfigStore
from core.infra.db import Database
from core.infra.storage import FileStorage


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "test.db"))
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def catalog(db):
    return SqliteCatalog(db)


@pytest.fixture
def config_store(db):
    return SqliteConfigStore(db)


@pytest.fixture
def activity():
    return ActivityLog()


@pytest.fixture
def storage(tmp_path):
    store = FileStorage(tmp_path / "downloads")
    store.ensure_root()
    return store


@pytest.fixture
def watch_dir(tmp_path):
    """A watched tree with two categories and three files."""
    root = tmp_path / "watched"
    (root / "installers").mkdir(parents=True)
    (root / "data" / "nested").mkdir(parents=True)
    (root / "installers" / "tool_v1.0.0_setup.exe").write_bytes(b"installer-1")
    (root / "data" / "archive_2024-03-01.zip").write_bytes(b"archive")
    (root / "data" / "nested" / "driver_20240301.bin").write_bytes(b"driver")
    (root / "README.txt").write_text("not an artifact")
    return root
