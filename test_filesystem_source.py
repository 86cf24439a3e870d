import os
import time

import pytest

from core.errors import ConfigurationError
from core.models import SourceConfig
from sources.filesystem import FilesystemSource
from sources.filesystem.source import METHOD_EXISTING, METHOD_FOLDER_CHECK


def make_source(path) -> FilesystemSource:
    return FilesystemSource(SourceConfig(
        id="fs",
        name="Drop folder",
        type="filesystem",
        enabled=True,
        config={"watch_path": str(path)},
    ))


async def test_initialize_requires_existing_directory(tmp_path):
    source = make_source(tmp_path / "missing")
    with pytest.raises(ConfigurationError):
        await source.initialize()


async def test_initialize_indexes_category_files_only(watch_dir):
    source = make_source(watch_dir)
    await source.initialize()

    stats = source.statistics()
    assert stats["total"] == 3
    assert stats["categories"] == {"data": 2, "installers": 1}


async def test_discover_without_changes_finds_nothing(watch_dir):
    source = make_source(watch_dir)
    await source.initialize()
    assert await source.discover() == []


async def test_discover_reports_new_and_modified_only(watch_dir):
    source = make_source(watch_dir)
    await source.initialize()
    existing = await source.enumerate_existing()
    assert len(existing) == 3

    (watch_dir / "installers" / "tool_v1.1.0_setup.exe").write_bytes(b"installer-2")
    modified = watch_dir / "data" / "archive_2024-03-01.zip"
    modified.write_bytes(b"archive, second edition")
    later = time.time() + 60
    os.utime(modified, (later, later))

    candidates = await source.discover()

    assert len(candidates) == 2
    by_title = {c.title: c for c in candidates}
    assert by_title["tool_v1.1.0_setup.exe"].version == "1.1.0"
    assert by_title["tool_v1.1.0_setup.exe"].category == "installers"
    assert by_title["archive_2024-03-01.zip"].category == "data"
    assert all(c.method == METHOD_FOLDER_CHECK for c in candidates)

    # the index was updated, so nothing is reported twice
    assert await source.discover() == []


async def test_nested_files_belong_to_top_level_category(watch_dir):
    source = make_source(watch_dir)
    existing = {c.title: c for c in await source.enumerate_existing()}

    driver = existing["driver_20240301.bin"]
    assert driver.category == "data"
    assert driver.metadata["relative_path"] == os.path.join("data", "nested", "driver_20240301.bin")
    assert driver.metadata["is_existing"] is True
    assert driver.method == METHOD_EXISTING
    assert driver.display_name == "data - driver_20240301.bin"


async def test_enumerate_existing_on_vanished_root(tmp_path):
    source = make_source(tmp_path / "gone")
    assert await source.enumerate_existing() == []


async def test_fetch_copies_file(watch_dir, tmp_path):
    source = make_source(watch_dir)
    await source.initialize()
    candidate = (await source.enumerate_existing())[0]
    destination = tmp_path / "out" / candidate.title

    assert await source.fetch(candidate, destination)
    assert destination.read_bytes() == (watch_dir / candidate.metadata["relative_path"]).read_bytes()


async def test_fetch_of_empty_file_leaves_nothing_behind(watch_dir, tmp_path):
    (watch_dir / "installers" / "empty_v0.0.1.exe").write_bytes(b"")
    source = make_source(watch_dir)
    candidate = next(
        c for c in await source.enumerate_existing() if c.title == "empty_v0.0.1.exe"
    )
    destination = tmp_path / "out" / candidate.title

    assert not await source.fetch(candidate, destination)
    assert not destination.exists()


async def test_fetch_of_deleted_file_fails(watch_dir, tmp_path):
    source = make_source(watch_dir)
    candidate = (await source.enumerate_existing())[0]
    os.remove(candidate.locator)

    destination = tmp_path / "out" / candidate.title
    assert not await source.fetch(candidate, destination)
    assert not destination.exists()


async def test_release_clears_index(watch_dir):
    source = make_source(watch_dir)
    await source.initialize()
    await source.release()
    assert source.known_files == {}
