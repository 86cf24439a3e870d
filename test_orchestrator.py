import asyncio
from pathlib import Path
from typing import List, Optional

import pytest

from core.errors import ConfigurationError, LockContention, SourceNotFound
from core.interfaces import Source
from core.models import (
    UNKNOWN_VERSION,
    ArtifactCandidate,
    CatalogRecord,
    SourceConfig,
    SourceStatus,
)
from core.orchestrator import SourceOrchestrator
from sources.filesystem import FilesystemSource


class FakeSource(Source):
    """Serves the ``items`` of its config on every discovery pass."""

    source_type = "fake"
    required_fields = ("items",)

    def __init__(self, config: SourceConfig):
        super().__init__(config)
        self.fetched: List[str] = []
        self.released = False

    async def initialize(self) -> None:
        if self.settings.get("init_error"):
            raise RuntimeError("cannot initialize")

    async def discover(self) -> List[ArtifactCandidate]:
        if self.settings.get("discover_error"):
            raise RuntimeError("portal unreachable")
        return [
            ArtifactCandidate(
                title=item["title"],
                version=item.get("version", UNKNOWN_VERSION),
                locator=f"fake://items/{item['title']}",
                category=item.get("category", "installers"),
                display_name=item["title"],
                method="fake",
                metadata={"application": "fake-app"},
            )
            for item in self.settings["items"]
        ]

    async def fetch(self, candidate: ArtifactCandidate, destination: Path) -> bool:
        self.fetched.append(candidate.title)
        if candidate.title in self.settings.get("broken", []):
            destination.write_bytes(b"partial")
            raise ConnectionError("connection dropped")
        destination.write_bytes(candidate.title.encode())
        return True

    async def enumerate_existing(self) -> List[ArtifactCandidate]:
        return []

    async def release(self) -> None:
        self.released = True


class GatedSource(FakeSource):
    """Exclusive type whose discovery blocks until the test opens the gate."""

    source_type = "gated"
    exclusive = True
    gate: asyncio.Event
    entered: List[str] = []

    async def discover(self) -> List[ArtifactCandidate]:
        type(self).entered.append(self.id)
        await type(self).gate.wait()
        return await super().discover()


class SeedGatedSource(FakeSource):
    """Records each seeding pass; blocks in it while ``gate`` is set and closed."""

    source_type = "seed_gated"
    gate: Optional[asyncio.Event] = None
    seeded: List[str] = []

    async def enumerate_existing(self) -> List[ArtifactCandidate]:
        if type(self).gate is not None:
            await type(self).gate.wait()
        type(self).seeded.append(self.settings["items"][0]["title"])
        return []


def fake_config(source_id, items, enabled=True, type="fake", **extra) -> SourceConfig:
    return SourceConfig(
        id=source_id,
        name=source_id.title(),
        type=type,
        enabled=enabled,
        config={"items": items, **extra},
    )


def fs_config(path, source_id="drop") -> SourceConfig:
    return SourceConfig(
        id=source_id,
        name="Drop folder",
        type="filesystem",
        enabled=True,
        config={"watch_path": str(path)},
    )


ITEMS = [
    {"title": "tool_v1.0.0.exe", "version": "1.0.0"},
    {"title": "data_2024-03.zip", "version": "2024-03", "category": "data"},
]


@pytest.fixture
def orchestrator(catalog, config_store, activity, storage):
    return SourceOrchestrator(
        catalog,
        config_store,
        activity,
        storage,
        source_types={
            "fake": FakeSource,
            "gated": GatedSource,
            "seed_gated": SeedGatedSource,
            "filesystem": FilesystemSource,
        },
    )


# --------------------------------------------------------------------------- #
# Configuration
async def test_create_rejects_unknown_type(orchestrator):
    with pytest.raises(ConfigurationError):
        await orchestrator.create_source(fake_config("x", ITEMS, type="ftp"))


async def test_create_rejects_missing_required_field(orchestrator, config_store):
    with pytest.raises(ConfigurationError):
        await orchestrator.create_source(fake_config("x", []))
    assert not await config_store.exists("x")


async def test_create_rejects_duplicate_id(orchestrator):
    await orchestrator.create_source(fake_config("f", ITEMS))
    with pytest.raises(ConfigurationError):
        await orchestrator.create_source(fake_config("f", ITEMS))


async def test_failed_initialization_marks_error(orchestrator, config_store):
    with pytest.raises(RuntimeError):
        await orchestrator.create_source(fake_config("f", ITEMS, init_error=True))

    assert orchestrator.get_source("f") is None
    assert (await config_store.get("f")).status == SourceStatus.ERROR


async def test_start_activates_enabled_sources(orchestrator, config_store):
    await config_store.create(fake_config("ok", ITEMS))
    await config_store.create(fake_config("broken", ITEMS, init_error=True))
    await config_store.create(fake_config("off", ITEMS, enabled=False))

    await orchestrator.start()

    assert [s.id for s in orchestrator.list_sources()] == ["ok"]
    assert (await config_store.get("ok")).status == SourceStatus.ACTIVE
    assert (await config_store.get("broken")).status == SourceStatus.ERROR


# --------------------------------------------------------------------------- #
# Check pipeline
async def test_check_registers_each_artifact_once(orchestrator, catalog, storage):
    await orchestrator.create_source(fake_config("f", ITEMS))

    first = await orchestrator.check_source("f")
    assert (first.discovered, first.new, first.fetched, first.failed) == (2, 2, 2, 0)

    records = {r.title: r for r in await catalog.find_all(source_id="f")}
    tool = records["tool_v1.0.0.exe"]
    assert Path(tool.file_path) == storage.root / "f" / "installers" / "tool_v1.0.0.exe"
    assert Path(tool.file_path).read_bytes() == b"tool_v1.0.0.exe"
    assert tool.checksum and tool.file_size == len(b"tool_v1.0.0.exe")
    assert tool.tags == ["fake-app", "installers", "v1.0.0"]
    assert tool.origin == "fake://items/tool_v1.0.0.exe"

    second = await orchestrator.check_source("f")
    assert second.success and second.new == 0
    assert len(await catalog.find_all(source_id="f")) == 2


async def test_known_version_is_never_refetched(orchestrator, catalog):
    await catalog.create(CatalogRecord(
        id="old",
        source_id="f",
        category="installers",
        title="tool_v1.0.0.exe",
        version="1.0.0",
        file_name="tool_v1.0.0.exe",
        file_path="/elsewhere/tool_v1.0.0.exe",
    ))
    await orchestrator.create_source(fake_config("f", ITEMS))

    await orchestrator.check_source("f")

    assert orchestrator.get_source("f").fetched == ["data_2024-03.zip"]


async def test_unknown_version_is_always_refetched(orchestrator, catalog):
    await orchestrator.create_source(fake_config("f", [{"title": "nounversion.bin"}]))

    await orchestrator.check_source("f")
    await orchestrator.check_source("f")

    records = await catalog.find_all(source_id="f")
    assert len(records) == 2
    assert {r.file_name for r in records} == {"nounversion.bin", "nounversion_1.bin"}
    assert records[0].tags == ["fake-app", "installers"]


async def test_failed_fetch_leaves_no_file_and_no_record(orchestrator, catalog, storage):
    await orchestrator.create_source(fake_config("f", ITEMS, broken=["tool_v1.0.0.exe"]))

    result = await orchestrator.check_source("f")

    assert result.success
    assert (result.fetched, result.failed) == (1, 1)
    assert [r.title for r in await catalog.find_all(source_id="f")] == ["data_2024-03.zip"]
    assert list((storage.root / "f" / "installers").iterdir()) == []


async def test_discovery_failure_sets_error_status(orchestrator, config_store, activity):
    await orchestrator.create_source(fake_config("f", ITEMS, discover_error=True))

    result = await orchestrator.check_source("f")

    assert not result.success
    assert "portal unreachable" in result.error
    assert (await config_store.get("f")).status == SourceStatus.ERROR
    assert activity.recent(1)[0].level == "error"


async def test_successful_check_records_status_and_activity(orchestrator, config_store, activity):
    await orchestrator.create_source(fake_config("f", ITEMS[:1]))

    await orchestrator.check_source("f")

    config = await config_store.get("f")
    assert config.status == SourceStatus.ACTIVE
    assert config.last_check is not None
    kinds = [(e.kind, e.level) for e in activity.recent(2)]
    assert kinds == [("check", "success"), ("fetch", "success")]


async def test_check_all_isolates_failures(orchestrator, catalog):
    await orchestrator.create_source(fake_config("a", ITEMS[:1]))
    await orchestrator.create_source(fake_config("b", ITEMS[:1], discover_error=True))
    await orchestrator.create_source(fake_config("c", ITEMS[:1]))

    results = {r.source_id: r for r in await orchestrator.check_all()}

    assert results["a"].success and results["c"].success
    assert not results["b"].success
    assert len(await catalog.find_all(source_id="a")) == 1
    assert len(await catalog.find_all(source_id="c")) == 1


async def test_check_unknown_source(orchestrator):
    with pytest.raises(SourceNotFound):
        await orchestrator.check_source("nope")


async def test_check_disabled_source_is_skipped(orchestrator):
    await orchestrator.create_source(fake_config("f", ITEMS, enabled=False))

    result = await orchestrator.check_source("f")

    assert result.skipped


async def test_exclusive_type_runs_one_cycle_at_a_time(orchestrator):
    GatedSource.gate = asyncio.Event()
    GatedSource.entered = []
    await orchestrator.create_source(fake_config("g1", ITEMS[:1], type="gated"))
    await orchestrator.create_source(fake_config("g2", ITEMS[1:], type="gated"))

    first = asyncio.create_task(orchestrator.check_source("g1"))
    await asyncio.sleep(0.01)

    with pytest.raises(LockContention):
        await orchestrator.check_source("g1")

    second = asyncio.create_task(orchestrator.check_source("g2"))
    await asyncio.sleep(0.01)
    assert "g2" not in GatedSource.entered

    GatedSource.gate.set()
    results = await asyncio.gather(first, second)

    assert GatedSource.entered == ["g1", "g2"]
    assert all(r.success and r.fetched == 1 for r in results)


# --------------------------------------------------------------------------- #
# Lifecycle
async def test_disable_and_enable(orchestrator, config_store):
    await orchestrator.create_source(fake_config("f", ITEMS))
    instance = orchestrator.get_source("f")

    await orchestrator.disable_source("f")
    assert orchestrator.get_source("f") is None
    assert instance.released
    config = await config_store.get("f")
    assert not config.enabled and config.status == SourceStatus.DISABLED

    await orchestrator.enable_source("f")
    assert orchestrator.get_source("f") is not None
    assert (await config_store.get("f")).status == SourceStatus.ACTIVE


async def test_reload_follows_persisted_flags(orchestrator, config_store):
    await orchestrator.create_source(fake_config("f", ITEMS))
    await config_store.create(fake_config("g", ITEMS))
    await config_store.update("f", enabled=False)

    await orchestrator.reload()

    assert [s.id for s in orchestrator.list_sources()] == ["g"]


async def test_reconfigure_rebuilds_instance(orchestrator):
    await orchestrator.create_source(fake_config("f", ITEMS[:1]))
    old = orchestrator.get_source("f")

    updated = await orchestrator.reconfigure_source("f", {"items": ITEMS})

    new = orchestrator.get_source("f")
    assert new is not old and old.released
    assert updated.config == {"items": ITEMS}
    assert len(new.settings["items"]) == 2


async def test_reconfigure_validates_before_touching_instance(orchestrator):
    await orchestrator.create_source(fake_config("f", ITEMS))
    current = orchestrator.get_source("f")

    with pytest.raises(ConfigurationError):
        await orchestrator.reconfigure_source("f", {"items": []})

    assert orchestrator.get_source("f") is current
    assert not current.released


async def test_concurrent_reconfigurations_apply_in_order(orchestrator, config_store):
    await orchestrator.create_source(fake_config("f", ITEMS))

    await asyncio.gather(
        orchestrator.reconfigure_source("f", {"items": ITEMS[:1]}),
        orchestrator.reconfigure_source("f", {"items": ITEMS[1:]}),
    )

    assert (await config_store.get("f")).config == {"items": ITEMS[1:]}
    assert orchestrator.get_source("f").settings == {"items": ITEMS[1:]}
    assert not orchestrator.is_updating("f")


async def test_disable_during_check_keeps_disabled_status(orchestrator, config_store):
    GatedSource.gate = asyncio.Event()
    GatedSource.entered = []
    await orchestrator.create_source(fake_config("g", ITEMS[:1], type="gated"))

    running = asyncio.create_task(orchestrator.check_source("g"))
    await asyncio.sleep(0.01)
    await orchestrator.disable_source("g")

    GatedSource.gate.set()
    await running

    config = await config_store.get("g")
    assert not config.enabled
    assert config.status == SourceStatus.DISABLED


async def test_reconfigure_during_check_keeps_new_instance_status(orchestrator, config_store):
    GatedSource.gate = asyncio.Event()
    GatedSource.entered = []
    await orchestrator.create_source(fake_config("g", ITEMS[:1], type="gated", discover_error=True))

    running = asyncio.create_task(orchestrator.check_source("g"))
    await asyncio.sleep(0.01)
    await orchestrator.reconfigure_source("g", {"items": ITEMS[1:]})

    GatedSource.gate.set()
    result = await running

    assert not result.success
    assert (await config_store.get("g")).status == SourceStatus.ACTIVE
    assert orchestrator.get_source("g").settings == {"items": ITEMS[1:]}


async def test_reconfigure_waits_for_running_rescan(orchestrator, config_store):
    SeedGatedSource.gate = None
    SeedGatedSource.seeded = []
    await orchestrator.create_source(fake_config("r", ITEMS, type="seed_gated"))
    SeedGatedSource.gate = asyncio.Event()

    rescan = asyncio.create_task(orchestrator.rescan_source("r"))
    await asyncio.sleep(0.01)
    assert orchestrator.is_scanning("r")

    reconfigure = asyncio.create_task(orchestrator.reconfigure_source("r", {"items": ITEMS[1:]}))
    await asyncio.sleep(0.01)
    SeedGatedSource.gate.set()
    scanned, updated = await asyncio.gather(rescan, reconfigure)

    assert scanned.success
    assert updated.config == {"items": ITEMS[1:]}
    assert orchestrator.get_source("r").settings == {"items": ITEMS[1:]}
    assert SeedGatedSource.seeded == ["tool_v1.0.0.exe", "tool_v1.0.0.exe", "data_2024-03.zip"]
    assert not orchestrator.is_scanning("r")


# --------------------------------------------------------------------------- #
# Seeding
async def test_create_seeds_existing_files_in_place(orchestrator, catalog, watch_dir):
    await orchestrator.create_source(fs_config(watch_dir))

    records = await catalog.find_all(source_id="drop")
    assert len(records) == 3
    for record in records:
        assert record.file_path == record.origin
        assert "pre-existing" in record.tags
        assert record.checksum


async def test_seeding_skips_versions_already_cataloged(orchestrator, catalog, watch_dir):
    await catalog.create(CatalogRecord(
        id="old",
        source_id="drop",
        category="installers",
        title="tool_v1.0.0_setup.exe",
        version="1.0.0",
        file_name="tool_v1.0.0_setup.exe",
        file_path="/archive/tool_v1.0.0_setup.exe",
    ))

    await orchestrator.create_source(fs_config(watch_dir))

    assert len(await catalog.find_all(source_id="drop")) == 3  # old + two seeded


async def test_rescan_is_idempotent(orchestrator, catalog, watch_dir):
    await orchestrator.create_source(fs_config(watch_dir))

    result = await orchestrator.rescan_source("drop")

    assert result.discovered == 3 and result.new == 0
    assert len(await catalog.find_all(source_id="drop")) == 3


async def test_concurrent_rescans_fail_fast_without_duplicates(orchestrator, catalog, watch_dir):
    await orchestrator.create_source(fs_config(watch_dir))
    (watch_dir / "installers" / "tool_v2.0.0_setup.exe").write_bytes(b"installer-2")

    results = await asyncio.gather(
        orchestrator.rescan_source("drop"),
        orchestrator.rescan_source("drop"),
        return_exceptions=True,
    )

    assert sum(isinstance(r, LockContention) for r in results) == 1
    completed = next(r for r in results if not isinstance(r, BaseException))
    assert completed.fetched == 1
    assert len(await catalog.find_all(source_id="drop")) == 4
    assert not orchestrator.is_scanning("drop")


async def test_filesystem_check_copies_only_new_files(orchestrator, catalog, storage, watch_dir):
    await orchestrator.create_source(fs_config(watch_dir))
    assert (await orchestrator.check_source("drop")).new == 0

    (watch_dir / "installers" / "tool_v2.0.0_setup.exe").write_bytes(b"installer-2")
    result = await orchestrator.check_source("drop")

    assert (result.discovered, result.fetched) == (1, 1)
    copied = storage.root / "drop" / "installers" / "tool_v2.0.0_setup.exe"
    assert copied.read_bytes() == b"installer-2"
    assert len(await catalog.find_all(source_id="drop")) == 4
