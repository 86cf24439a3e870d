"""
Orchestrator for source lifecycles and the discover -> dedup -> fetch -> catalog pipeline.
"""

import asyncio
import logging
import traceback
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Type
from urllib.parse import unquote, urlsplit

from . import source_loader
from .errors import ConfigurationError, SourceNotFound
from .infra.storage import FileStorage, remove_quietly
from .interfaces import ActivitySink, Catalog, ConfigStore, Source
from .locks import ExclusionRegistry, KeyedLock
from .models import (
    ArtifactCandidate,
    CatalogRecord,
    CheckResult,
    SourceConfig,
    SourceStatus,
)

logger = logging.getLogger(__name__)

PRE_EXISTING_TAG = "pre-existing"


def _file_name_from_locator(locator: str) -> Optional[str]:
    """Last segment of a URL path or filesystem path."""
    parts = urlsplit(locator)
    path = unquote(parts.path) if parts.scheme in ("http", "https") else locator
    name = path.replace("\\", "/").rstrip("/").split("/")[-1]
    return name or None


def _tags_for(candidate: ArtifactCandidate) -> List[str]:
    tags: List[str] = []
    application = candidate.metadata.get("application")
    if application:
        tags.append(application)
    tags.append(candidate.category)
    if candidate.has_known_version:
        tags.append(f"v{candidate.version}")
    return tags


class SourceOrchestrator:
    """Owns every active source instance and the locks around them."""

    def __init__(
        self,
        catalog: Catalog,
        config_store: ConfigStore,
        activity: ActivitySink,
        storage: FileStorage,
        source_types: Optional[Dict[str, Type[Source]]] = None,
    ):
        self.catalog = catalog
        self.config_store = config_store
        self.activity = activity
        self.storage = storage
        self._source_types = source_types

        self._sources: Dict[str, Source] = {}
        self._update_locks = KeyedLock("update")
        self._scan_locks = KeyedLock("scan")
        self._exclusions = ExclusionRegistry()
        self._running = False

    @property
    def source_types(self) -> Dict[str, Type[Source]]:
        if self._source_types is None:
            self._source_types = source_loader.list_available()
        return self._source_types

    # ------------------------------------------------------------------ #
    # Lifecycle
    async def start(self) -> None:
        """Instantiate and initialize every enabled source."""
        if self._running:
            return
        self._running = True

        configs = await self.config_store.find_all()
        for config in configs:
            if not config.enabled or config.id in self._sources:
                continue
            try:
                await self._activate(config, seed=False)
            except Exception:
                logger.debug(traceback.format_exc())

        logger.info(f"Orchestrator started with {len(self._sources)} active sources")
        self.activity.log_system(f"{len(self._sources)} sources started", "success")

    async def reload(self) -> None:
        """Bring the active instances in line with the persisted enabled flags."""
        configs = {config.id: config for config in await self.config_store.find_all()}

        for source_id in list(self._sources):
            config = configs.get(source_id)
            if config is None or not config.enabled:
                logger.info(f"Source {source_id} no longer enabled, releasing")
                await self._deactivate(source_id)

        for config in configs.values():
            if config.enabled and config.id not in self._sources:
                logger.info(f"Source {config.id} was enabled, activating")
                try:
                    await self._activate(config, seed=True)
                except Exception:
                    logger.debug(traceback.format_exc())

    async def stop(self) -> None:
        """Release every instance."""
        for source_id in list(self._sources):
            await self._deactivate(source_id)
        self._running = False
        logger.info("Orchestrator stopped")

    async def create_source(self, config: SourceConfig) -> SourceConfig:
        source_loader.validate_config(config, self.source_types)
        if await self.config_store.exists(config.id):
            raise ConfigurationError(f"Source {config.id} already exists", source_id=config.id)

        status = SourceStatus.ACTIVE if config.enabled else SourceStatus.DISABLED
        created = await self.config_store.create(config.model_copy(update={"status": status}))
        logger.info(f"Created source {created.id} ({created.type})")
        self.activity.log_system(f"Source {created.name} created", "success")

        if created.enabled:
            await self._activate(created, seed=True)
        return await self.config_store.get(created.id) or created

    async def enable_source(self, source_id: str) -> None:
        config = await self._require_config(source_id)
        await self.config_store.update(source_id, enabled=True)
        config.enabled = True

        if source_id not in self._sources:
            await self._activate(config, seed=True)
        logger.info(f"Enabled source {source_id}")

    async def disable_source(self, source_id: str) -> None:
        await self._require_config(source_id)
        await self.config_store.update(source_id, enabled=False)
        await self.config_store.update_status(source_id, SourceStatus.DISABLED)
        await self._deactivate(source_id)
        logger.info(f"Disabled source {source_id}")

    async def reconfigure_source(self, source_id: str, new_config: Dict[str, Any]) -> SourceConfig:
        """Replace the config map of a source and rebuild its instance.

        Concurrent reconfigurations of the same source queue and apply in order.
        """
        current = await self._require_config(source_id)
        source_loader.validate_config(
            current.model_copy(update={"config": new_config}), self.source_types
        )

        async def apply() -> SourceConfig:
            updated = await self.config_store.update(source_id, config=new_config)
            await self._deactivate(source_id)
            if updated.enabled:
                await self._activate(updated, seed=True)
            logger.info(f"Reconfigured source {source_id}")
            return await self.config_store.get(source_id) or updated

        return await self._update_locks.with_lock(source_id, apply)

    async def rescan_source(self, source_id: str) -> CheckResult:
        """Seed the catalog from the source's existing artifacts.

        Raises LockContention when a rescan of the same source is running.
        """
        source = self._require_source(source_id)
        return await self._scan_locks.try_lock(source_id, lambda: self._seed(source))

    # ------------------------------------------------------------------ #
    # Check pipeline
    async def check_source(self, source_id: str) -> CheckResult:
        source = self._sources.get(source_id)
        if source is None:
            config = await self.config_store.get(source_id)
            if config is None:
                raise SourceNotFound(f"Source {source_id} not found", source_id=source_id)
            if not config.enabled:
                logger.info(f"[{source_id}] disabled, check skipped")
                return CheckResult(source_id=source_id, skipped=True, finished_at=datetime.utcnow())
            raise SourceNotFound(f"Source {source_id} is not active", source_id=source_id)

        if not source.enabled:
            return CheckResult(source_id=source_id, skipped=True, finished_at=datetime.utcnow())

        if source.exclusive:
            async with self._exclusions.hold(source.source_type, source_id):
                return await self._run_check(source)
        return await self._run_check(source)

    async def check_all(self) -> List[CheckResult]:
        """Check every enabled source concurrently; one failure never affects the others."""
        source_ids = [sid for sid, source in self._sources.items() if source.enabled]
        if not source_ids:
            logger.info("No enabled sources to check")
            return []

        logger.info(f"Checking {len(source_ids)} sources")
        outcomes = await asyncio.gather(
            *(self.check_source(sid) for sid in source_ids),
            return_exceptions=True,
        )

        results: List[CheckResult] = []
        for source_id, outcome in zip(source_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Check of {source_id} failed: {outcome}")
                results.append(CheckResult(
                    source_id=source_id,
                    success=False,
                    error=str(outcome),
                    finished_at=datetime.utcnow(),
                ))
            else:
                results.append(outcome)

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Check all finished: {succeeded}/{len(results)} succeeded")
        return results

    async def _run_check(self, source: Source) -> CheckResult:
        result = CheckResult(source_id=source.id)
        await self._set_status(source, SourceStatus.CHECKING)

        try:
            candidates = await source.discover()
            result.discovered = len(candidates)

            for candidate in candidates:
                try:
                    if not await self._is_new(source.id, candidate):
                        continue
                    result.new += 1
                    if await self._process(source, candidate):
                        result.fetched += 1
                    else:
                        result.failed += 1
                except Exception as e:
                    logger.error(f"[{source.id}] Error processing {candidate.title}: {e}")
                    logger.debug(traceback.format_exc())
                    result.failed += 1

            await self._finish_status(source, SourceStatus.ACTIVE, last_check=datetime.utcnow())
            logger.info(
                f"[{source.id}] {result.fetched} successful, {result.failed} failed downloads"
            )
            self.activity.log_check(
                source.id, source.name, "success",
                discovered=result.discovered, fetched=result.fetched, failed=result.failed,
            )
        except Exception as e:
            logger.error(f"[{source.id}] Check failed: {e}")
            logger.debug(traceback.format_exc())
            result.success = False
            result.error = str(e)
            await self._finish_status(source, SourceStatus.ERROR)
            self.activity.log_check(source.id, source.name, "error", error=str(e))

        result.finished_at = datetime.utcnow()
        return result

    async def _is_new(self, source_id: str, candidate: ArtifactCandidate) -> bool:
        if not candidate.has_known_version:
            return True
        existing = await self.catalog.find_all(source_id=source_id, category=candidate.category)
        return all(record.version != candidate.version for record in existing)

    async def _process(self, source: Source, candidate: ArtifactCandidate) -> bool:
        directory = self.storage.ensure_source_directory(
            source.id, candidate.category, root=source.storage_root
        )
        original = (
            source.file_name_for(candidate)
            or _file_name_from_locator(candidate.locator)
            or f"{candidate.category}_{candidate.version}"
        )
        file_name = FileStorage.unique_file_name(original, directory)
        target = directory / file_name

        try:
            fetched = await source.fetch(candidate, target)
            if not fetched:
                remove_quietly(target)
                self.activity.log_fetch(source.id, candidate.title, "error")
                return False

            stats = await self.catalog.compute_file_stats(target)
            record = await self.catalog.create(CatalogRecord(
                id=str(uuid.uuid4()),
                source_id=source.id,
                category=candidate.category,
                title=candidate.title,
                description=candidate.display_name,
                version=candidate.version,
                file_name=file_name,
                file_path=str(target),
                file_size=stats.size or 0,
                origin=candidate.locator,
                checksum=stats.checksum,
                tags=_tags_for(candidate),
                metadata=candidate.metadata,
            ))
        except Exception as e:
            logger.error(f"[{source.id}] Fetch of {candidate.title} failed: {e}")
            remove_quietly(target)
            self.activity.log_fetch(source.id, candidate.title, "error")
            return False

        self.activity.log_fetch(source.id, candidate.title, "success", record_id=record.id)
        return True

    # ------------------------------------------------------------------ #
    # Seeding
    async def _seed(self, source: Source) -> CheckResult:
        result = CheckResult(source_id=source.id)
        existing = await source.enumerate_existing()
        result.discovered = len(existing)

        for candidate in existing:
            try:
                if not await self._should_seed(source.id, candidate):
                    continue
                result.new += 1
                if await self._register_in_place(source.id, candidate):
                    result.fetched += 1
                else:
                    result.failed += 1
            except Exception as e:
                logger.error(f"[{source.id}] Could not register {candidate.locator}: {e}")
                result.failed += 1

        result.finished_at = datetime.utcnow()
        if result.fetched:
            logger.info(f"[{source.id}] Registered {result.fetched} existing files")
            self.activity.log_system(
                f"{result.fetched} existing files registered for {source.name}", "success"
            )
        return result

    async def _should_seed(self, source_id: str, candidate: ArtifactCandidate) -> bool:
        if await self.catalog.find_by_origin(source_id, candidate.locator):
            return False
        return await self._is_new(source_id, candidate)

    async def _register_in_place(self, source_id: str, candidate: ArtifactCandidate) -> bool:
        path = Path(candidate.locator)
        stats = await self.catalog.compute_file_stats(path)
        if not stats.exists:
            logger.warning(f"[{source_id}] Existing file vanished: {path}")
            return False

        tags = [PRE_EXISTING_TAG, *_tags_for(candidate)]
        await self.catalog.create(CatalogRecord(
            id=str(uuid.uuid4()),
            source_id=source_id,
            category=candidate.category,
            title=candidate.title,
            description=candidate.display_name,
            version=candidate.version,
            file_name=path.name,
            file_path=str(path),
            file_size=stats.size or 0,
            discovered_at=stats.modified_at or datetime.utcnow(),
            origin=candidate.locator,
            checksum=stats.checksum,
            tags=tags,
            metadata=candidate.metadata,
        ))
        return True

    # ------------------------------------------------------------------ #
    # Instances
    async def _activate(self, config: SourceConfig, seed: bool) -> Source:
        cls = source_loader.validate_config(config, self.source_types)
        source = cls(config)

        try:
            await source.initialize()
        except Exception as e:
            logger.error(f"Failed to initialize source {config.id}: {e}")
            await self._set_status(source, SourceStatus.ERROR)
            await source.release()
            raise

        self._sources[config.id] = source
        await self._set_status(source, SourceStatus.ACTIVE)
        if seed:
            # queues behind a rescan of the previous instance; seeding is idempotent
            await self._scan_locks.with_lock(config.id, lambda: self._seed_if_current(source))
        return source

    async def _seed_if_current(self, source: Source) -> CheckResult:
        if not self._is_current(source):
            return CheckResult(source_id=source.id, skipped=True, finished_at=datetime.utcnow())
        return await self._seed(source)

    def _is_current(self, source: Source) -> bool:
        return self._sources.get(source.id) is source

    async def _deactivate(self, source_id: str) -> None:
        source = self._sources.pop(source_id, None)
        if source is None:
            return
        try:
            await source.release()
        except Exception as e:
            logger.error(f"Failed to release source {source_id}: {e}")

    async def _set_status(
        self,
        source: Source,
        status: SourceStatus,
        last_check: Optional[datetime] = None,
    ) -> None:
        await self.config_store.update_status(source.id, status, last_check)
        source.config.status = status
        if last_check:
            source.config.last_check = last_check

    async def _finish_status(
        self,
        source: Source,
        status: SourceStatus,
        last_check: Optional[datetime] = None,
    ) -> None:
        """Write the outcome of a cycle unless the instance was released meanwhile."""
        if not self._is_current(source):
            logger.info(f"[{source.id}] released during check, status left unchanged")
            return
        await self._set_status(source, status, last_check)

    async def _require_config(self, source_id: str) -> SourceConfig:
        config = await self.config_store.get(source_id)
        if config is None:
            raise SourceNotFound(f"Source {source_id} not found", source_id=source_id)
        return config

    def _require_source(self, source_id: str) -> Source:
        source = self._sources.get(source_id)
        if source is None:
            raise SourceNotFound(f"Source {source_id} is not active", source_id=source_id)
        return source

    # ------------------------------------------------------------------ #
    # Introspection
    def get_source(self, source_id: str) -> Optional[Source]:
        return self._sources.get(source_id)

    def list_sources(self) -> List[Source]:
        return list(self._sources.values())

    def is_scanning(self, source_id: str) -> bool:
        return self._scan_locks.is_held(source_id)

    def is_updating(self, source_id: str) -> bool:
        return self._update_locks.is_held(source_id)
