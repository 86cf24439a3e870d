"""
Main entry point for the artifact synchronizer service with scheduling support.
"""

import asyncio
import logging
import logging.handlers
import os
import signal
import sys
from pathlib import Path
from typing import Dict, Tuple

# Add project root to PYTHONPATH so imports work when running this script directly
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from core.activity import ActivityLog
from core.config import Settings, load_settings
from core.errors import ConfigurationError, SourceError
from core.infra.catalog import SqliteCatalog, SqliteConfigStore
from core.infra.db import Database
from core.infra.scheduler import Scheduler
from core.infra.storage import FileStorage
from core.orchestrator import SourceOrchestrator
from core.source_loader import list_available, refresh_registry

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
RELOAD_JOB_ID = "reload"


def setup_logging(settings: Settings, service_name: str = "artifact-sync") -> None:
    """Console logging plus a rotating per-service file when LOG_DIR is set."""
    handlers = [logging.StreamHandler()]
    if settings.log_dir:
        log_dir = Path(settings.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_dir / f"{service_name}.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
        ))

    logging.basicConfig(
        level=settings.effective_log_level,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


async def create_runtime(settings: Settings) -> Tuple[Database, SqliteCatalog, SourceOrchestrator]:
    """Open the database and wire catalog, config store and orchestrator."""
    logger = logging.getLogger(__name__)

    refresh_registry()
    available = list_available()
    logger.info(f"Discovered {len(available)} source types:")
    for name, cls in available.items():
        logger.info(f"  - {name}: {cls.__name__}")

    db = Database(settings.database_path)
    await db.connect()

    catalog = SqliteCatalog(db)
    config_store = SqliteConfigStore(db)
    storage = FileStorage(settings.download_path)
    storage.ensure_root()

    orchestrator = SourceOrchestrator(
        catalog, config_store, ActivityLog(), storage, source_types=available
    )
    return db, catalog, orchestrator


async def bootstrap_sources(settings: Settings, orchestrator: SourceOrchestrator) -> None:
    """Create the sources listed in settings.yaml that are not yet persisted."""
    logger = logging.getLogger(__name__)
    for config in settings.sources:
        if await orchestrator.config_store.exists(config.id):
            continue
        try:
            await orchestrator.create_source(config)
            logger.info(f"Bootstrapped source {config.id} from settings")
        except SourceError as e:
            logger.error(f"Cannot bootstrap source {config.id}: {e}")


def check_intervals(settings: Settings, orchestrator: SourceOrchestrator) -> Dict[str, int]:
    intervals = {}
    for source in orchestrator.list_sources():
        minutes = source.settings.get("check_interval", settings.default_check_interval)
        try:
            intervals[source.id] = int(minutes)
        except (TypeError, ValueError):
            logging.getLogger(__name__).warning(
                f"[{source.id}] invalid check_interval {minutes!r}, using default"
            )
            intervals[source.id] = settings.default_check_interval
    return intervals


async def main():
    """Main entry point: run the orchestrator under the scheduler until signalled."""
    try:
        settings = load_settings()
    except ConfigurationError as e:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logging.getLogger(__name__).error(str(e))
        sys.exit(1)

    setup_logging(settings)
    logger = logging.getLogger(__name__)
    logger.info("Starting artifact synchronizer...")

    db, _, orchestrator = await create_runtime(settings)
    scheduler = Scheduler(timezone=settings.timezone)

    async def scheduled_check(source_id: str) -> None:
        try:
            await orchestrator.check_source(source_id)
        except SourceError as e:
            logger.warning(f"Scheduled check of {source_id} not run: {e}")

    async def scheduled_check_all() -> None:
        await orchestrator.check_all()

    async def refresh_jobs() -> None:
        await orchestrator.reload()
        scheduler.sync_sources(check_intervals(settings, orchestrator), scheduled_check)

    # Setup graceful shutdown
    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        asyncio.get_running_loop().add_signal_handler(sig, signal_handler)

    try:
        await bootstrap_sources(settings, orchestrator)
        await orchestrator.start()

        scheduler.sync_sources(check_intervals(settings, orchestrator), scheduled_check)
        scheduler.schedule_check_all(settings.check_all_cron, scheduled_check_all)
        scheduler.add_interval_job(refresh_jobs, 1, RELOAD_JOB_ID, name="reload sources")
        await scheduler.start()

        for job_id, job in scheduler.list_jobs().items():
            logger.info(f"  - {job_id}: {job['trigger']}")

        # Kick off one check of every source immediately on startup
        startup_task = asyncio.create_task(orchestrator.check_all())

        await stop_event.wait()

    except Exception as e:
        logger.error(f"Error in main loop: {e}")
    finally:
        logger.info("Shutting down...")

        if 'startup_task' in locals() and not startup_task.done():
            startup_task.cancel()
            try:
                await startup_task
            except asyncio.CancelledError:
                pass

        await scheduler.stop()
        await orchestrator.stop()
        await db.close()

        logger.info("Shutdown complete")


def run():
    """Entry point that can be called from other scripts."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
