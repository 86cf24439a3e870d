"""
Source loader for automatic discovery and registration of source types.
"""

import importlib
import inspect
import logging
import pathlib
import pkgutil
from typing import Dict, Type

from .errors import ConfigurationError
from .infra.storage import sanitize_file_name
from .interfaces import Source
from .models import SourceConfig

logger = logging.getLogger(__name__)

# Source packages live next to core/
SOURCES_PACKAGE = "sources"
SOURCES_DIR = pathlib.Path(__file__).parent.parent / SOURCES_PACKAGE

# Global registry of discovered source classes, keyed by type tag
_REGISTRY: Dict[str, Type[Source]] = {}


def register(cls: Type[Source]) -> Type[Source]:
    """Register a source class under its ``source_type`` tag."""
    if not cls.source_type:
        raise ValueError(f"{cls.__name__} has no source_type")
    existing = _REGISTRY.get(cls.source_type)
    if existing is not None and existing is not cls:
        logger.warning(
            f"Source type '{cls.source_type}' re-registered: {existing.__name__} -> {cls.__name__}"
        )
    _REGISTRY[cls.source_type] = cls
    return cls


def refresh_registry() -> None:
    """Import every package under sources/ and register its Source subclasses."""
    _REGISTRY.clear()

    if not SOURCES_DIR.exists():
        logger.warning(f"Sources directory does not exist: {SOURCES_DIR}")
        return

    module_count = 0
    for info in pkgutil.iter_modules([str(SOURCES_DIR)]):
        if info.name.startswith("_"):
            continue
        full_name = f"{SOURCES_PACKAGE}.{info.name}"
        try:
            mod = importlib.import_module(full_name)
        except Exception as e:
            logger.error(f"Failed to load source package {full_name}: {e}")
            continue
        module_count += 1

        for _, obj in inspect.getmembers(mod, inspect.isclass):
            if issubclass(obj, Source) and obj is not Source and obj.source_type:
                register(obj)
                logger.debug(f"Registered source type: {obj.source_type} -> {obj.__name__}")

    logger.info(f"Source discovery complete: {module_count} packages, {len(_REGISTRY)} types")


def list_available() -> Dict[str, Type[Source]]:
    """Get a copy of all registered source classes."""
    if not _REGISTRY:
        refresh_registry()
    return _REGISTRY.copy()


def validate_config(config: SourceConfig, source_types: Dict[str, Type[Source]]) -> Type[Source]:
    """Check the type tag and required fields before any instance is built."""
    if not config.id or not config.id.strip():
        raise ConfigurationError("Source id must not be empty")
    # the id names the source's storage directory
    if sanitize_file_name(config.id) != config.id or config.id in (".", ".."):
        raise ConfigurationError(
            f"Source id '{config.id}' may only contain letters, digits, '.', '-' and '_'",
            source_id=config.id,
        )

    cls = source_types.get(config.type)
    if cls is None:
        raise ConfigurationError(
            f"Unknown source type '{config.type}'. Available: {sorted(source_types)}",
            source_id=config.id,
        )

    missing = [
        field for field in cls.required_fields
        if config.config.get(field) in (None, "", [], {})
    ]
    if missing:
        raise ConfigurationError(
            f"Source {config.id} ({config.type}) is missing required fields: {', '.join(missing)}",
            source_id=config.id,
        )
    return cls
