"""
Service settings: ``settings.yaml`` with environment overrides from ``.env``.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from croniter import croniter
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .errors import ConfigurationError
from .models import SourceConfig

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = "settings.yaml"

# environment variable -> settings key
ENV_OVERRIDES = {
    "DATABASE_PATH": "database_path",
    "DOWNLOAD_PATH": "download_path",
    "SCHEDULER_TIMEZONE": "timezone",
    "CHECK_ALL_CRON": "check_all_cron",
    "LOG_LEVEL": "log_level",
    "LOG_DIR": "log_dir",
}

# environment variable -> web-portal config key, applied where the source leaves it empty
PORTAL_ENV_DEFAULTS = {
    "PORTAL_USERNAME": "username",
    "PORTAL_PASSWORD": "password",
    "HEADLESS": "headless",
}


class Settings(BaseModel):
    database_path: str = "data/artifacts.db"
    download_path: str = "downloads"
    timezone: str = "UTC"
    check_all_cron: Optional[str] = None
    default_check_interval: int = 30  # minutes
    log_level: str = "INFO"
    log_dir: Optional[str] = None
    debug: bool = False
    sources: List[SourceConfig] = Field(default_factory=list)

    @field_validator("check_all_cron")
    @classmethod
    def _valid_cron(cls, value: Optional[str]) -> Optional[str]:
        if value and not croniter.is_valid(value):
            raise ValueError(f"Invalid cron expression: {value}")
        return value or None

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.debug else self.log_level.upper()


def _apply_portal_env(source: Dict[str, Any]) -> Dict[str, Any]:
    if source.get("type") != "web_portal":
        return source
    config = dict(source.get("config") or {})
    for env_key, field in PORTAL_ENV_DEFAULTS.items():
        value = os.getenv(env_key)
        if value is not None and config.get(field) in (None, ""):
            config[field] = value
    return {**source, "config": config}


def load_settings(path: Optional[str] = None, env_file: Optional[str] = None) -> Settings:
    """Load settings from YAML, then let the environment override single keys.

    Raises:
        ConfigurationError: If the file cannot be parsed or a value is invalid
    """
    load_dotenv(env_file)
    path = path or os.getenv("SETTINGS_FILE", DEFAULT_SETTINGS_FILE)

    raw: Dict[str, Any] = {}
    settings_path = Path(path)
    if settings_path.exists():
        try:
            with settings_path.open() as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse {settings_path}: {e}") from e
        logger.debug(f"Loaded settings from {settings_path}")
    else:
        logger.info(f"Settings file {settings_path} not found, using defaults")

    for env_key, field in ENV_OVERRIDES.items():
        value = os.getenv(env_key)
        if value:
            raw[field] = value
    if os.getenv("DEBUG"):
        raw["debug"] = os.getenv("DEBUG", "").lower() in ("1", "true", "yes")

    raw["sources"] = [_apply_portal_env(s) for s in raw.get("sources") or []]

    try:
        return Settings(**raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e
