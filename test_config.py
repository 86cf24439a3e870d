import pytest

from core.config import ENV_OVERRIDES, PORTAL_ENV_DEFAULTS, load_settings
from core.errors import ConfigurationError

SETTINGS = """
database_path: /var/lib/sync/artifacts.db
check_all_cron: "0 6 * * *"
sources:
  - id: drop
    name: Drop folder
    type: filesystem
    enabled: true
    config:
      watch_path: /mnt/drop
  - id: portal
    name: Vendor portal
    type: web_portal
    config:
      auth_url: https://portal.example.com/auth/login
      password: from-file
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in [*ENV_OVERRIDES, *PORTAL_ENV_DEFAULTS, "DEBUG", "SETTINGS_FILE"]:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def settings_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(SETTINGS)
    return path


def load(path, tmp_path):
    return load_settings(str(path), env_file=str(tmp_path / "missing.env"))


def test_defaults_without_file(tmp_path):
    settings = load(tmp_path / "nope.yaml", tmp_path)

    assert settings.database_path == "data/artifacts.db"
    assert settings.check_all_cron is None
    assert settings.sources == []
    assert settings.effective_log_level == "INFO"


def test_loads_sources_from_yaml(settings_file, tmp_path):
    settings = load(settings_file, tmp_path)

    assert settings.database_path == "/var/lib/sync/artifacts.db"
    assert settings.check_all_cron == "0 6 * * *"
    assert [s.id for s in settings.sources] == ["drop", "portal"]
    assert settings.sources[0].enabled
    assert not settings.sources[1].enabled


def test_environment_overrides_file(settings_file, tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_PATH", "/tmp/other.db")
    monkeypatch.setenv("DEBUG", "true")

    settings = load(settings_file, tmp_path)

    assert settings.database_path == "/tmp/other.db"
    assert settings.effective_log_level == "DEBUG"


def test_portal_credentials_fill_only_empty_fields(settings_file, tmp_path, monkeypatch):
    monkeypatch.setenv("PORTAL_USERNAME", "workshop")
    monkeypatch.setenv("PORTAL_PASSWORD", "from-env")

    portal = load(settings_file, tmp_path).sources[1]

    assert portal.config["username"] == "workshop"
    assert portal.config["password"] == "from-file"


def test_invalid_cron_is_rejected(settings_file, tmp_path, monkeypatch):
    monkeypatch.setenv("CHECK_ALL_CRON", "every morning")

    with pytest.raises(ConfigurationError):
        load(settings_file, tmp_path)


def test_unparseable_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("sources: [unclosed")

    with pytest.raises(ConfigurationError):
        load(path, tmp_path)
