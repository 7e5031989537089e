import pytest
from pydantic import ValidationError as PydanticValidationError

from fabtrack.config import AppConfig, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ("FABTRACK_CONFIG", "FABTRACK_DATABASE_PATH", "FABTRACK_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_defaults_without_config_file():
    config = load_config()
    assert config == AppConfig()
    assert config.database_path is None
    assert config.timezone == "UTC"
    assert config.log_level == "INFO"


def test_load_config_from_env_path(tmp_path, monkeypatch):
    path = tmp_path / "shop.yaml"
    path.write_text(
        "database_path: /var/lib/fabtrack/shop.sqlite3\n"
        "timezone: America/Chicago\n"
        "log_level: debug\n"
        "database_timeout: 2.5\n"
        "seed_demo_data: true\n"
    )
    monkeypatch.setenv("FABTRACK_CONFIG", str(path))

    config = load_config()

    assert config.database_path == "/var/lib/fabtrack/shop.sqlite3"
    assert config.timezone == "America/Chicago"
    assert config.log_level == "DEBUG"
    assert config.database_timeout == 2.5
    assert config.seed_demo_data is True


def test_default_file_in_working_directory(tmp_path):
    (tmp_path / "fabtrack.yaml").write_text("timezone: Europe/Berlin\n")
    assert load_config().timezone == "Europe/Berlin"


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(str(path)) == AppConfig()


def test_environment_overrides(tmp_path, monkeypatch):
    path = tmp_path / "shop.yaml"
    path.write_text("database_path: from-file.sqlite3\nlog_level: INFO\n")
    monkeypatch.setenv("FABTRACK_DATABASE_PATH", "from-env.sqlite3")
    monkeypatch.setenv("FABTRACK_LOG_LEVEL", "warning")

    config = load_config(str(path))

    assert config.database_path == "from-env.sqlite3"
    assert config.log_level == "WARNING"


@pytest.mark.parametrize(
    "values",
    [
        {"timezone": "Mars/Olympus_Mons"},
        {"log_level": "LOUD"},
        {"database_timeout": 0},
    ],
)
def test_invalid_values_are_rejected(values):
    with pytest.raises(PydanticValidationError):
        AppConfig(**values)


def test_invalid_log_level_from_env(monkeypatch):
    monkeypatch.setenv("FABTRACK_LOG_LEVEL", "chatty")
    with pytest.raises(PydanticValidationError):
        load_config()
