"""Tests for configuration loading."""

from dossierflow.config import load_config
from dossierflow.persistence import (
    InMemoryStepInstanceStore,
    SQLiteStepInstanceStore,
    get_repository,
    reset_repository,
)


def test_defaults_without_config_file():
    config = load_config()
    assert config.database_url is None
    assert config.log_level == "INFO"
    assert config.policy.override_roles == ["ADMIN"]
    assert config.policy.rejection_reason_min_length == 10


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
database_url: sqlite://dossiers.db
log_level: DEBUG
policy:
  override_roles: [ADMIN, CREATEUR]
  rejection_reason_min_length: 20
"""
    )
    monkeypatch.setenv("DOSSIERFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.database_url == "sqlite://dossiers.db"
    assert config.log_level == "DEBUG"
    assert config.policy.override_roles == ["ADMIN", "CREATEUR"]
    assert config.policy.rejection_reason_min_length == 20


def test_env_overrides_database_url_and_log_level(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite://from-file.db\n")
    monkeypatch.setenv("DOSSIERFLOW_CONFIG", str(config_path))
    monkeypatch.setenv("DATABASE_URL", "sqlite://from-env.db")
    monkeypatch.setenv("DOSSIERFLOW_LOG_LEVEL", "WARNING")

    config = load_config()
    assert config.database_url == "sqlite://from-env.db"
    assert config.log_level == "WARNING"


def test_get_repository_uses_config(tmp_path, monkeypatch):
    assert isinstance(get_repository(), InMemoryStepInstanceStore)

    reset_repository()
    monkeypatch.setenv("DOSSIERFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'flow.db'}")
    store = get_repository()
    assert isinstance(store, SQLiteStepInstanceStore)
    assert get_repository() is store
    store.close()
