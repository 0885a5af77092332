"""Tests for hierarchical config loading."""

import json

import pytest
from pydantic import ValidationError

from tmuxrelay.config.manager import ConfigManager
from tmuxrelay.config.models import RelayConfig
from tmuxrelay.core.paths import ENV_TMUXRELAY_DIR, reset_paths


@pytest.fixture
def home(tmp_path, monkeypatch):
    global_dir = tmp_path / "home" / ".tmuxrelay"
    monkeypatch.setenv(ENV_TMUXRELAY_DIR, str(global_dir))
    reset_paths()
    yield global_dir
    reset_paths()


@pytest.fixture
def project(tmp_path):
    project_dir = tmp_path / "project"
    project_dir.mkdir()
    return project_dir


def _write(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data) if not isinstance(data, str) else data)


class TestRelayConfig:
    def test_defaults(self):
        config = RelayConfig()
        assert config.poll_interval == 1.5
        assert config.idle_timeout == 5.0
        assert config.message_limit == 1950
        assert config.message_ceiling == 2000
        assert config.split_search_window == 300
        assert config.min_split_offset == 100
        assert config.allowed_users == []

    def test_limit_above_ceiling_rejected(self):
        with pytest.raises(ValidationError):
            RelayConfig(message_limit=2500)

    def test_non_positive_interval_rejected(self):
        with pytest.raises(ValidationError):
            RelayConfig(poll_interval=0)


class TestConfigManager:
    def test_defaults_without_files(self, home, project):
        config = ConfigManager(project).load_config()
        assert config == RelayConfig()

    def test_project_overrides_global(self, home, project):
        _write(home / "settings.json", {"poll_interval": 3.0, "session_prefix": "ai-"})
        _write(project / ".tmuxrelay" / "settings.json", {"poll_interval": 0.5})

        config = ConfigManager(project).load_config()

        assert config.poll_interval == 0.5
        assert config.session_prefix == "ai-"

    def test_invalid_json_ignored(self, home, project):
        _write(home / "settings.json", "{not json")
        assert ConfigManager(project).load_config() == RelayConfig()

    def test_invalid_values_fall_back_to_defaults(self, home, project):
        _write(home / "settings.json", {"idle_timeout": -1})
        assert ConfigManager(project).load_config().idle_timeout == 5.0

    def test_unknown_keys_ignored(self, home, project):
        _write(home / "settings.json", {"theme": "dark", "verbose": True})
        config = ConfigManager(project).load_config()
        assert config.verbose is True

    def test_get_config_caches(self, home, project):
        manager = ConfigManager(project)
        assert manager.get_config() is manager.get_config()

    def test_save_config_writes_user_fields(self, home, project):
        manager = ConfigManager(project)
        manager.save_config(RelayConfig(allowed_users=["u1"], poll_interval=2.0))

        saved = json.loads((project / ".tmuxrelay" / "settings.json").read_text())
        assert saved["allowed_users"] == ["u1"]
        assert saved["poll_interval"] == 2.0
        assert "message_ceiling" not in saved

        assert manager.load_config().allowed_users == ["u1"]

    def test_save_global_config(self, home, project):
        ConfigManager(project).save_config(RelayConfig(verbose=True), global_config=True)
        assert json.loads((home / "settings.json").read_text())["verbose"] is True

    def test_ensure_directories(self, home, project):
        ConfigManager(project).ensure_directories()
        assert (home / "logs").is_dir()
