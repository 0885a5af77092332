"""Configuration management with hierarchical loading."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from tmuxrelay.config.models import USER_FIELDS, RelayConfig
from tmuxrelay.core.paths import get_paths

logger = logging.getLogger(__name__)


class ConfigManager:
    """Manages hierarchical configuration loading and merging."""

    def __init__(self, working_dir: Path | None = None):
        """Initialize config manager.

        Args:
            working_dir: Current working directory (defaults to cwd)
        """
        self.working_dir = working_dir or Path.cwd()
        self._config: RelayConfig | None = None

    def load_config(self) -> RelayConfig:
        """Load and merge configuration from multiple sources.

        Priority (highest to lowest):
        1. Local project config (.tmuxrelay/settings.json)
        2. Global user config (~/.tmuxrelay/settings.json)
        3. Default values
        """
        config_data: dict = {}
        paths = get_paths(self.working_dir)

        for source in (paths.global_settings, paths.project_settings):
            config_data.update(self._read_settings(source))

        unknown = set(config_data) - set(RelayConfig.model_fields)
        if unknown:
            logger.warning(f"Ignoring unknown settings: {', '.join(sorted(unknown))}")

        try:
            self._config = RelayConfig(**config_data)
        except ValidationError as e:
            logger.warning(f"Invalid settings, falling back to defaults: {e}")
            self._config = RelayConfig()

        return self._config

    def get_config(self) -> RelayConfig:
        """Get current config, loading if necessary."""
        if self._config is None:
            return self.load_config()
        return self._config

    def save_config(self, config: RelayConfig, global_config: bool = False) -> None:
        """Save configuration to file.

        Args:
            config: Configuration to save
            global_config: If True, save to global config; otherwise save to local project
        """
        paths = get_paths(self.working_dir)
        config_path = paths.global_settings if global_config else paths.project_settings
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {k: v for k, v in config.model_dump().items() if k in USER_FIELDS}
        with open(config_path, "w") as f:
            json.dump(data, f, indent=2)

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        get_paths(self.working_dir).ensure_global_dirs()

    @staticmethod
    def _read_settings(path: Path) -> dict:
        if not path.exists():
            return {}
        try:
            with open(path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load settings from {path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Settings file {path} is not a JSON object")
            return {}
        return data
