"""Centralized path management for tmux-relay.

Single source of truth for the filesystem locations the relay reads and
writes. All paths should be accessed through this module rather than
hardcoded strings.

Example:
    from tmuxrelay.core.paths import get_paths

    paths = get_paths()
    settings_file = paths.global_settings
    logs_dir = paths.global_logs_dir
"""

from __future__ import annotations

import os
from functools import cached_property
from pathlib import Path
from typing import Optional

# ============================================================================
# Constants
# ============================================================================

APP_DIR_NAME = ".tmuxrelay"
LOGS_DIR_NAME = "logs"
SETTINGS_FILE_NAME = "settings.json"
DEBUG_LOG_SUFFIX = ".debug"

# Environment variable names for overrides
ENV_TMUXRELAY_DIR = "TMUXRELAY_DIR"
ENV_TMUXRELAY_LOG_DIR = "TMUXRELAY_LOG_DIR"


# ============================================================================
# Paths Class
# ============================================================================


class Paths:
    """Centralized path management.

    Provides access to all application paths with support for:
    - Global paths (~/.tmuxrelay/...)
    - Project paths (<working_dir>/.tmuxrelay/...)
    - Environment variable overrides

    Usage:
        paths = Paths()  # Uses Path.home() for global, Path.cwd() for project
        paths = Paths(working_dir=some_path)  # Specific project directory
    """

    def __init__(self, working_dir: Optional[Path] = None):
        """Initialize paths manager.

        Args:
            working_dir: Working directory for project-level paths.
                        Defaults to current working directory.
        """
        self._working_dir = working_dir or Path.cwd()

    @property
    def working_dir(self) -> Path:
        """Get the working directory."""
        return self._working_dir

    # ========================================================================
    # Global Paths (User-level, in ~/.tmuxrelay/)
    # ========================================================================

    @cached_property
    def global_dir(self) -> Path:
        """Get the global tmuxrelay directory.

        Can be overridden with TMUXRELAY_DIR environment variable.
        Default: ~/.tmuxrelay/
        """
        env_override = os.environ.get(ENV_TMUXRELAY_DIR)
        if env_override:
            return Path(env_override)
        return Path.home() / APP_DIR_NAME

    @cached_property
    def global_settings(self) -> Path:
        """Get global settings file path.

        Default: ~/.tmuxrelay/settings.json
        """
        return self.global_dir / SETTINGS_FILE_NAME

    @cached_property
    def global_logs_dir(self) -> Path:
        """Get global logs directory.

        Can be overridden with TMUXRELAY_LOG_DIR environment variable.
        Default: ~/.tmuxrelay/logs/
        """
        env_override = os.environ.get(ENV_TMUXRELAY_LOG_DIR)
        if env_override:
            return Path(env_override)
        return self.global_dir / LOGS_DIR_NAME

    # ========================================================================
    # Project Paths (Project-level, in <working_dir>/.tmuxrelay/)
    # ========================================================================

    @cached_property
    def project_dir(self) -> Path:
        """Get project-level tmuxrelay directory.

        Default: <working_dir>/.tmuxrelay/
        """
        return self._working_dir / APP_DIR_NAME

    @cached_property
    def project_settings(self) -> Path:
        """Get project settings file path.

        Default: <working_dir>/.tmuxrelay/settings.json
        """
        return self.project_dir / SETTINGS_FILE_NAME

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def ensure_global_dirs(self) -> None:
        """Create the global app and log directories."""
        self.global_dir.mkdir(parents=True, exist_ok=True)
        self.global_logs_dir.mkdir(parents=True, exist_ok=True)

    def debug_log_file(self, conversation_id: str) -> Path:
        """Get path to a conversation's JSONL debug log.

        Args:
            conversation_id: Conversation identifier

        Returns:
            Path like ``~/.tmuxrelay/logs/<conversation_id>.debug``
        """
        return self.global_logs_dir / f"{conversation_id}{DEBUG_LOG_SUFFIX}"


# ============================================================================
# Singleton Access
# ============================================================================

_paths: Optional[Paths] = None


def get_paths(working_dir: Optional[Path] = None) -> Paths:
    """Get the global Paths instance.

    Creates a singleton instance on first call. If working_dir is provided,
    creates a new instance with that working directory.

    Args:
        working_dir: Optional working directory. If provided, creates a new
                    Paths instance with this directory (not cached as singleton).

    Returns:
        Paths instance
    """
    global _paths

    if working_dir is not None:
        return Paths(working_dir)

    if _paths is None:
        _paths = Paths()

    return _paths


def set_paths(paths: Optional[Paths]) -> None:
    """Set the global Paths instance.

    Useful for testing or when needing to reset the singleton.

    Args:
        paths: Paths instance to set as global, or None to reset
    """
    global _paths
    _paths = paths


def reset_paths() -> None:
    """Reset the global Paths instance.

    Forces recreation on next get_paths() call.
    """
    global _paths
    _paths = None
