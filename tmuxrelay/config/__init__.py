"""Configuration package for tmux-relay."""

from .manager import ConfigManager
from .models import RelayConfig

__all__ = [
    "ConfigManager",
    "RelayConfig",
]
