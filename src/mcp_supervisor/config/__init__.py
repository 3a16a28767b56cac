"""
Configuration du superviseur MCP.
"""

from .loader import load_config, reload_config, get_config, get_supervisor_settings
from .settings import SupervisorSettings, default_config_path

__all__ = [
    "load_config",
    "reload_config",
    "get_config",
    "get_supervisor_settings",
    "SupervisorSettings",
    "default_config_path",
]
