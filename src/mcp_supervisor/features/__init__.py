"""
Fonctionnalités du superviseur MCP.
"""

from .mcp import Supervisor, ConfigurationStore, NativeBridgeRegistry
from .native import WebFetchNativeServer

__all__ = [
    "Supervisor",
    "ConfigurationStore",
    "NativeBridgeRegistry",
    "WebFetchNativeServer",
]
