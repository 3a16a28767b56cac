"""
Dataclasses pour la configuration.
"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict

from ..core.constants import (
    ACTIVITY_WINDOW_S,
    CLIENT_NAME,
    CLIENT_VERSION,
    CONFIG_FILE_NAME,
    DEFAULT_REQUEST_TIMEOUT_S,
    DEFAULT_STREAM_LIMIT_BYTES,
    INITIALIZE_TIMEOUT_S,
    KEEPALIVE_INTERVAL_S,
    KEEPALIVE_MAX_FAILURES,
    KEEPALIVE_TIMEOUT_S,
    MAX_STREAM_LIMIT_BYTES,
    MCP_PROTOCOL_VERSION,
    MIN_STREAM_LIMIT_BYTES,
    REFRESH_IDLE_THRESHOLD_S,
    RESTART_DELAY_S,
    STOP_GRACE_S,
    TOOL_CALL_TIMEOUT_S,
)


def default_config_path() -> str:
    """Chemin par défaut du fichier mcp-config.json (répertoire utilisateur)."""
    return os.path.join(os.path.expanduser("~"), ".mcp-supervisor", CONFIG_FILE_NAME)


def _positive_float(value: Any, default: float) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return float(value)
    return default


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return default


def _clamp_stream_limit(value: Any) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        return DEFAULT_STREAM_LIMIT_BYTES
    return max(MIN_STREAM_LIMIT_BYTES, min(value, MAX_STREAM_LIMIT_BYTES))


@dataclass
class SupervisorSettings:
    """Réglages du superviseur (table `[supervisor]` de config.toml)."""
    config_path: str = field(default_factory=default_config_path)
    verbose: bool = False
    keepalive_enabled: bool = True
    keepalive_interval_s: float = KEEPALIVE_INTERVAL_S
    keepalive_timeout_s: float = KEEPALIVE_TIMEOUT_S
    keepalive_max_failures: int = KEEPALIVE_MAX_FAILURES
    refresh_idle_threshold_s: float = REFRESH_IDLE_THRESHOLD_S
    activity_window_s: float = ACTIVITY_WINDOW_S
    restart_delay_s: float = RESTART_DELAY_S
    stop_grace_s: float = STOP_GRACE_S
    request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S
    tool_call_timeout_s: float = TOOL_CALL_TIMEOUT_S
    initialize_timeout_s: float = INITIALIZE_TIMEOUT_S
    stream_limit_bytes: int = DEFAULT_STREAM_LIMIT_BYTES
    protocol_version: str = MCP_PROTOCOL_VERSION
    client_name: str = CLIENT_NAME
    client_version: str = CLIENT_VERSION

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SupervisorSettings":
        """Crée une instance depuis un dictionnaire (valeurs invalides -> défaut)."""
        defaults = cls()
        config_path = data.get("config_path")
        return cls(
            config_path=os.path.expanduser(config_path) if isinstance(config_path, str) and config_path else defaults.config_path,
            verbose=bool(data.get("verbose", False)),
            keepalive_enabled=bool(data.get("keepalive_enabled", True)),
            keepalive_interval_s=_positive_float(data.get("keepalive_interval_s"), KEEPALIVE_INTERVAL_S),
            keepalive_timeout_s=_positive_float(data.get("keepalive_timeout_s"), KEEPALIVE_TIMEOUT_S),
            keepalive_max_failures=_positive_int(data.get("keepalive_max_failures"), KEEPALIVE_MAX_FAILURES),
            refresh_idle_threshold_s=_positive_float(data.get("refresh_idle_threshold_s"), REFRESH_IDLE_THRESHOLD_S),
            activity_window_s=_positive_float(data.get("activity_window_s"), ACTIVITY_WINDOW_S),
            restart_delay_s=_positive_float(data.get("restart_delay_s"), RESTART_DELAY_S),
            stop_grace_s=_positive_float(data.get("stop_grace_s"), STOP_GRACE_S),
            request_timeout_s=_positive_float(data.get("request_timeout_s"), DEFAULT_REQUEST_TIMEOUT_S),
            tool_call_timeout_s=_positive_float(data.get("tool_call_timeout_s"), TOOL_CALL_TIMEOUT_S),
            initialize_timeout_s=_positive_float(data.get("initialize_timeout_s"), INITIALIZE_TIMEOUT_S),
            stream_limit_bytes=_clamp_stream_limit(data.get("stream_limit_bytes", DEFAULT_STREAM_LIMIT_BYTES)),
            protocol_version=str(data.get("protocol_version", MCP_PROTOCOL_VERSION)),
            client_name=str(data.get("client_name", CLIENT_NAME)),
            client_version=str(data.get("client_version", CLIENT_VERSION)),
        )
