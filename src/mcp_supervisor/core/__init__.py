"""
Cœur métier du superviseur MCP.
Modules indépendants sans dépendances externes au package.
"""

from .exceptions import (
    SupervisorError,
    ConfigurationError,
    InvalidServerDefinitionError,
    ServerAlreadyInstalledError,
    ServerNotFoundError,
    ServerDisabledError,
    ServerUnavailableError,
    ServerNotRunningError,
    ServerNotReadyError,
    ServerStoppedError,
    TransportError,
    ProtocolError,
    RequestTimeoutError,
    RemoteError,
)
from .constants import (
    JSONRPC_VERSION,
    MCP_PROTOCOL_VERSION,
    TRANSPORT_SPAWNED,
    TRANSPORT_NATIVE,
)
from .models import ServerDefinition, KeepaliveState, ServerStatus, ServerState

__all__ = [
    # Exceptions
    "SupervisorError",
    "ConfigurationError",
    "InvalidServerDefinitionError",
    "ServerAlreadyInstalledError",
    "ServerNotFoundError",
    "ServerDisabledError",
    "ServerUnavailableError",
    "ServerNotRunningError",
    "ServerNotReadyError",
    "ServerStoppedError",
    "TransportError",
    "ProtocolError",
    "RequestTimeoutError",
    "RemoteError",
    # Constants
    "JSONRPC_VERSION",
    "MCP_PROTOCOL_VERSION",
    "TRANSPORT_SPAWNED",
    "TRANSPORT_NATIVE",
    # Models
    "ServerDefinition",
    "KeepaliveState",
    "ServerStatus",
    "ServerState",
]
