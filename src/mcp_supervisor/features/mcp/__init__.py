"""
Moteur MCP: supervision de serveurs d'outils via JSON-RPC 2.0.

Modules:
- codec: trames JSON-RPC (une ligne par message)
- correlation: ids et requêtes en attente
- bridge: contrat et registre des serveurs natifs
- transport: sous-processus stdio / bridge natif
- instance: machine d'états d'un serveur
- keepalive: sonde périodique et détection de panne
- store: persistance mcp-config.json et migrations
- supervisor: cycle de vie et routage des appels
"""

from .codec import (
    JsonRpcRequest,
    JsonRpcResponse,
    JsonRpcNotification,
    MessageDecoder,
    encode,
    parse_message,
)
from .correlation import RequestIdAllocator, PendingRequests
from .bridge import (
    NativeBridge,
    NativeBridgeConfig,
    NativeBridgeError,
    NativeBridgeExit,
    NativeBridgeRegistry,
    create_default_registry,
)
from .transport import Transport, SpawnedProcessTransport, InProcessBridgeTransport, build_command_line
from .instance import ServerInstance
from .keepalive import KeepaliveMonitor
from .store import ConfigurationStore, run_migrations
from .supervisor import Supervisor

__all__ = [
    # Codec
    "JsonRpcRequest",
    "JsonRpcResponse",
    "JsonRpcNotification",
    "MessageDecoder",
    "encode",
    "parse_message",
    # Corrélation
    "RequestIdAllocator",
    "PendingRequests",
    # Bridge natif
    "NativeBridge",
    "NativeBridgeConfig",
    "NativeBridgeError",
    "NativeBridgeExit",
    "NativeBridgeRegistry",
    "create_default_registry",
    # Transports
    "Transport",
    "SpawnedProcessTransport",
    "InProcessBridgeTransport",
    "build_command_line",
    # Runtime
    "ServerInstance",
    "KeepaliveMonitor",
    "ConfigurationStore",
    "run_migrations",
    "Supervisor",
]
