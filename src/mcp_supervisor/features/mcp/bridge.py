"""
Contrat des serveurs MCP natifs (exécutés dans le processus) et registre de fabriques.

Un bridge natif est un objet qui expose:
- handle_request(method, params) -> result        (requis, sync ou async)
- handle_notification(method, params) -> None     (optionnel)
- shutdown() -> None                              (optionnel)

Le superviseur ne connaît pas la logique métier des outils: il route seulement
les messages JSON-RPC vers le bridge via InProcessBridgeTransport.
"""
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from ...core.constants import JSONRPC_INTERNAL_ERROR
from ...core.exceptions import TransportError
from ...core.models import ServerDefinition

logger = logging.getLogger(__name__)


class NativeBridgeExit(Exception):
    """Levée par un bridge pour signaler sa terminaison (équivalent d'une sortie de processus)."""

    def __init__(self, reason: str = "bridge terminé", code: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.code = code


class NativeBridgeError(Exception):
    """Erreur métier d'un bridge, renvoyée telle quelle comme objet `error` JSON-RPC."""

    def __init__(self, message: str, code: int = JSONRPC_INTERNAL_ERROR, data: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data


@runtime_checkable
class NativeBridge(Protocol):
    def handle_request(self, method: str, params: Optional[Dict[str, Any]]) -> Any:
        ...


@dataclass
class NativeBridgeConfig:
    """Configuration transmise à une fabrique de bridge."""
    server_id: str
    native_type: Optional[str] = None
    mode: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)
    allowed_domains: List[str] = field(default_factory=list)

    @classmethod
    def from_definition(cls, definition: ServerDefinition) -> "NativeBridgeConfig":
        return cls(
            server_id=definition.id,
            native_type=definition.native_type,
            mode=definition.mode,
            options=dict(definition.options),
            allowed_domains=list(definition.allowed_domains),
        )


BridgeFactory = Callable[[NativeBridgeConfig], Any]


async def maybe_await(value: Any) -> Any:
    """Attend `value` si c'est un awaitable (méthodes de bridge sync ou async)."""
    if inspect.isawaitable(value):
        return await value
    return value


class NativeBridgeRegistry:
    """
    Registre des fabriques de bridges natifs.

    Résolution: d'abord l'identifiant du serveur, puis son `native_type`.
    """

    def __init__(self):
        self._factories: Dict[str, BridgeFactory] = {}

    def register(self, key: str, factory: BridgeFactory, replace: bool = False) -> None:
        if not replace and key in self._factories:
            raise ValueError(f"Fabrique native déjà enregistrée: {key}")
        self._factories[key] = factory
        logger.debug(f"🧩 Fabrique native enregistrée: {key}")

    def unregister(self, key: str) -> bool:
        return self._factories.pop(key, None) is not None

    def keys(self) -> List[str]:
        return sorted(self._factories)

    def __contains__(self, key: object) -> bool:
        return key in self._factories

    def resolve(self, config: NativeBridgeConfig) -> Optional[BridgeFactory]:
        factory = self._factories.get(config.server_id)
        if factory is None and config.native_type:
            factory = self._factories.get(config.native_type)
        return factory

    def create(self, config: NativeBridgeConfig) -> Any:
        """
        Instancie le bridge d'un serveur natif.

        Raises:
            TransportError: aucune fabrique, fabrique en échec ou objet hors contrat
        """
        factory = self.resolve(config)
        if factory is None:
            raise TransportError(
                f"Serveur natif inconnu: {config.server_id} (type: {config.native_type or '-'})",
                server_id=config.server_id,
            )
        try:
            bridge = factory(config)
        except Exception as e:
            raise TransportError(
                f"Échec de création du serveur natif {config.server_id}: {e}",
                server_id=config.server_id,
            ) from e

        if not callable(getattr(bridge, "handle_request", None)):
            raise TransportError(
                f"Le serveur natif {config.server_id} n'expose pas handle_request()",
                server_id=config.server_id,
            )
        return bridge


def create_default_registry() -> NativeBridgeRegistry:
    """Registre avec les serveurs natifs fournis par le package (web-fetch)."""
    from ..native.web_fetch import WEB_FETCH_NATIVE_TYPE, WebFetchNativeServer

    registry = NativeBridgeRegistry()
    registry.register(WEB_FETCH_NATIVE_TYPE, WebFetchNativeServer)
    return registry
