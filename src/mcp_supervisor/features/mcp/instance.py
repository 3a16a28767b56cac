"""
Instance de serveur MCP: machine d'états et cache des capacités.

    starting -> ready -> (error | stopped)

Une instance possède exclusivement son transport et sa table de requêtes en
attente. Le compteur d'ids est injecté par le superviseur.
"""
import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from ...config.settings import SupervisorSettings
from ...core.constants import CLIENT_CAPABILITIES, JSONRPC_METHOD_NOT_FOUND, MAX_LIST_PAGES
from ...core.exceptions import (
    ProtocolError,
    ServerNotReadyError,
    ServerStoppedError,
    SupervisorError,
    TransportError,
)
from ...core.models import KeepaliveState, ServerDefinition, ServerState
from .codec import (
    JsonRpcMessage,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    make_error,
)
from .correlation import PendingRequests, RequestIdAllocator
from .transport import Transport

logger = logging.getLogger(__name__)

# callback(instance, état précédent, code de sortie, raison)
ExitHandler = Callable[["ServerInstance", str, Optional[int], str], None]


def _flag_enabled(flag: Any) -> bool:
    if flag is None or flag is False:
        return False
    if isinstance(flag, dict) and flag.get("list") is False:
        return False
    return True


def tools_supported(capabilities: Dict[str, Any]) -> bool:
    """Outils listés sauf si le flag les marque explicitement comme non supportés ({} = supporté)."""
    if "tools" not in capabilities:
        return True
    return _flag_enabled(capabilities["tools"])


def capability_declared(capabilities: Dict[str, Any], key: str) -> bool:
    """Ressources / prompts: listés seulement si le serveur les déclare."""
    return key in capabilities and _flag_enabled(capabilities[key])


class ServerInstance:
    """Instance vivante d'un serveur MCP (spawned ou native)."""

    def __init__(
        self,
        definition: ServerDefinition,
        transport: Transport,
        allocator: RequestIdAllocator,
        settings: Optional[SupervisorSettings] = None,
    ):
        self.server_id = definition.id
        self.definition = definition
        self.transport = transport
        self.settings = settings or SupervisorSettings()

        self.state: ServerState = "starting"
        self.capabilities: Optional[Dict[str, Any]] = None
        self.server_info: Optional[Dict[str, Any]] = None
        self.protocol_version: Optional[str] = None
        self.tools: List[Dict[str, Any]] = []
        self.resources: List[Dict[str, Any]] = []
        self.prompts: List[Dict[str, Any]] = []
        self.keepalive = KeepaliveState()
        self.monitor = None
        self.last_error: Optional[str] = None
        self.started_at: Optional[float] = None

        self._pending = PendingRequests(self.server_id, allocator, transport.send)
        self._exit_handler: Optional[ExitHandler] = None
        self._background: Set[asyncio.Task] = set()
        self._tools_populated = False

        transport.on_message(self._handle_message)
        transport.on_exit(self._handle_exit)

    def __repr__(self) -> str:
        return f"<ServerInstance {self.server_id} state={self.state}>"

    @property
    def is_ready(self) -> bool:
        return self.state == "ready"

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def on_exit(self, handler: ExitHandler) -> None:
        self._exit_handler = handler

    # ------------------------------------------------------------------
    # Cycle de vie
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Démarre le transport puis effectue le handshake MCP.

        Raises:
            TransportError, RequestTimeoutError, RemoteError, ProtocolError:
                le handshake a échoué; le transport est déjà arrêté
        """
        self.state = "starting"
        try:
            await self.transport.start()
            result = await self._pending.send(
                "initialize",
                {
                    "protocolVersion": self.settings.protocol_version,
                    "capabilities": CLIENT_CAPABILITIES,
                    "clientInfo": {"name": self.settings.client_name, "version": self.settings.client_version},
                },
                timeout=self.settings.initialize_timeout_s,
            )
            if not isinstance(result, dict):
                raise ProtocolError(f"Réponse initialize invalide de {self.server_id}")

            capabilities = result.get("capabilities")
            self.capabilities = capabilities if isinstance(capabilities, dict) else {}
            self.server_info = result.get("serverInfo")
            self.protocol_version = result.get("protocolVersion")

            if self.state != "starting":
                raise ServerStoppedError(self.server_id, "arrêté pendant le handshake")
            self.state = "ready"
            self.started_at = time.monotonic()
            await self.notify("notifications/initialized")
        except BaseException as e:
            if self.state != "stopped":
                self.state = "error"
                self.last_error = str(e) or type(e).__name__
            await self._shutdown(lambda: ServerStoppedError(self.server_id, "handshake interrompu"))
            raise

        name = (self.server_info or {}).get("name", "?")
        logger.info(f"✅ [MCP {self.server_id}] Prêt ({name}, protocole {self.protocol_version or '?'})")
        await self.refresh_capabilities()

    async def close(self, reason: str = "arrêt demandé") -> None:
        """Arrête l'instance: keepalive, requêtes en attente, transport."""
        if self.state == "stopped":
            return
        self.state = "stopped"
        if self.monitor is not None:
            await self.monitor.stop()
        await self._shutdown(lambda: ServerStoppedError(self.server_id, reason))

    async def _shutdown(self, error_factory: Callable[[], Exception]) -> None:
        self._pending.fail_all(error_factory)

        current = asyncio.current_task()
        tasks = [t for t in self._background if t is not current and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        try:
            await self.transport.terminate()
        except Exception as e:
            logger.warning(f"⚠️ [MCP {self.server_id}] Arrêt du transport en échec: {e}")

    # ------------------------------------------------------------------
    # Requêtes
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Requête vers le serveur (état `ready` requis, aucune écriture sinon).

        Raises:
            ServerNotReadyError: instance pas prête
        """
        if self.state != "ready":
            raise ServerNotReadyError(self.server_id, self.state)
        return await self._pending.send(
            method,
            params,
            timeout=timeout if timeout is not None else self.settings.request_timeout_s,
        )

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Notification fire-and-forget."""
        await self.transport.send(JsonRpcNotification(method=method, params=params))

    async def probe(self, timeout: float) -> Any:
        """Sonde keepalive: tools/list avec échéance courte, `ping` si le serveur n'expose pas d'outils."""
        method = "tools/list" if tools_supported(self.capabilities or {}) else "ping"
        return await self.request(method, {}, timeout=timeout)

    # ------------------------------------------------------------------
    # Capacités
    # ------------------------------------------------------------------

    async def refresh_capabilities(self) -> bool:
        """
        Recharge les listes tools / resources / prompts.

        Un appel en échec est loggé et n'interrompt pas les autres.

        Returns:
            False si l'instance n'est pas prête
        """
        if self.state != "ready":
            return False

        capabilities = self.capabilities or {}

        if tools_supported(capabilities):
            try:
                tools = await self._list_all("tools/list", "tools")
            except SupervisorError as e:
                logger.warning(f"⚠️ [MCP {self.server_id}] tools/list en échec: {e.message}")
            else:
                self._update_tools(tools)
        else:
            self.tools = []

        if capability_declared(capabilities, "resources"):
            try:
                self.resources = await self._list_all("resources/list", "resources")
            except SupervisorError as e:
                logger.warning(f"⚠️ [MCP {self.server_id}] resources/list en échec: {e.message}")
        else:
            self.resources = []

        if capability_declared(capabilities, "prompts"):
            try:
                self.prompts = await self._list_all("prompts/list", "prompts")
            except SupervisorError as e:
                logger.warning(f"⚠️ [MCP {self.server_id}] prompts/list en échec: {e.message}")
        else:
            self.prompts = []

        self.keepalive.last_refresh_at = time.monotonic()
        return True

    def _update_tools(self, tools: List[Dict[str, Any]]) -> None:
        before = sorted(t.get("name", "") for t in self.tools)
        after = sorted(t.get("name", "") for t in tools)
        self.tools = tools
        if not self._tools_populated or before != after:
            self._tools_populated = True
            logger.info(f"🔧 [MCP {self.server_id}] {len(tools)} outil(s): {', '.join(after) or '-'}")

    async def _list_all(self, method: str, key: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        cursor = None
        for _ in range(MAX_LIST_PAGES):
            params = {"cursor": cursor} if cursor else {}
            result = await self.request(method, params)
            if not isinstance(result, dict):
                break
            page = result.get(key)
            if isinstance(page, list):
                items.extend(item for item in page if isinstance(item, dict))
            cursor = result.get("nextCursor")
            if not cursor:
                break
        else:
            logger.warning(f"⚠️ [MCP {self.server_id}] {method}: pagination tronquée à {MAX_LIST_PAGES} pages")
        return items

    # ------------------------------------------------------------------
    # Messages entrants
    # ------------------------------------------------------------------

    def _handle_message(self, message: JsonRpcMessage) -> None:
        if isinstance(message, JsonRpcResponse):
            self._pending.resolve(message)
        elif isinstance(message, JsonRpcRequest):
            self._spawn(self._answer_server_request(message))
        elif isinstance(message, JsonRpcNotification):
            self._handle_notification(message)

    def _handle_notification(self, notification: JsonRpcNotification) -> None:
        if notification.method == "notifications/tools/list_changed" and self.state == "ready":
            logger.info(f"🔄 [MCP {self.server_id}] Liste d'outils modifiée, rafraîchissement")
            self._spawn(self.refresh_capabilities())
            return
        logger.debug(f"[MCP {self.server_id}] Notification: {notification.method}")

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def roots(self) -> List[Dict[str, str]]:
        root = Path(self.definition.cwd or os.getcwd()).expanduser().resolve()
        return [{"uri": root.as_uri(), "name": "workspace"}]

    async def _answer_server_request(self, request: JsonRpcRequest) -> None:
        if request.method == "ping":
            response = JsonRpcResponse(id=request.id, result={})
        elif request.method == "roots/list":
            response = JsonRpcResponse(id=request.id, result={"roots": self.roots()})
        else:
            logger.debug(f"[MCP {self.server_id}] Requête serveur non supportée: {request.method}")
            response = JsonRpcResponse(
                id=request.id,
                error=make_error(JSONRPC_METHOD_NOT_FOUND, f"Method not found: {request.method}"),
            )
        try:
            await self.transport.send(response)
        except TransportError as e:
            logger.debug(f"[MCP {self.server_id}] Réponse à {request.method} non envoyée: {e.message}")

    def _handle_exit(self, exit_code: Optional[int], reason: str) -> None:
        if self.state == "stopped":
            return
        previous = self.state
        self.state = "error"
        self.last_error = reason
        self._pending.fail_all(
            lambda: TransportError(
                f"Serveur MCP {self.server_id} terminé: {reason}",
                server_id=self.server_id,
                exit_code=exit_code,
            )
        )
        if self._exit_handler is not None:
            self._exit_handler(self, previous, exit_code, reason)
