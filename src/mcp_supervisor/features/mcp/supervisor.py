"""
Superviseur MCP: cycle de vie des serveurs et routage des appels.

Responsabilités:
- installation / mise à jour / activation / désinstallation (ConfigurationStore)
- démarrage / arrêt des instances (au plus une instance par identifiant)
- redémarrage automatique après sortie inattendue ou keepalive en échec
- agrégation des caches tools / resources / prompts
- appels d'outils, lecture de ressources, prompts

Le compteur d'ids JSON-RPC appartient au superviseur: plusieurs superviseurs
peuvent coexister dans le même processus.
"""
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Set

from ...config.settings import SupervisorSettings
from ...core.exceptions import (
    InvalidServerDefinitionError,
    ServerAlreadyInstalledError,
    ServerDisabledError,
    ServerNotReadyError,
    ServerNotRunningError,
    ServerStoppedError,
    SupervisorError,
)
from ...core.models import ServerDefinition, ServerStatus
from .bridge import NativeBridgeConfig, NativeBridgeRegistry, create_default_registry
from .correlation import RequestIdAllocator
from .instance import ServerInstance
from .keepalive import KeepaliveMonitor
from .store import ConfigurationStore
from .transport import InProcessBridgeTransport, SpawnedProcessTransport, Transport

logger = logging.getLogger(__name__)


class Supervisor:
    """Point d'entrée unique pour piloter les serveurs MCP."""

    def __init__(
        self,
        store: Optional[ConfigurationStore] = None,
        settings: Optional[SupervisorSettings] = None,
        registry: Optional[NativeBridgeRegistry] = None,
    ):
        self.settings = settings or SupervisorSettings()
        self.store = store if store is not None else ConfigurationStore(self.settings.config_path)
        self.registry = registry if registry is not None else create_default_registry()

        self._ids = RequestIdAllocator()
        self._instances: Dict[str, ServerInstance] = {}
        self._last_activity: Dict[str, float] = {}
        self._last_errors: Dict[str, str] = {}
        self._restart_tasks: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._closed = False

    @property
    def verbose(self) -> bool:
        return self.settings.verbose or self.store.verbose

    def get_instance(self, server_id: str) -> Optional[ServerInstance]:
        return self._instances.get(server_id)

    def last_activity(self, server_id: str) -> Optional[float]:
        return self._last_activity.get(server_id)

    def _lock_for(self, server_id: str) -> asyncio.Lock:
        lock = self._locks.get(server_id)
        if lock is None:
            lock = self._locks[server_id] = asyncio.Lock()
        return lock

    async def _ensure_loaded(self) -> None:
        if not self.store.loaded:
            await self.store.load()

    # ------------------------------------------------------------------
    # Initialisation / nettoyage
    # ------------------------------------------------------------------

    async def initialize(self) -> Dict[str, Any]:
        """
        Charge la configuration et démarre les serveurs `enabled` + `autostart`.

        Les échecs individuels sont loggés, jamais propagés.
        """
        self._closed = False
        await self.store.load()

        autostart = [d.id for d in self.store.all().values() if d.enabled and d.autostart]
        failed: Dict[str, str] = {}
        if autostart:
            logger.info(f"🚀 Démarrage automatique: {', '.join(autostart)}")
            results = await asyncio.gather(
                *(self.start_server(server_id) for server_id in autostart),
                return_exceptions=True,
            )
            for server_id, result in zip(autostart, results):
                if isinstance(result, BaseException):
                    message = result.message if isinstance(result, SupervisorError) else str(result)
                    failed[server_id] = message
                    logger.error(f"❌ [MCP {server_id}] Démarrage automatique en échec: {message}")

        return {
            "success": True,
            "servers": len(self.store),
            "autostarted": [s for s in autostart if s not in failed],
            "failed": failed,
        }

    async def cleanup(self) -> None:
        """
        Annule les redémarrages planifiés, attend les fermetures déjà lancées
        puis arrête toutes les instances en parallèle.
        """
        self._closed = True

        restarts = list(self._restart_tasks.values())
        self._restart_tasks.clear()
        for task in restarts:
            if not task.done():
                task.cancel()
        if restarts:
            await asyncio.gather(*restarts, return_exceptions=True)

        # Fermetures d'instances sorties: le transport doit être libéré
        closing = list(self._background)
        if closing:
            await asyncio.gather(*closing, return_exceptions=True)

        instances = list(self._instances.values())
        self._instances.clear()
        results = await asyncio.gather(
            *(instance.close("arrêt du superviseur") for instance in instances),
            return_exceptions=True,
        )
        for instance, result in zip(instances, results):
            if isinstance(result, BaseException):
                logger.warning(f"⚠️ [MCP {instance.server_id}] Arrêt en échec: {result}")
        if instances:
            logger.info(f"🛑 {len(instances)} serveur(s) MCP arrêté(s)")

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def install_server(self, server_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Installe une nouvelle définition (sans démarrage).

        Raises:
            ServerAlreadyInstalledError: identifiant déjà utilisé
            InvalidServerDefinitionError: champs requis manquants
        """
        if not isinstance(server_id, str) or not server_id.strip():
            raise InvalidServerDefinitionError("Identifiant de serveur vide", field_name="id")

        await self._ensure_loaded()
        async with self._lock_for(server_id):
            if server_id in self.store:
                raise ServerAlreadyInstalledError(server_id)
            definition = ServerDefinition.from_dict(server_id, config).validate()
            await self.store.add(definition)

        logger.info(f"📦 [MCP {server_id}] Installé ({definition.transport_kind})")
        return {"success": True, "server_id": server_id, "config": definition.to_dict()}

    async def uninstall_server(self, server_id: str) -> Dict[str, Any]:
        """Arrête l'instance éventuelle puis supprime la définition."""
        await self._ensure_loaded()
        async with self._lock_for(server_id):
            self.store.require(server_id)
            stopped = await self.stop_server(server_id)
            await self.store.remove(server_id)
            self._last_activity.pop(server_id, None)
            self._last_errors.pop(server_id, None)

        logger.info(f"🗑️ [MCP {server_id}] Désinstallé")
        return {"success": True, "server_id": server_id, "was_running": stopped["was_running"]}

    async def update_server_config(self, server_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        """
        Fusionne une mise à jour partielle; une instance en cours est redémarrée.
        """
        await self._ensure_loaded()
        async with self._lock_for(server_id):
            updated = await self.store.update(server_id, partial)
            restarted = False
            if server_id in self._instances:
                logger.info(f"🔄 [MCP {server_id}] Configuration modifiée, redémarrage")
                await self.stop_server(server_id)
                if updated.enabled:
                    await self._start_locked(server_id)
                    restarted = True

        return {
            "success": True,
            "server_id": server_id,
            "config": updated.to_dict(),
            "restarted": restarted,
        }

    async def toggle_server(self, server_id: str, enabled: bool) -> Dict[str, Any]:
        """Active / désactive un serveur et aligne l'instance sur le nouvel état."""
        await self._ensure_loaded()
        enabled = bool(enabled)
        async with self._lock_for(server_id):
            await self.store.update(server_id, {"enabled": enabled})
            running = server_id in self._instances
            if not enabled and running:
                await self.stop_server(server_id)
            elif enabled and not running:
                await self._start_locked(server_id)

        logger.info(f"{'✅' if enabled else '⏸️'} [MCP {server_id}] {'Activé' if enabled else 'Désactivé'}")
        return {
            "success": True,
            "server_id": server_id,
            "enabled": enabled,
            "running": server_id in self._instances,
        }

    # ------------------------------------------------------------------
    # Cycle de vie
    # ------------------------------------------------------------------

    async def start_server(self, server_id: str) -> Dict[str, Any]:
        """
        Démarre un serveur (idempotent).

        Raises:
            ServerNotFoundError: identifiant inconnu
            ServerDisabledError: serveur désactivé
            TransportError, RequestTimeoutError, RemoteError: handshake en échec
        """
        await self._ensure_loaded()
        async with self._lock_for(server_id):
            return await self._start_locked(server_id)

    async def _start_locked(self, server_id: str) -> Dict[str, Any]:
        existing = self._instances.get(server_id)
        if existing is not None:
            return {"success": True, "server_id": server_id, "already_running": True, "state": existing.state}

        definition = self.store.require(server_id)
        if not definition.enabled:
            raise ServerDisabledError(server_id)
        definition.validate()
        self._cancel_restart(server_id)

        try:
            transport = self._build_transport(definition)
        except SupervisorError as e:
            self._last_errors[server_id] = e.message
            raise

        instance = ServerInstance(definition, transport, self._ids, self.settings)
        instance.on_exit(self._handle_instance_exit)
        # Inscrite avant tout await: un start concurrent voit l'instance
        self._instances[server_id] = instance

        try:
            await instance.start()
        except BaseException as e:
            if self._instances.get(server_id) is instance:
                del self._instances[server_id]
            if isinstance(e, SupervisorError):
                self._last_errors[server_id] = e.message
                logger.error(f"❌ [MCP {server_id}] Démarrage en échec: {e.message}")
            raise

        if self._instances.get(server_id) is not instance or not instance.is_ready:
            raise ServerStoppedError(server_id, "arrêté pendant le démarrage")

        self._last_errors.pop(server_id, None)
        if self.settings.keepalive_enabled:
            monitor = KeepaliveMonitor(
                instance,
                self.settings,
                on_dead=self._handle_keepalive_dead,
                last_activity=self.last_activity,
            )
            instance.monitor = monitor
            monitor.start()

        return {
            "success": True,
            "server_id": server_id,
            "already_running": False,
            "state": instance.state,
            "tools_count": len(instance.tools),
        }

    async def stop_server(self, server_id: str) -> Dict[str, Any]:
        """Arrête l'instance (sans attendre les verrous de cycle de vie)."""
        self._cancel_restart(server_id)
        instance = self._instances.pop(server_id, None)
        self._last_errors.pop(server_id, None)
        if instance is None:
            return {"success": True, "server_id": server_id, "was_running": False}

        await instance.close("arrêt demandé")
        logger.info(f"🛑 [MCP {server_id}] Arrêté")
        return {"success": True, "server_id": server_id, "was_running": True}

    def _build_transport(self, definition: ServerDefinition) -> Transport:
        if definition.is_native:
            bridge = self.registry.create(NativeBridgeConfig.from_definition(definition))
            return InProcessBridgeTransport(definition.id, bridge, verbose=self.verbose)
        return SpawnedProcessTransport(
            definition.id,
            definition.command,
            definition.args,
            cwd=definition.cwd,
            env=definition.env,
            stream_limit=self.settings.stream_limit_bytes,
            stop_grace_s=self.settings.stop_grace_s,
            verbose=self.verbose,
        )

    # ------------------------------------------------------------------
    # Pannes et redémarrages
    # ------------------------------------------------------------------

    def _handle_instance_exit(self, instance: ServerInstance, previous: str, exit_code: Optional[int], reason: str) -> None:
        server_id = instance.server_id
        if self._instances.get(server_id) is not instance:
            return
        del self._instances[server_id]
        self._last_errors[server_id] = reason
        self._spawn(instance.close(reason))

        if previous == "ready" and instance.definition.auto_restart and not self._closed:
            logger.warning(
                f"🔁 [MCP {server_id}] Sortie inattendue ({reason}), "
                f"redémarrage dans {self.settings.restart_delay_s:g}s"
            )
            self._schedule_restart(server_id, self.settings.restart_delay_s)
        else:
            logger.warning(f"⚠️ [MCP {server_id}] Sortie inattendue ({reason}), pas de redémarrage")

    async def _handle_keepalive_dead(self, instance: ServerInstance) -> None:
        server_id = instance.server_id
        if self._instances.get(server_id) is not instance:
            return
        del self._instances[server_id]
        self._last_errors[server_id] = "keepalive: le serveur ne répond plus"
        await instance.close("keepalive en échec")
        if not self._closed:
            logger.warning(f"🔁 [MCP {server_id}] Redémarrage après échec keepalive")
            self._schedule_restart(server_id, 0)

    def _schedule_restart(self, server_id: str, delay: float) -> None:
        self._cancel_restart(server_id)
        task = asyncio.create_task(self._restart_after(server_id, delay), name=f"restart-{server_id}")
        self._restart_tasks[server_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._restart_tasks.get(server_id) is done:
                del self._restart_tasks[server_id]

        task.add_done_callback(_forget)

    def _cancel_restart(self, server_id: str) -> None:
        task = self._restart_tasks.get(server_id)
        if task is None or task is asyncio.current_task():
            return
        del self._restart_tasks[server_id]
        if not task.done():
            task.cancel()

    async def _restart_after(self, server_id: str, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        try:
            await self.start_server(server_id)
            logger.info(f"✅ [MCP {server_id}] Redémarré")
        except SupervisorError as e:
            logger.error(f"❌ [MCP {server_id}] Redémarrage en échec: {e.message}")
            self._last_errors[server_id] = e.message

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Consultation
    # ------------------------------------------------------------------

    def list_installed_servers(self) -> List[ServerStatus]:
        statuses = []
        for server_id, definition in self.store.all().items():
            instance = self._instances.get(server_id)
            last_error = self._last_errors.get(server_id)
            if instance is not None:
                statuses.append(ServerStatus(
                    id=server_id,
                    config=definition.to_dict(),
                    running=True,
                    state=instance.state,
                    tools_count=len(instance.tools),
                    resources_count=len(instance.resources),
                    prompts_count=len(instance.prompts),
                    last_error=last_error,
                ))
            else:
                statuses.append(ServerStatus(
                    id=server_id,
                    config=definition.to_dict(),
                    running=False,
                    state="error" if last_error else "stopped",
                    last_error=last_error,
                ))
        return statuses

    def _ready_instances(self) -> List[ServerInstance]:
        return [instance for instance in self._instances.values() if instance.is_ready]

    @staticmethod
    def _tag(items: List[Dict[str, Any]], server_id: str) -> List[Dict[str, Any]]:
        return [{**item, "serverId": server_id, "serverName": server_id} for item in items]

    def list_all_tools(self) -> List[Dict[str, Any]]:
        return [t for i in self._ready_instances() for t in self._tag(i.tools, i.server_id)]

    def list_all_resources(self) -> List[Dict[str, Any]]:
        return [r for i in self._ready_instances() for r in self._tag(i.resources, i.server_id)]

    def list_all_prompts(self) -> List[Dict[str, Any]]:
        return [p for i in self._ready_instances() for p in self._tag(i.prompts, i.server_id)]

    def get_status(self) -> Dict[str, Any]:
        return {
            "servers_installed": len(self.store),
            "servers_running": len(self._instances),
            "servers_ready": len(self._ready_instances()),
            "config_path": str(self.store.path),
        }

    # ------------------------------------------------------------------
    # Appels
    # ------------------------------------------------------------------

    def _require_ready(self, server_id: str) -> ServerInstance:
        instance = self._instances.get(server_id)
        if instance is None:
            raise ServerNotRunningError(server_id)
        if not instance.is_ready:
            raise ServerNotReadyError(server_id, instance.state)
        return instance

    def _log_call(self, server_id: str, method: str, params: Dict[str, Any]) -> None:
        if self.verbose:
            logger.info(f"🔧 [MCP {server_id}] {method} {params}")
        else:
            logger.info(f"🔧 [MCP {server_id}] {method} (params: {sorted(params.keys())})")

    async def call_tool(self, server_id: str, tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """
        Appelle un outil (échéance: tool_call_timeout_s).

        Raises:
            ServerNotRunningError / ServerNotReadyError: aucune écriture n'a lieu
            RemoteError: le serveur a refusé l'appel
            RequestTimeoutError: pas de réponse dans le délai
        """
        instance = self._require_ready(server_id)
        self._last_activity[server_id] = time.monotonic()
        params = {"name": tool_name, "arguments": arguments or {}}
        self._log_call(server_id, f"tools/call {tool_name}", params["arguments"])
        return await instance.request("tools/call", params, timeout=self.settings.tool_call_timeout_s)

    async def read_resource(self, server_id: str, uri: str) -> Any:
        instance = self._require_ready(server_id)
        self._log_call(server_id, "resources/read", {"uri": uri})
        return await instance.request("resources/read", {"uri": uri})

    async def get_prompt(self, server_id: str, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        instance = self._require_ready(server_id)
        params = {"name": name, "arguments": arguments or {}}
        self._log_call(server_id, f"prompts/get {name}", params["arguments"])
        return await instance.request("prompts/get", params)

    async def refresh_server(self, server_id: str) -> Dict[str, Any]:
        """Rafraîchit explicitement les capacités d'un serveur prêt."""
        instance = self._require_ready(server_id)
        await instance.refresh_capabilities()
        return {
            "success": True,
            "server_id": server_id,
            "tools_count": len(instance.tools),
            "resources_count": len(instance.resources),
            "prompts_count": len(instance.prompts),
        }
