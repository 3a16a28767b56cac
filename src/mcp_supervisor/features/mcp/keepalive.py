"""
Keepalive: une tâche asyncio par instance prête.

Toutes les `keepalive_interval_s` secondes (sauf sonde déjà en cours), un
`tools/list` avec échéance courte (ou `ping` sans outils) vérifie que le
serveur répond encore. Toute réponse, même une erreur JSON-RPC, compte
comme un succès; seuls les délais dépassés et les erreurs de transport
(ou une réponse illisible) sont des échecs.
Après `keepalive_max_failures` échecs consécutifs, l'instance est déclarée
morte et le callback `on_dead` est appelé (le superviseur la remplace).
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from ...config.settings import SupervisorSettings
from ...core.exceptions import (
    ProtocolError,
    RemoteError,
    RequestTimeoutError,
    ServerStoppedError,
    ServerUnavailableError,
    TransportError,
)

logger = logging.getLogger(__name__)

DeadCallback = Callable[["ServerInstance"], Awaitable[None]]
ActivityLookup = Callable[[str], Optional[float]]


class KeepaliveMonitor:
    """Surveille une instance; s'arrête seul quand elle n'est plus prête."""

    def __init__(
        self,
        instance,
        settings: SupervisorSettings,
        on_dead: DeadCallback,
        last_activity: ActivityLookup = lambda server_id: None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.instance = instance
        self.settings = settings
        self._on_dead = on_dead
        self._last_activity = last_activity
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"keepalive-{self.instance.server_id}")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        server_id = self.instance.server_id
        logger.debug(f"💓 [MCP {server_id}] Keepalive démarré ({self.settings.keepalive_interval_s:g}s)")
        while self.instance.is_ready:
            await asyncio.sleep(self.settings.keepalive_interval_s)
            if not self.instance.is_ready:
                break
            if not await self.probe_once():
                logger.error(
                    f"💀 [MCP {server_id}] {self.instance.keepalive.consecutive_failures} échecs keepalive "
                    f"consécutifs, serveur considéré mort"
                )
                await self._on_dead(self.instance)
                break
        logger.debug(f"[MCP {server_id}] Keepalive terminé")

    async def probe_once(self) -> bool:
        """
        Effectue une sonde.

        Returns:
            False si le nombre d'échecs consécutifs atteint le maximum
        """
        state = self.instance.keepalive
        if state.in_flight:
            return True

        state.in_flight = True
        try:
            await self.instance.probe(self.settings.keepalive_timeout_s)
        except (ServerStoppedError, ServerUnavailableError):
            return True
        except RemoteError as e:
            # Une réponse d'erreur prouve que le serveur est vivant
            logger.debug(f"[MCP {self.instance.server_id}] Keepalive: réponse d'erreur ({e.message})")
        except (RequestTimeoutError, TransportError, ProtocolError) as e:
            state.consecutive_failures += 1
            logger.warning(
                f"⚠️ [MCP {self.instance.server_id}] Keepalive en échec "
                f"({state.consecutive_failures}/{self.settings.keepalive_max_failures}): {e.message}"
            )
            return state.consecutive_failures < self.settings.keepalive_max_failures
        finally:
            state.in_flight = False

        state.consecutive_failures = 0
        state.last_success_at = self._clock()
        if self.should_refresh(state.last_success_at):
            await self.instance.refresh_capabilities()
        return True

    def should_refresh(self, now: float) -> bool:
        """
        Rafraîchissement complet si aucun n'a jamais eu lieu, ou si le dernier
        date de plus de `refresh_idle_threshold_s` ET qu'un outil de ce serveur
        a été appelé dans les `activity_window_s` dernières secondes.
        """
        last_refresh = self.instance.keepalive.last_refresh_at
        if last_refresh is None:
            return True
        if now - last_refresh <= self.settings.refresh_idle_threshold_s:
            return False
        last_activity = self._last_activity(self.instance.server_id)
        return last_activity is not None and now - last_activity <= self.settings.activity_window_s
