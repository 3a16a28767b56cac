"""
Table de corrélation requête/réponse JSON-RPC.

- Les ids sont alloués par un compteur unique détenu par le superviseur
  (RequestIdAllocator), injecté dans chaque instance.
- Chaque instance possède sa propre table d'attente (PendingRequests).
- L'échéance appartient à la tâche qui attend (asyncio.wait_for): rien ne
  reste armé après résolution, timeout ou arrêt.
"""
import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from ...core.constants import DEFAULT_REQUEST_TIMEOUT_S
from ...core.exceptions import RemoteError, RequestTimeoutError, TransportError
from .codec import JsonRpcMessage, JsonRpcRequest, JsonRpcResponse

logger = logging.getLogger(__name__)

Writer = Callable[[JsonRpcMessage], Awaitable[None]]


class RequestIdAllocator:
    """Compteur d'ids monotone, partagé par toutes les instances d'un superviseur."""

    def __init__(self, start: int = 1):
        self._counter = itertools.count(start)

    def next_id(self) -> int:
        return next(self._counter)


@dataclass
class _PendingEntry:
    method: str
    future: asyncio.Future


class PendingRequests:
    """
    Requêtes en attente de réponse pour une instance.

    Invariant: chaque requête est résolue exactement une fois (réponse,
    timeout ou échec global) et retirée de la table à ce moment-là.
    """

    def __init__(self, server_id: str, allocator: RequestIdAllocator, writer: Writer):
        self.server_id = server_id
        self._allocator = allocator
        self._writer = writer
        self._pending: Dict[Union[int, str], _PendingEntry] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    async def send(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
    ) -> Any:
        """
        Envoie une requête et attend sa réponse.

        Returns:
            Le champ `result` de la réponse

        Raises:
            RemoteError: le serveur a répondu avec un objet `error`
            RequestTimeoutError: pas de réponse avant `timeout` secondes
            TransportError: échec d'écriture sur le transport
            ServerStoppedError: l'instance a été arrêtée pendant l'attente
        """
        request_id = self._allocator.next_id()
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = _PendingEntry(method=method, future=future)

        logger.debug(
            f"📤 [MCP {self.server_id}] #{request_id} {method} "
            f"(params: {sorted(params.keys()) if isinstance(params, dict) else '-'})"
        )

        try:
            await self._writer(JsonRpcRequest(id=request_id, method=method, params=params))
        except Exception as e:
            self._pending.pop(request_id, None)
            if future.done() and not future.cancelled():
                # Déjà échouée par fail_all: on consomme l'exception
                future.exception()
            if isinstance(e, TransportError):
                raise
            raise TransportError(
                f"Échec d'écriture de {method} vers {self.server_id}: {e}",
                server_id=self.server_id,
            ) from e

        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ [MCP {self.server_id}] #{request_id} {method}: timeout après {timeout:g}s")
            raise RequestTimeoutError(self.server_id, method, timeout) from None
        finally:
            self._pending.pop(request_id, None)

    def resolve(self, response: JsonRpcResponse) -> bool:
        """
        Résout la requête correspondant à `response.id`.

        Returns:
            False si l'id est inconnu (réponse tardive ou parasite)
        """
        entry = self._pending.pop(response.id, None)
        if entry is None:
            logger.debug(f"[MCP {self.server_id}] Réponse pour id inconnu ignorée: {response.id!r}")
            return False
        if entry.future.done():
            return False

        if response.is_error:
            entry.future.set_exception(RemoteError(self.server_id, entry.method, response.error))
        else:
            entry.future.set_result(response.result)
        return True

    def fail_all(self, error_factory: Callable[[], Exception]) -> int:
        """
        Fait échouer toutes les requêtes en attente et vide la table.

        Args:
            error_factory: construit l'exception (une instance par requête)

        Returns:
            Nombre de requêtes échouées
        """
        entries = list(self._pending.values())
        self._pending.clear()
        failed = 0
        for entry in entries:
            if not entry.future.done():
                entry.future.set_exception(error_factory())
                failed += 1
        if failed:
            logger.debug(f"[MCP {self.server_id}] {failed} requête(s) en attente annulée(s)")
        return failed
