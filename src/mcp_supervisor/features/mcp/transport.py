"""
Transports MCP: un contrat unique, deux implémentations.

Contrat (Transport):
- start()                 démarre le transport
- send(message)           écrit un message JSON-RPC
- on_message(callback)    messages entrants (réponses, requêtes, notifications)
- on_exit(callback)       sortie inattendue: callback(exit_code, reason)
- terminate()             arrêt demandé (ne déclenche pas on_exit)

SpawnedProcessTransport: sous-processus stdio (stdin = trames, stdout = codec,
stderr = logs, jamais parsé).
InProcessBridgeTransport: objet Python dans le processus (voir bridge.py),
les résultats reviennent par le même chemin on_message.
"""
import asyncio
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Set

from ...core.constants import (
    DEFAULT_STREAM_LIMIT_BYTES,
    JSONRPC_INTERNAL_ERROR,
    READ_CHUNK_BYTES,
    STOP_GRACE_S,
)
from ...core.exceptions import TransportError
from .bridge import NativeBridgeError, NativeBridgeExit, maybe_await
from .codec import (
    JsonRpcMessage,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    MessageDecoder,
    encode,
    make_error,
)

logger = logging.getLogger(__name__)

MessageCallback = Callable[[JsonRpcMessage], None]
ExitCallback = Callable[[Optional[int], str], None]

_WHITESPACE = re.compile(r"\s")


def build_command_line(command: str, args: List[str]) -> str:
    """
    Ligne de commande shell (Windows): les arguments contenant des espaces
    sont entourés de guillemets doubles.
    """
    parts = [command]
    for arg in args:
        if _WHITESPACE.search(arg) and not (arg.startswith('"') and arg.endswith('"')):
            parts.append(f'"{arg}"')
        else:
            parts.append(arg)
    return " ".join(parts)


def build_process_env(overrides: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Environnement du sous-processus: os.environ + surcharges de la définition."""
    env = dict(os.environ)
    if overrides:
        env.update({str(k): str(v) for k, v in overrides.items()})
    return env


class Transport(ABC):
    """Base commune: callbacks et notification de sortie (une seule fois)."""

    def __init__(self, server_id: str):
        self.server_id = server_id
        self._message_callback: Optional[MessageCallback] = None
        self._exit_callback: Optional[ExitCallback] = None
        self._exit_reported = False
        self._terminating = False

    def on_message(self, callback: MessageCallback) -> None:
        self._message_callback = callback

    def on_exit(self, callback: ExitCallback) -> None:
        self._exit_callback = callback

    def _emit_message(self, message: JsonRpcMessage) -> None:
        if self._message_callback is None:
            return
        try:
            self._message_callback(message)
        except Exception:
            logger.exception(f"❌ [MCP {self.server_id}] Erreur dans le traitement d'un message")

    def _emit_exit(self, exit_code: Optional[int], reason: str) -> None:
        if self._exit_reported or self._terminating:
            return
        self._exit_reported = True
        if self._exit_callback is None:
            return
        try:
            self._exit_callback(exit_code, reason)
        except Exception:
            logger.exception(f"❌ [MCP {self.server_id}] Erreur dans le callback de sortie")

    @property
    @abstractmethod
    def is_alive(self) -> bool:
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def send(self, message: JsonRpcMessage) -> None:
        ...

    @abstractmethod
    async def terminate(self) -> None:
        ...


class SpawnedProcessTransport(Transport):
    """Serveur MCP lancé comme sous-processus stdio."""

    def __init__(
        self,
        server_id: str,
        command: str,
        args: Optional[List[str]] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        stream_limit: int = DEFAULT_STREAM_LIMIT_BYTES,
        stop_grace_s: float = STOP_GRACE_S,
        verbose: bool = False,
    ):
        super().__init__(server_id)
        self.command = command
        self.args = list(args or [])
        self.cwd = cwd
        self.env = dict(env or {})
        self.stream_limit = stream_limit
        self.stop_grace_s = stop_grace_s
        self.verbose = verbose

        self._process: Optional[asyncio.subprocess.Process] = None
        self._decoder = MessageDecoder(label=f"MCP {server_id}", max_line_bytes=stream_limit)
        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._wait_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        """
        Lance le sous-processus avec trois pipes.

        Raises:
            TransportError: commande introuvable, cwd invalide, permission refusée
        """
        if self._process is not None:
            raise TransportError(f"Transport {self.server_id} déjà démarré", server_id=self.server_id)

        env = build_process_env(self.env)
        logger.info(
            f"🚀 [MCP {self.server_id}] Lancement: {self.command} {' '.join(self.args)}"
            + (f" (cwd: {self.cwd})" if self.cwd else "")
        )

        try:
            if os.name == "nt":
                # npx / .cmd ne se lancent que via le shell sous Windows
                self._process = await asyncio.create_subprocess_shell(
                    build_command_line(self.command, self.args),
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self.cwd,
                    env=env,
                    limit=self.stream_limit,
                )
            else:
                self._process = await asyncio.create_subprocess_exec(
                    self.command,
                    *self.args,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self.cwd,
                    env=env,
                    limit=self.stream_limit,
                )
        except OSError as e:
            raise TransportError(
                f"Impossible de lancer {self.server_id} ({self.command}): {e}",
                server_id=self.server_id,
            ) from e

        logger.debug(f"[MCP {self.server_id}] PID {self._process.pid}")
        self._stdout_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        self._wait_task = asyncio.create_task(self._wait_exit())

    async def send(self, message: JsonRpcMessage) -> None:
        process = self._process
        if process is None or process.returncode is not None or process.stdin is None or self._terminating:
            raise TransportError(f"Processus {self.server_id} non disponible", server_id=self.server_id)

        data = encode(message)
        if self.verbose:
            logger.debug(f"[MCP {self.server_id}] → {data.decode('utf-8', errors='replace').rstrip()}")

        async with self._write_lock:
            try:
                process.stdin.write(data)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
                raise TransportError(
                    f"Écriture impossible vers {self.server_id}: {e}",
                    server_id=self.server_id,
                ) from e

    async def _read_stdout(self) -> None:
        stream = self._process.stdout
        try:
            while True:
                chunk = await stream.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                for message in self._decoder.feed(chunk):
                    if self.verbose:
                        logger.debug(f"[MCP {self.server_id}] ← {message}")
                    self._emit_message(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"❌ [MCP {self.server_id}] Lecture stdout interrompue: {e}")
        if self._decoder.pending_bytes:
            logger.debug(f"[MCP {self.server_id}] {self._decoder.pending_bytes} octet(s) sans fin de ligne ignorés")

    async def _read_stderr(self) -> None:
        stream = self._process.stderr
        while True:
            try:
                line = await stream.readline()
            except ValueError as e:
                # Ligne plus longue que la limite du flux: tronquée, lecture poursuivie
                logger.warning(f"⚠️ [MCP {self.server_id} stderr] Ligne trop longue ignorée: {e}")
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.info(f"[MCP {self.server_id} stderr] {text}")

    async def _wait_exit(self) -> None:
        returncode = await self._process.wait()
        # Les derniers messages stdout sont livrés avant la notification de sortie
        if self._stdout_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._stdout_task), timeout=1.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass
        if self._terminating:
            return
        logger.warning(f"⚠️ [MCP {self.server_id}] Processus terminé (code: {returncode})")
        self._emit_exit(returncode, f"processus terminé avec le code {returncode}")

    async def terminate(self) -> None:
        """SIGTERM, attente de `stop_grace_s`, puis SIGKILL."""
        self._terminating = True
        process = self._process
        if process is None:
            return

        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_grace_s)
            except asyncio.TimeoutError:
                logger.warning(f"⚠️ [MCP {self.server_id}] Pas d'arrêt après {self.stop_grace_s:g}s, kill")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

        tasks = [t for t in (self._stdout_task, self._stderr_task, self._wait_task) if t is not None]
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"🛑 [MCP {self.server_id}] Processus arrêté (code: {process.returncode})")


class InProcessBridgeTransport(Transport):
    """Serveur MCP natif: les requêtes sont exécutées comme tâches asyncio."""

    def __init__(self, server_id: str, bridge: Any, verbose: bool = False):
        super().__init__(server_id)
        self.bridge = bridge
        self.verbose = verbose
        self._started = False
        self._closed = False
        self._tasks: Set[asyncio.Task] = set()

    @property
    def is_alive(self) -> bool:
        return self._started and not self._closed

    async def start(self) -> None:
        if self._started:
            raise TransportError(f"Transport {self.server_id} déjà démarré", server_id=self.server_id)
        self._started = True
        logger.info(f"🧩 [MCP {self.server_id}] Serveur natif démarré ({type(self.bridge).__name__})")

    async def send(self, message: JsonRpcMessage) -> None:
        if not self.is_alive:
            raise TransportError(f"Serveur natif {self.server_id} non disponible", server_id=self.server_id)

        if self.verbose:
            logger.debug(f"[MCP {self.server_id}] → {message}")

        if isinstance(message, JsonRpcRequest):
            task = asyncio.create_task(self._dispatch(message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        elif isinstance(message, JsonRpcNotification):
            handler = getattr(self.bridge, "handle_notification", None)
            if callable(handler):
                try:
                    await maybe_await(handler(message.method, message.params))
                except NativeBridgeExit as e:
                    self._handle_bridge_exit(e)
                except Exception as e:
                    logger.warning(f"⚠️ [MCP {self.server_id}] Notification {message.method} en échec: {e}")
        else:
            logger.debug(f"[MCP {self.server_id}] Réponse ignorée par le serveur natif: {message}")

    async def _dispatch(self, request: JsonRpcRequest) -> None:
        try:
            result = await maybe_await(self.bridge.handle_request(request.method, request.params))
        except NativeBridgeExit as e:
            self._handle_bridge_exit(e)
            return
        except NativeBridgeError as e:
            response = JsonRpcResponse(id=request.id, error=make_error(e.code, e.message, e.data))
        except Exception as e:
            logger.error(f"❌ [MCP {self.server_id}] {request.method} en échec: {e}")
            response = JsonRpcResponse(id=request.id, error=make_error(JSONRPC_INTERNAL_ERROR, str(e)))
        else:
            response = JsonRpcResponse(id=request.id, result=result)

        if not self._closed:
            self._emit_message(response)

    def _handle_bridge_exit(self, exc: NativeBridgeExit) -> None:
        if self._closed:
            return
        self._closed = True
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()
        logger.warning(f"⚠️ [MCP {self.server_id}] Serveur natif terminé: {exc.reason}")
        self._emit_exit(exc.code, exc.reason)

    async def terminate(self) -> None:
        self._terminating = True
        self._closed = True
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        shutdown = getattr(self.bridge, "shutdown", None)
        if callable(shutdown):
            try:
                await maybe_await(shutdown())
            except Exception as e:
                logger.warning(f"⚠️ [MCP {self.server_id}] shutdown() en échec: {e}")
        logger.info(f"🛑 [MCP {self.server_id}] Serveur natif arrêté")
