"""
Codec JSON-RPC 2.0 sur flux d'octets (une ligne JSON par message).

Le décodeur est incrémental: il reçoit des fragments arbitraires du flux
(stdout d'un processus), conserve la dernière ligne incomplète et ne produit
que des messages complets. Un caractère UTF-8 coupé entre deux fragments est
reconstitué car le découpage se fait sur les octets, pas sur le texte.

Une ligne qui n'est pas du JSON valide, ou du JSON qui n'est pas un message
JSON-RPC, est loggée puis ignorée sans affecter les autres lignes.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from ...core.constants import JSONRPC_VERSION
from ...core.exceptions import ProtocolError

logger = logging.getLogger(__name__)


@dataclass
class JsonRpcRequest:
    """Requête JSON-RPC (attend une réponse)."""
    id: Union[int, str]
    method: str
    params: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id, "method": self.method}
        if self.params is not None:
            data["params"] = self.params
        return data


@dataclass
class JsonRpcNotification:
    """Notification JSON-RPC (pas d'id, pas de réponse)."""
    method: str
    params: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            data["params"] = self.params
        return data


@dataclass
class JsonRpcResponse:
    """Réponse JSON-RPC: exactement un de `result` / `error`."""
    id: Union[int, str, None]
    result: Any = None
    error: Optional[Dict[str, Any]] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            data["error"] = self.error
        else:
            data["result"] = self.result if self.result is not None else {}
        return data


JsonRpcMessage = Union[JsonRpcRequest, JsonRpcNotification, JsonRpcResponse]


def make_error(code: int, message: str, data: Any = None) -> Dict[str, Any]:
    """Construit un objet `error` JSON-RPC."""
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return error


def parse_message(obj: Any) -> JsonRpcMessage:
    """
    Classe un objet JSON décodé en requête, notification ou réponse.

    Raises:
        ProtocolError: si l'objet n'est pas un message JSON-RPC reconnaissable
    """
    if not isinstance(obj, dict):
        raise ProtocolError(f"Message JSON-RPC attendu (objet), reçu {type(obj).__name__}")

    method = obj.get("method")
    if method is not None:
        if not isinstance(method, str):
            raise ProtocolError("Champ 'method' non textuel")
        params = obj.get("params")
        if params is not None and not isinstance(params, (dict, list)):
            raise ProtocolError(f"Champ 'params' invalide pour {method}")
        if obj.get("id") is not None:
            return JsonRpcRequest(id=obj["id"], method=method, params=params)
        return JsonRpcNotification(method=method, params=params)

    if "id" in obj and ("result" in obj or "error" in obj):
        error = obj.get("error")
        if error is not None:
            if not isinstance(error, dict):
                error = {"code": None, "message": str(error)}
            return JsonRpcResponse(id=obj["id"], error=error)
        return JsonRpcResponse(id=obj["id"], result=obj.get("result"))

    raise ProtocolError("Objet JSON sans 'method' ni 'result'/'error'")


def encode(message: Union[JsonRpcMessage, Dict[str, Any]]) -> bytes:
    """Sérialise un message en une ligne UTF-8 compacte terminée par '\\n'."""
    payload = message if isinstance(message, dict) else message.to_dict()
    return (json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


class MessageDecoder:
    """
    Décodeur incrémental: `feed(chunk)` renvoie les messages complets.

    Une ligne dépassant `max_line_bytes` est journalisée puis abandonnée
    jusqu'au prochain '\\n'; le tampon ne dépasse jamais cette limite.
    """

    def __init__(self, label: str = "mcp", max_line_bytes: Optional[int] = None):
        self.label = label
        self.max_line_bytes = max_line_bytes
        self._buffer = bytearray()
        self._discarding = False
        self.dropped_lines = 0

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> List[JsonRpcMessage]:
        if not chunk:
            return []
        self._buffer.extend(chunk)

        messages: List[JsonRpcMessage] = []
        while True:
            newline = self._buffer.find(b"\n")
            if self._discarding:
                if newline < 0:
                    self._buffer.clear()
                    break
                del self._buffer[: newline + 1]
                self._discarding = False
                continue
            if newline < 0:
                if self._too_long(len(self._buffer)):
                    self._drop_oversized(len(self._buffer))
                    self._buffer.clear()
                    self._discarding = True
                break
            if self._too_long(newline):
                self._drop_oversized(newline)
                del self._buffer[: newline + 1]
                continue
            raw = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            message = self._decode_line(raw)
            if message is not None:
                messages.append(message)
        return messages

    def _too_long(self, size: int) -> bool:
        return self.max_line_bytes is not None and size > self.max_line_bytes

    def _drop_oversized(self, size: int) -> None:
        self.dropped_lines += 1
        logger.error(
            f"❌ [{self.label}] Ligne trop longue ignorée "
            f"(>{self.max_line_bytes} octets, {size} reçus sans fin de ligne)"
        )

    def _decode_line(self, raw: bytes) -> Optional[JsonRpcMessage]:
        text = raw.decode("utf-8", errors="replace").strip()
        if not text:
            return None
        try:
            obj = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning(f"⚠️ [{self.label}] Ligne non-JSON ignorée ({e.msg}): {text[:200]}")
            return None
        try:
            return parse_message(obj)
        except ProtocolError as e:
            logger.warning(f"⚠️ [{self.label}] Message JSON-RPC invalide ignoré: {e.message} ({text[:200]})")
            return None
