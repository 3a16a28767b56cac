"""
Serveur MCP natif `web-fetch`: récupération de pages web via httpx.

Outil exposé:
- fetch_page {url, maxLength}: télécharge une page et renvoie son texte

Restrictions:
- schémas http / https uniquement
- `allowed_domains` vide = tous les domaines; sinon domaine exact ou sous-domaine

Options (définition du serveur):
- timeout: secondes (défaut 15)
- userAgent: en-tête User-Agent
- maxLength: longueur maximale par défaut du texte renvoyé
"""
import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from ...core.constants import (
    JSONRPC_INVALID_PARAMS,
    JSONRPC_METHOD_NOT_FOUND,
    MCP_PROTOCOL_VERSION,
)
from ..mcp.bridge import NativeBridgeConfig, NativeBridgeError

logger = logging.getLogger(__name__)

WEB_FETCH_NATIVE_TYPE = "web-fetch"
DEFAULT_TIMEOUT_S = 15.0
DEFAULT_MAX_LENGTH = 20000
DEFAULT_USER_AGENT = "mcp-supervisor-web-fetch/1.0"

FETCH_PAGE_TOOL = {
    "name": "fetch_page",
    "description": "Télécharge une page web et renvoie son contenu textuel.",
    "inputSchema": {
        "type": "object",
        "properties": {
            "url": {"type": "string", "description": "URL http(s) de la page"},
            "maxLength": {"type": "integer", "description": "Nombre maximal de caractères renvoyés"},
        },
        "required": ["url"],
    },
}

_DROP_BLOCKS = re.compile(r"<(script|style|noscript)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAGS = re.compile(r"<[^>]+>")
_BLANKS = re.compile(r"[ \t\r\f\v]+")
_BLANK_LINES = re.compile(r"\n\s*\n+")


def html_to_text(html: str) -> str:
    """Conversion HTML -> texte brut (suffisante pour un LLM)."""
    text = _DROP_BLOCKS.sub(" ", html)
    text = re.sub(r"<br\s*/?>|</p\s*>|</div\s*>|</h[1-6]\s*>|</li\s*>", "\n", text, flags=re.IGNORECASE)
    text = _TAGS.sub(" ", text)
    for entity, char in (("&nbsp;", " "), ("&amp;", "&"), ("&lt;", "<"), ("&gt;", ">"), ("&quot;", '"'), ("&#39;", "'")):
        text = text.replace(entity, char)
    text = _BLANKS.sub(" ", text)
    text = _BLANK_LINES.sub("\n\n", text)
    return "\n".join(line.strip() for line in text.splitlines()).strip()


def is_domain_allowed(host: str, allowed_domains: List[str]) -> bool:
    if not allowed_domains:
        return True
    host = (host or "").lower().rstrip(".")
    for domain in allowed_domains:
        domain = domain.lower().strip().lstrip("*").lstrip(".")
        if domain and (host == domain or host.endswith("." + domain)):
            return True
    return False


def _text_result(text: str, is_error: bool = False) -> Dict[str, Any]:
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


class WebFetchNativeServer:
    """Bridge natif exposant l'outil fetch_page."""

    def __init__(self, config: NativeBridgeConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        options = config.options or {}
        self.timeout = float(options.get("timeout", DEFAULT_TIMEOUT_S))
        self.user_agent = str(options.get("userAgent", DEFAULT_USER_AGENT))
        self.max_length = int(options.get("maxLength", DEFAULT_MAX_LENGTH))
        self.allowed_domains = list(config.allowed_domains or [])
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                headers={"User-Agent": self.user_agent},
                follow_redirects=True,
                transport=self._transport,
            )
        return self._http_client

    async def handle_request(self, method: str, params: Optional[Dict[str, Any]]) -> Any:
        params = params or {}
        if method == "initialize":
            return {
                "protocolVersion": params.get("protocolVersion", MCP_PROTOCOL_VERSION),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": WEB_FETCH_NATIVE_TYPE, "version": "1.0.0"},
            }
        if method == "ping":
            return {}
        if method == "tools/list":
            return {"tools": [FETCH_PAGE_TOOL]}
        if method == "resources/list":
            return {"resources": []}
        if method == "prompts/list":
            return {"prompts": []}
        if method == "tools/call":
            return await self._call_tool(params.get("name"), params.get("arguments") or {})
        raise NativeBridgeError(f"Method not found: {method}", code=JSONRPC_METHOD_NOT_FOUND)

    def handle_notification(self, method: str, params: Optional[Dict[str, Any]]) -> None:
        logger.debug(f"[{WEB_FETCH_NATIVE_TYPE}] Notification: {method}")

    async def shutdown(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    async def _call_tool(self, name: Optional[str], arguments: Dict[str, Any]) -> Dict[str, Any]:
        if name != FETCH_PAGE_TOOL["name"]:
            raise NativeBridgeError(f"Outil inconnu: {name}", code=JSONRPC_INVALID_PARAMS)

        url = arguments.get("url")
        if not isinstance(url, str) or not url.strip():
            raise NativeBridgeError("Paramètre 'url' requis", code=JSONRPC_INVALID_PARAMS)

        max_length = arguments.get("maxLength", self.max_length)
        if not isinstance(max_length, int) or isinstance(max_length, bool) or max_length <= 0:
            max_length = self.max_length

        parsed = urlparse(url.strip())
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            return _text_result(f"URL non supportée: {url}", is_error=True)
        if not is_domain_allowed(parsed.hostname, self.allowed_domains):
            logger.warning(f"🚫 [{self.config.server_id}] Domaine refusé: {parsed.hostname}")
            return _text_result(f"Domaine non autorisé: {parsed.hostname}", is_error=True)

        client = await self._get_client()
        try:
            response = await client.get(url.strip())
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            return _text_result(f"HTTP {e.response.status_code} pour {url}", is_error=True)
        except httpx.HTTPError as e:
            return _text_result(f"Échec de récupération de {url}: {e}", is_error=True)

        content_type = response.headers.get("content-type", "")
        text = html_to_text(response.text) if "html" in content_type.lower() else response.text
        truncated = len(text) > max_length
        if truncated:
            text = text[:max_length]

        logger.info(f"🌐 [{self.config.server_id}] {url} -> {len(text)} caractères{' (tronqué)' if truncated else ''}")
        return _text_result(text)
