"""
Persistance des définitions de serveurs (mcp-config.json).

Format:
    {"mcpServers": {"<id>": {...}}, "version": "1.0.0", "verbose": false}

- Fichier absent: mapping vide créé et écrit
- Fichier illisible ou corrompu: ConfigurationError
- Migrations appliquées à chaque chargement (sans condition de version);
  toute modification entraîne une réécriture
- Écritures sérialisées par un asyncio.Lock (lecture-fusion-écriture)
"""
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiofiles

from ...core.constants import (
    CLI_MCP_SERVER_NAME,
    CONFIG_FORMAT_VERSION,
    DEFAULT_POWERSHELL_FLAGS,
    TRANSPORT_NATIVE,
    TRANSPORT_SPAWNED,
)
from ...core.exceptions import (
    ConfigurationError,
    ServerAlreadyInstalledError,
    ServerNotFoundError,
)
from ...core.models import ServerDefinition

logger = logging.getLogger(__name__)

# migration(server_id, définition brute) -> True si modifiée
Migration = Callable[[str, Dict[str, Any]], bool]


# ============================================================================
# Migrations
# ============================================================================

def is_cli_mcp_server(server_id: str, raw: Dict[str, Any]) -> bool:
    """Identifiant `cli-mcp-server`, ou commande / argument qui le lance (uvx cli-mcp-server)."""
    if server_id == CLI_MCP_SERVER_NAME:
        return True
    parts = [raw.get("command")] + list(raw.get("args") or [])
    return any(isinstance(p, str) and CLI_MCP_SERVER_NAME in p for p in parts)


def migrate_cwd_from_allowed_dir(server_id: str, raw: Dict[str, Any]) -> bool:
    """Serveur CLI spawned sans cwd mais avec env.ALLOWED_DIR: cwd = ALLOWED_DIR."""
    if not is_cli_mcp_server(server_id, raw):
        return False
    if raw.get("type", TRANSPORT_SPAWNED) != TRANSPORT_SPAWNED or raw.get("cwd"):
        return False
    env = raw.get("env")
    if not isinstance(env, dict):
        return False
    allowed_dir = env.get("ALLOWED_DIR")
    if not isinstance(allowed_dir, str) or not allowed_dir.strip():
        return False
    raw["cwd"] = allowed_dir
    logger.info(f"🔧 [MCP {server_id}] Migration: cwd défini à {allowed_dir}")
    return True


def migrate_powershell_flags(server_id: str, raw: Dict[str, Any]) -> bool:
    """Serveur CLI, env.ALLOWED_FLAGS (hors 'all' et vide): ajoute les flags PowerShell manquants."""
    if not is_cli_mcp_server(server_id, raw):
        return False
    env = raw.get("env")
    if not isinstance(env, dict):
        return False
    current = env.get("ALLOWED_FLAGS")
    if not isinstance(current, str) or not current.strip() or current.strip().lower() == "all":
        return False

    flags = [f.strip() for f in current.split(",") if f.strip()]
    existing_lower = {f.lower() for f in flags}
    missing = [f for f in DEFAULT_POWERSHELL_FLAGS if f.lower() not in existing_lower]
    if not missing:
        return False

    env["ALLOWED_FLAGS"] = ",".join(flags + missing)
    logger.info(f"🔧 [MCP {server_id}] Migration: flags PowerShell ajoutés à ALLOWED_FLAGS ({', '.join(missing)})")
    return True


def migrate_missing_defaults(server_id: str, raw: Dict[str, Any]) -> bool:
    """Complète type / enabled / autostart / autoRestart absents."""
    changed = False
    if not raw.get("type"):
        raw["type"] = TRANSPORT_SPAWNED
        changed = True
    defaults = {
        "enabled": True,
        "autostart": False,
        "autoRestart": raw["type"] != TRANSPORT_NATIVE,
    }
    for key, value in defaults.items():
        if key not in raw:
            raw[key] = value
            changed = True
    return changed


MIGRATIONS: List[Migration] = [
    migrate_cwd_from_allowed_dir,
    migrate_powershell_flags,
    migrate_missing_defaults,
]


def run_migrations(servers: Dict[str, Any], migrations: List[Migration] = None) -> bool:
    """
    Applique les migrations sur les définitions brutes (modifiées sur place).

    Une migration qui lève une exception est loggée puis ignorée.

    Returns:
        True si au moins une définition a été modifiée
    """
    changed = False
    for migration in migrations if migrations is not None else MIGRATIONS:
        for server_id, raw in servers.items():
            if not isinstance(raw, dict):
                continue
            try:
                if migration(server_id, raw):
                    changed = True
            except Exception as e:
                logger.warning(f"⚠️ [MCP {server_id}] Migration {migration.__name__} ignorée: {e}")
    return changed


# ============================================================================
# Store
# ============================================================================

class ConfigurationStore:
    """Définitions de serveurs persistées dans un fichier JSON."""

    def __init__(self, path, migrations: List[Migration] = None):
        self.path = Path(path)
        self.version = CONFIG_FORMAT_VERSION
        self.verbose = False
        self._migrations = migrations
        self._servers: Dict[str, ServerDefinition] = {}
        self._lock = asyncio.Lock()
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self) -> Dict[str, ServerDefinition]:
        """
        Charge (ou crée) le fichier de configuration.

        Raises:
            ConfigurationError: fichier illisible ou JSON invalide
        """
        async with self._lock:
            if not self.path.exists():
                logger.info(f"📝 Configuration MCP absente, création de {self.path}")
                self._servers = {}
                await self._write()
                self._loaded = True
                return dict(self._servers)

            try:
                async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                    content = await f.read()
                data = json.loads(content) if content.strip() else {}
            except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
                raise ConfigurationError(
                    message=f"Configuration MCP illisible: {self.path} ({e})",
                    config_key="config_path",
                ) from e

            if not isinstance(data, dict):
                raise ConfigurationError(
                    message=f"Configuration MCP invalide: objet JSON attendu dans {self.path}",
                    config_key="config_path",
                )

            raw_servers = data.get("mcpServers")
            if raw_servers is None:
                raw_servers = {}
            if not isinstance(raw_servers, dict):
                raise ConfigurationError(
                    message="Configuration MCP invalide: 'mcpServers' doit être un objet",
                    config_key="mcpServers",
                )

            changed = run_migrations(raw_servers, self._migrations)

            servers: Dict[str, ServerDefinition] = {}
            for server_id, raw in raw_servers.items():
                if not isinstance(raw, dict):
                    logger.warning(f"⚠️ [MCP {server_id}] Définition ignorée (objet attendu)")
                    continue
                servers[server_id] = ServerDefinition.from_dict(server_id, raw)

            self._servers = servers
            self.version = data.get("version") or CONFIG_FORMAT_VERSION
            self.verbose = bool(data.get("verbose", False))
            self._loaded = True
            logger.info(f"📋 Configuration MCP chargée: {len(servers)} serveur(s)")

            if changed:
                await self._write()
            return dict(self._servers)

    def get(self, server_id: str) -> Optional[ServerDefinition]:
        return self._servers.get(server_id)

    def require(self, server_id: str) -> ServerDefinition:
        definition = self._servers.get(server_id)
        if definition is None:
            raise ServerNotFoundError(server_id)
        return definition

    def all(self) -> Dict[str, ServerDefinition]:
        return dict(self._servers)

    def __contains__(self, server_id: object) -> bool:
        return server_id in self._servers

    def __len__(self) -> int:
        return len(self._servers)

    async def add(self, definition: ServerDefinition) -> ServerDefinition:
        """
        Ajoute une définition validée.

        Raises:
            ServerAlreadyInstalledError: identifiant déjà utilisé
            InvalidServerDefinitionError: définition invalide
        """
        async with self._lock:
            if definition.id in self._servers:
                raise ServerAlreadyInstalledError(definition.id)
            definition.validate()
            self._servers[definition.id] = definition
            try:
                await self._write()
            except ConfigurationError:
                del self._servers[definition.id]
                raise
            return definition

    async def update(self, server_id: str, partial: Dict[str, Any]) -> ServerDefinition:
        """Fusionne une mise à jour partielle (voir ServerDefinition.merged) et persiste."""
        async with self._lock:
            current = self.require(server_id)
            updated = current.merged(partial)
            self._servers[server_id] = updated
            try:
                await self._write()
            except ConfigurationError:
                self._servers[server_id] = current
                raise
            return updated

    async def remove(self, server_id: str) -> ServerDefinition:
        async with self._lock:
            removed = self._servers.pop(server_id, None)
            if removed is None:
                raise ServerNotFoundError(server_id)
            try:
                await self._write()
            except ConfigurationError:
                self._servers[server_id] = removed
                raise
            return removed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mcpServers": {server_id: d.to_dict() for server_id, d in self._servers.items()},
            "version": self.version,
            "verbose": self.verbose,
        }

    async def _write(self) -> None:
        # Écriture atomique: fichier temporaire puis remplacement
        content = json.dumps(self.to_dict(), ensure_ascii=False, indent=2)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(content + "\n")
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise ConfigurationError(
                message=f"Écriture de la configuration MCP impossible: {self.path} ({e})",
                config_key="config_path",
            ) from e
        logger.debug(f"💾 Configuration MCP sauvegardée ({len(self._servers)} serveur(s))")
