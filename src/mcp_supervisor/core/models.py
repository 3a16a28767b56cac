"""
Dataclasses métier du superviseur MCP.

- ServerDefinition: définition persistée d'un serveur (spawned ou native)
- KeepaliveState: compteurs du keepalive d'une instance
- ServerStatus: ligne renvoyée par list_installed_servers()
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from .constants import TRANSPORT_KINDS, TRANSPORT_NATIVE, TRANSPORT_SPAWNED
from .exceptions import InvalidServerDefinitionError


ServerState = Literal["starting", "ready", "error", "stopped"]

# Clés persistées (camelCase, compatibles avec les mcp-config.json existants)
_SPAWNED_KEYS = ("command", "args", "cwd", "env")
_NATIVE_KEYS = ("nativeType", "mode", "options", "allowedDomains")
_COMMON_KEYS = ("type", "enabled", "autostart", "autoRestart")
_KNOWN_KEYS = frozenset(_SPAWNED_KEYS + _NATIVE_KEYS + _COMMON_KEYS)

# Alias snake_case acceptés en entrée (API, tests)
_KEY_ALIASES = {
    "transport_kind": "type",
    "transportKind": "type",
    "auto_restart": "autoRestart",
    "native_type": "nativeType",
    "allowed_domains": "allowedDomains",
    "working_directory": "cwd",
}

_MERGED_MAPS = ("env", "options")
_REPLACED_LISTS = ("args", "allowedDomains")


def _canonical_key(key: str) -> str:
    return _KEY_ALIASES.get(key, key)


def _canonicalize(data: Dict[str, Any]) -> Dict[str, Any]:
    return {_canonical_key(k): v for k, v in data.items()}


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return bool(value)


@dataclass
class ServerDefinition:
    """Définition persistée d'un serveur MCP."""
    id: str
    transport_kind: str = TRANSPORT_SPAWNED
    enabled: bool = True
    autostart: bool = False
    auto_restart: bool = True
    # spawned
    command: Optional[str] = None
    args: Optional[List[str]] = None
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    # native
    native_type: Optional[str] = None
    mode: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)
    allowed_domains: List[str] = field(default_factory=list)
    # clés inconnues conservées telles quelles lors de la réécriture
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_native(self) -> bool:
        return self.transport_kind == TRANSPORT_NATIVE

    @classmethod
    def from_dict(cls, server_id: str, data: Dict[str, Any]) -> "ServerDefinition":
        """
        Crée une définition depuis sa forme persistée (ou une requête d'installation).

        Les flags absents prennent les valeurs par défaut d'installation:
        enabled=True, autostart=False, autoRestart=True (spawned) / False (native).

        Raises:
            InvalidServerDefinitionError: si `data` n'est pas un objet
        """
        if not isinstance(data, dict):
            raise InvalidServerDefinitionError(
                f"Configuration invalide pour {server_id}: objet attendu",
                server_id=server_id,
            )
        data = _canonicalize(data)
        kind = data.get("type") or TRANSPORT_SPAWNED

        env = data.get("env")
        if isinstance(env, dict):
            env = {str(k): str(v) for k, v in env.items() if v is not None}

        return cls(
            id=server_id,
            transport_kind=kind,
            enabled=_as_bool(data.get("enabled"), True),
            autostart=_as_bool(data.get("autostart"), False),
            auto_restart=_as_bool(data.get("autoRestart"), kind != TRANSPORT_NATIVE),
            command=data.get("command"),
            args=list(data["args"]) if isinstance(data.get("args"), (list, tuple)) else data.get("args"),
            cwd=data.get("cwd") or None,
            env=env if env is not None else {},
            native_type=data.get("nativeType"),
            mode=data.get("mode"),
            options=data.get("options") if data.get("options") is not None else {},
            allowed_domains=data.get("allowedDomains") if data.get("allowedDomains") is not None else [],
            extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )

    def to_dict(self) -> Dict[str, Any]:
        """Forme persistée: seuls les champs du type de transport sont écrits."""
        data: Dict[str, Any] = {"type": self.transport_kind}
        if self.is_native:
            if self.native_type is not None:
                data["nativeType"] = self.native_type
            if self.mode is not None:
                data["mode"] = self.mode
            data["options"] = dict(self.options)
            data["allowedDomains"] = list(self.allowed_domains)
        else:
            data["command"] = self.command
            data["args"] = list(self.args) if self.args is not None else None
            if self.cwd:
                data["cwd"] = self.cwd
            data["env"] = dict(self.env)
        data["enabled"] = self.enabled
        data["autostart"] = self.autostart
        data["autoRestart"] = self.auto_restart
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    def _full_dict(self) -> Dict[str, Any]:
        # Champs des deux types: une mise à jour peut changer de transport
        data = dict(self.extra)
        data.update({
            "type": self.transport_kind,
            "command": self.command,
            "args": list(self.args) if self.args is not None else None,
            "cwd": self.cwd,
            "env": dict(self.env),
            "nativeType": self.native_type,
            "mode": self.mode,
            "options": dict(self.options),
            "allowedDomains": list(self.allowed_domains),
            "enabled": self.enabled,
            "autostart": self.autostart,
            "autoRestart": self.auto_restart,
        })
        return data

    def validate(self) -> "ServerDefinition":
        """
        Vérifie les champs requis pour le type de transport.

        Returns:
            self (pour chaînage)

        Raises:
            InvalidServerDefinitionError: au premier champ invalide
        """
        if not isinstance(self.id, str) or not self.id.strip():
            raise InvalidServerDefinitionError("Identifiant de serveur vide", field_name="id")

        if self.transport_kind not in TRANSPORT_KINDS:
            raise InvalidServerDefinitionError(
                f"Type de transport inconnu: {self.transport_kind!r} (attendu: {', '.join(TRANSPORT_KINDS)})",
                server_id=self.id,
                field_name="type",
            )

        if self.is_native:
            self._validate_native()
        else:
            self._validate_spawned()
        return self

    def _validate_spawned(self) -> None:
        if not isinstance(self.command, str) or not self.command.strip():
            raise InvalidServerDefinitionError(
                "Configuration invalide: command et args sont requis (command manquant)",
                server_id=self.id,
                field_name="command",
            )
        if self.args is None:
            raise InvalidServerDefinitionError(
                "Configuration invalide: command et args sont requis (args manquant)",
                server_id=self.id,
                field_name="args",
            )
        if not isinstance(self.args, list) or not all(isinstance(a, str) for a in self.args):
            raise InvalidServerDefinitionError(
                "args doit être une liste de chaînes", server_id=self.id, field_name="args"
            )
        if self.cwd is not None and not isinstance(self.cwd, str):
            raise InvalidServerDefinitionError("cwd doit être une chaîne", server_id=self.id, field_name="cwd")
        if not isinstance(self.env, dict):
            raise InvalidServerDefinitionError("env doit être un objet", server_id=self.id, field_name="env")

    def _validate_native(self) -> None:
        if self.native_type is not None and (not isinstance(self.native_type, str) or not self.native_type.strip()):
            raise InvalidServerDefinitionError(
                "nativeType doit être une chaîne non vide", server_id=self.id, field_name="nativeType"
            )
        if not isinstance(self.options, dict):
            raise InvalidServerDefinitionError("options doit être un objet", server_id=self.id, field_name="options")
        if not isinstance(self.allowed_domains, list) or not all(isinstance(d, str) for d in self.allowed_domains):
            raise InvalidServerDefinitionError(
                "allowedDomains doit être une liste de chaînes", server_id=self.id, field_name="allowedDomains"
            )

    def merged(self, partial: Dict[str, Any]) -> "ServerDefinition":
        """
        Fusionne une mise à jour partielle dans une copie de la définition.

        Règles:
        - env / options: fusion clé par clé, une valeur None supprime la clé
        - args / allowedDomains: remplacés seulement s'ils sont fournis
        - autres champs: écrasés seulement s'ils sont fournis
        - `id` n'est jamais modifié

        Returns:
            Nouvelle définition validée

        Raises:
            InvalidServerDefinitionError: si le résultat est invalide
        """
        if not isinstance(partial, dict):
            raise InvalidServerDefinitionError("Mise à jour invalide: objet attendu", server_id=self.id)

        data = self._full_dict()
        for raw_key, value in partial.items():
            key = _canonical_key(raw_key)
            if key == "id":
                continue
            if key in _MERGED_MAPS:
                if value is None:
                    continue
                if not isinstance(value, dict):
                    raise InvalidServerDefinitionError(
                        f"{key} doit être un objet", server_id=self.id, field_name=key
                    )
                current = dict(data.get(key) or {})
                for map_key, map_value in value.items():
                    if map_value is None:
                        current.pop(map_key, None)
                    else:
                        current[map_key] = map_value
                data[key] = current
            elif key in _REPLACED_LISTS:
                if value is None:
                    continue
                data[key] = value
            else:
                data[key] = value

        return ServerDefinition.from_dict(self.id, data).validate()


@dataclass
class KeepaliveState:
    """Compteurs keepalive d'une instance (timestamps en secondes monotones)."""
    last_success_at: Optional[float] = None
    consecutive_failures: int = 0
    in_flight: bool = False
    last_refresh_at: Optional[float] = None


@dataclass
class ServerStatus:
    """État d'un serveur installé, pour list_installed_servers()."""
    id: str
    config: Dict[str, Any]
    running: bool
    state: str
    tools_count: int = 0
    resources_count: int = 0
    prompts_count: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convertit le statut en dictionnaire."""
        return {
            "id": self.id,
            "config": self.config,
            "running": self.running,
            "state": self.state,
            "tools_count": self.tools_count,
            "resources_count": self.resources_count,
            "prompts_count": self.prompts_count,
            "last_error": self.last_error,
        }
