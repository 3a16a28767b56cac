"""
Exceptions personnalisées pour le superviseur MCP.

Taxonomie:
- configuration: définition invalide, doublon, serveur inconnu ou désactivé
- transport: échec de spawn, flux interrompu
- protocole: ligne JSON-RPC invalide (loggée puis ignorée)
- timeout: aucune réponse dans le délai
- disponibilité: serveur arrêté ou pas encore prêt
"""


class SupervisorError(Exception):
    """Exception de base pour toutes les erreurs du superviseur."""

    def __init__(self, message: str, code: str = None, details: dict = None):
        super().__init__(message)
        self.message = message
        self.code = code or "unknown_error"
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"[{self.code}] {self.message} - Détails: {self.details}"
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


# ============================================================================
# Erreurs de configuration
# ============================================================================

class ConfigurationError(SupervisorError):
    """Erreur de configuration (fichier illisible, valeur invalide)."""

    def __init__(self, message: str, config_key: str = None, code: str = "config_error"):
        super().__init__(
            message=message,
            code=code,
            details={"key": config_key} if config_key else {}
        )


class InvalidServerDefinitionError(ConfigurationError):
    """Définition de serveur invalide (champ requis manquant ou mal typé)."""

    def __init__(self, message: str, server_id: str = None, field_name: str = None):
        super().__init__(message=message, config_key=field_name, code="invalid_definition")
        if server_id:
            self.details["server_id"] = server_id


class ServerAlreadyInstalledError(ConfigurationError):
    """Un serveur avec le même identifiant est déjà installé."""

    def __init__(self, server_id: str):
        super().__init__(
            message=f"MCP {server_id} est déjà installé",
            code="already_installed",
        )
        self.details["server_id"] = server_id


class ServerNotFoundError(ConfigurationError):
    """Aucune définition pour cet identifiant."""

    def __init__(self, server_id: str):
        super().__init__(
            message=f"MCP {server_id} introuvable",
            code="server_not_found",
        )
        self.details["server_id"] = server_id


class ServerDisabledError(ConfigurationError):
    """Le serveur existe mais est désactivé."""

    def __init__(self, server_id: str):
        super().__init__(
            message=f"MCP {server_id} est désactivé",
            code="server_disabled",
        )
        self.details["server_id"] = server_id


# ============================================================================
# Erreurs de disponibilité
# ============================================================================

class ServerUnavailableError(SupervisorError):
    """Le serveur ne peut pas traiter de requête dans son état actuel."""

    def __init__(self, message: str, server_id: str, state: str = None, code: str = "server_unavailable"):
        details = {"server_id": server_id}
        if state:
            details["state"] = state
        super().__init__(message=message, code=code, details=details)
        self.server_id = server_id
        self.state = state


class ServerNotRunningError(ServerUnavailableError):
    """Aucune instance en cours d'exécution."""

    def __init__(self, server_id: str):
        super().__init__(
            message=f"MCP {server_id} n'est pas en cours d'exécution",
            server_id=server_id,
            state="stopped",
            code="server_not_running",
        )


class ServerNotReadyError(ServerUnavailableError):
    """Instance présente mais handshake non terminé (ou en erreur)."""

    def __init__(self, server_id: str, state: str):
        super().__init__(
            message=f"MCP {server_id} n'est pas prêt (état: {state})",
            server_id=server_id,
            state=state,
            code="server_not_ready",
        )


class ServerStoppedError(SupervisorError):
    """Requête annulée parce que l'instance a été arrêtée."""

    def __init__(self, server_id: str, reason: str = None):
        super().__init__(
            message=f"Serveur MCP {server_id} arrêté" + (f": {reason}" if reason else ""),
            code="server_stopped",
            details={"server_id": server_id},
        )


# ============================================================================
# Erreurs de transport / protocole
# ============================================================================

class TransportError(SupervisorError):
    """Erreur de transport (spawn, écriture, sortie inattendue)."""

    def __init__(self, message: str, server_id: str = None, exit_code: int = None):
        details = {}
        if server_id:
            details["server_id"] = server_id
        if exit_code is not None:
            details["exit_code"] = exit_code
        super().__init__(message=message, code="transport_error", details=details)
        self.exit_code = exit_code


class ProtocolError(SupervisorError):
    """Message reçu qui n'est pas un objet JSON-RPC 2.0 valide."""

    def __init__(self, message: str, raw: str = None):
        super().__init__(
            message=message,
            code="protocol_error",
            details={"preview": raw[:200]} if raw else {},
        )


class RequestTimeoutError(SupervisorError):
    """Aucune réponse reçue avant l'échéance."""

    def __init__(self, server_id: str, method: str, timeout_s: float):
        super().__init__(
            message=f"Timeout en attente de {method} sur {server_id} après {timeout_s:g}s",
            code="timeout",
            details={"server_id": server_id, "method": method, "timeout_s": timeout_s},
        )
        self.method = method
        self.timeout_s = timeout_s


class RemoteError(SupervisorError):
    """Le serveur a répondu avec un objet `error` JSON-RPC."""

    def __init__(self, server_id: str, method: str, error: object):
        if isinstance(error, dict):
            rpc_code = error.get("code")
            rpc_message = error.get("message") or str(error)
            data = error.get("data")
        else:
            rpc_code, rpc_message, data = None, str(error), None
        details = {"server_id": server_id, "method": method, "rpc_code": rpc_code}
        if data is not None:
            details["data"] = data
        super().__init__(message=f"MCP Error: {rpc_message}", code="remote_error", details=details)
        self.rpc_code = rpc_code
        self.rpc_message = rpc_message
        self.data = data
