"""src.mcp_supervisor.config.loader

Chargement de la configuration TOML.

Note d'architecture:
- Le package `config/` est consommé par la couche Features.
- Il ne doit donc pas dépendre de `features/*` afin d'éviter les imports circulaires.
- Un config.toml absent n'est pas une erreur: les valeurs par défaut s'appliquent.
"""
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

from ..core.exceptions import ConfigurationError
from .settings import SupervisorSettings

logger = logging.getLogger(__name__)

# Cache global de configuration
_config_cache: Optional[Dict[str, Any]] = None

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")
_TRUTHY = {"1", "true", "yes", "on"}


def _expand_env_vars(obj: Any) -> Any:
    """
    Récursivement étend les variables d'environnement ${VAR} dans la config.

    Args:
        obj: Valeur à traiter (str, dict, list)

    Returns:
        Valeur avec variables d'environnement expansées
    """
    if isinstance(obj, str):
        # Variable inconnue: laissée telle quelle
        return _ENV_VAR_PATTERN.sub(lambda m: os.environ.get(m.group(1), m.group(0)), obj)
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(item) for item in obj]
    return obj


def _default_config_toml() -> str:
    # loader.py -> config -> mcp_supervisor -> src -> projet
    current_file = os.path.abspath(__file__)
    project_dir = os.path.dirname(os.path.dirname(os.path.dirname(os.path.dirname(current_file))))
    return os.path.join(project_dir, "config.toml")


def load_config(config_path: str = None) -> Dict[str, Any]:
    """
    Charge la configuration depuis config.toml.

    Args:
        config_path: Chemin vers le fichier config (optionnel)

    Returns:
        Dictionnaire de configuration (vide si le fichier n'existe pas)

    Raises:
        ConfigurationError: Si le fichier est invalide
    """
    global _config_cache

    if _config_cache is not None:
        return _config_cache

    path = Path(config_path or _default_config_toml())
    if not path.exists():
        logger.debug(f"config.toml absent ({path}), valeurs par défaut")
        _config_cache = {}
        return _config_cache

    try:
        import tomllib
    except ImportError:
        import tomli as tomllib

    try:
        with open(path, "rb") as f:
            raw_config = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(
            message=f"Fichier de configuration invalide: {path} ({e})",
            config_key="config_path",
        ) from e

    _config_cache = _expand_env_vars(raw_config)
    return _config_cache


def reload_config(config_path: str = None) -> Dict[str, Any]:
    """
    Recharge la configuration depuis le fichier.

    Returns:
        Nouvelle configuration chargée
    """
    global _config_cache
    _config_cache = None
    return load_config(config_path)


def get_config() -> Dict[str, Any]:
    """Retourne la configuration en cache."""
    if _config_cache is None:
        return load_config()
    return _config_cache


def get_supervisor_settings(config: Dict[str, Any] = None) -> SupervisorSettings:
    """
    Construit les réglages du superviseur depuis la table `[supervisor]`.

    Priorité: env > toml > défauts.
    - MCP_SUPERVISOR_CONFIG: chemin du fichier mcp-config.json
    - MCP_VERBOSE: active le log des payloads
    """
    if config is None:
        config = get_config()

    section = config.get("supervisor")
    settings = SupervisorSettings.from_dict(section if isinstance(section, dict) else {})

    env_path = os.environ.get("MCP_SUPERVISOR_CONFIG", "").strip()
    if env_path:
        settings.config_path = os.path.expanduser(env_path)

    env_verbose = os.environ.get("MCP_VERBOSE", "").strip().lower()
    if env_verbose:
        settings.verbose = env_verbose in _TRUTHY

    return settings
