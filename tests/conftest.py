"""
Configuration des tests pytest.
"""
import os
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Ajoute src au path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from mcp_supervisor.config.settings import SupervisorSettings  # noqa: E402
from mcp_supervisor.features.mcp.store import ConfigurationStore  # noqa: E402
from mcp_supervisor.features.mcp.supervisor import Supervisor  # noqa: E402

FAKE_SERVER = str(Path(__file__).parent / "fixtures" / "fake_mcp_server_stdio.py")


def pytest_configure(config):
    """Marqueurs utilisés par la suite de tests."""
    config.addinivalue_line("markers", "asyncio: marque un test comme asynchrone")
    config.addinivalue_line("markers", "unit: test unitaire sans processus externe")


def fake_server_config(*flags: str, **overrides) -> dict:
    """Définition spawned lançant le faux serveur MCP avec l'interpréteur courant."""
    config = {
        "type": "spawned",
        "command": sys.executable,
        "args": [FAKE_SERVER, *flags],
    }
    config.update(overrides)
    return config


@pytest.fixture
def fake_config():
    """Fabrique de définitions pour le faux serveur stdio."""
    return fake_server_config


@pytest.fixture
def fast_settings(tmp_path) -> SupervisorSettings:
    """Réglages courts pour les tests (keepalive désactivé par défaut)."""
    return SupervisorSettings(
        config_path=str(tmp_path / "mcp-config.json"),
        keepalive_enabled=False,
        keepalive_interval_s=0.05,
        keepalive_timeout_s=0.1,
        restart_delay_s=0.05,
        stop_grace_s=1.0,
        request_timeout_s=5.0,
        tool_call_timeout_s=5.0,
        initialize_timeout_s=5.0,
    )


@pytest.fixture
def store(fast_settings) -> ConfigurationStore:
    return ConfigurationStore(fast_settings.config_path)


@pytest_asyncio.fixture
async def supervisor(fast_settings, store):
    """Superviseur isolé (fichier de config temporaire), nettoyé en fin de test."""
    sup = Supervisor(store=store, settings=fast_settings)
    await sup.initialize()
    yield sup
    await sup.cleanup()
