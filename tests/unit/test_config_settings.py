"""Tests unitaires: chargement config.toml et SupervisorSettings."""

import pytest

from mcp_supervisor.config import loader
from mcp_supervisor.config.settings import SupervisorSettings
from mcp_supervisor.core.constants import MAX_STREAM_LIMIT_BYTES, MIN_STREAM_LIMIT_BYTES
from mcp_supervisor.core.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def _clear_cache(monkeypatch):
    monkeypatch.setattr(loader, "_config_cache", None)
    monkeypatch.delenv("MCP_SUPERVISOR_CONFIG", raising=False)
    monkeypatch.delenv("MCP_VERBOSE", raising=False)
    yield


@pytest.mark.unit
def test_missing_toml_yields_defaults(tmp_path):
    config = loader.load_config(str(tmp_path / "absent.toml"))
    assert config == {}
    settings = loader.get_supervisor_settings(config)
    assert settings.keepalive_interval_s == 30.0
    assert settings.keepalive_max_failures == 2
    assert settings.protocol_version == "2024-11-05"


@pytest.mark.unit
def test_supervisor_table_and_env_expansion(tmp_path, monkeypatch):
    monkeypatch.setenv("MCP_TEST_HOME", str(tmp_path))
    path = tmp_path / "config.toml"
    path.write_text(
        '[supervisor]\n'
        'config_path = "${MCP_TEST_HOME}/mcp.json"\n'
        'keepalive_interval_s = 10\n'
        'keepalive_max_failures = 0\n'
        'stream_limit_bytes = 1\n',
        encoding="utf-8",
    )
    settings = loader.get_supervisor_settings(loader.load_config(str(path)))
    assert settings.config_path == f"{tmp_path}/mcp.json"
    assert settings.keepalive_interval_s == 10.0
    # Valeur invalide -> défaut
    assert settings.keepalive_max_failures == 2
    assert settings.stream_limit_bytes == MIN_STREAM_LIMIT_BYTES


@pytest.mark.unit
def test_env_overrides_take_priority(monkeypatch):
    monkeypatch.setenv("MCP_SUPERVISOR_CONFIG", "/tmp/other.json")
    monkeypatch.setenv("MCP_VERBOSE", "1")
    settings = loader.get_supervisor_settings({"supervisor": {"config_path": "/ignored.json", "verbose": False}})
    assert settings.config_path == "/tmp/other.json"
    assert settings.verbose is True


@pytest.mark.unit
def test_invalid_toml_raises(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[supervisor\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        loader.load_config(str(path))


@pytest.mark.unit
def test_stream_limit_is_clamped():
    assert SupervisorSettings.from_dict({"stream_limit_bytes": 10**12}).stream_limit_bytes == MAX_STREAM_LIMIT_BYTES
