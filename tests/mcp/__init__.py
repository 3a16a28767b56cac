"""
Tests MCP - Scénarios d'intégration du superviseur.

Structure:
- test_supervisor_spawned.py: serveurs stdio (faux serveur tests/fixtures)
- test_supervisor_native.py: bridges natifs, keepalive, autostart
- test_api_routes.py: API HTTP /api/mcp et /health

Fixtures (tests/conftest.py):
- fake_config: définition spawned du faux serveur
- fast_settings: délais courts, keepalive désactivé
- supervisor: superviseur initialisé puis nettoyé
"""

import pytest
pytest.register_assert_rewrite("tests.mcp.test_supervisor_spawned")
pytest.register_assert_rewrite("tests.mcp.test_supervisor_native")
pytest.register_assert_rewrite("tests.mcp.test_api_routes")
