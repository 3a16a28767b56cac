"""
MCP Supervisor: supervision de serveurs d'outils MCP (JSON-RPC 2.0).
"""

__version__ = "1.0.0"
