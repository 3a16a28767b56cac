"""
API HTTP de contrôle du superviseur MCP.
"""

from .router import api_router
from .errors import status_for_error, supervisor_error_handler

__all__ = [
    "api_router",
    "status_for_error",
    "supervisor_error_handler",
]
