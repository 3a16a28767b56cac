"""
Router principal de l'API.
"""
from fastapi import APIRouter

from .routes import servers, health

# Router principal
api_router = APIRouter()

api_router.include_router(servers.router, prefix="/api/mcp", tags=["mcp"])
api_router.include_router(health.router, prefix="", tags=["health"])
