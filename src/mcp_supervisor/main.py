"""
MCP Supervisor - Application FastAPI Factory.
API HTTP de contrôle des serveurs MCP (installation, cycle de vie, appels d'outils).
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.errors import supervisor_error_handler
from .api.router import api_router
from .config.loader import get_supervisor_settings
from .config.settings import SupervisorSettings
from .core.exceptions import SupervisorError
from .features.mcp.supervisor import Supervisor

logger = logging.getLogger(__name__)


def create_app(supervisor: Optional[Supervisor] = None, settings: Optional[SupervisorSettings] = None) -> FastAPI:
    """
    Factory pour créer l'application FastAPI.

    Args:
        supervisor: superviseur à exposer (créé depuis la configuration sinon)
        settings: réglages utilisés si `supervisor` n'est pas fourni

    Returns:
        Instance configurée de FastAPI
    """
    if supervisor is None:
        supervisor = Supervisor(settings=settings or get_supervisor_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Gestion du cycle de vie de l'application."""
        await _startup(app)
        yield
        await _shutdown(app)

    app = FastAPI(
        title="MCP Supervisor",
        description="Supervision de serveurs MCP (JSON-RPC 2.0) spawned et natifs",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.supervisor = supervisor

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(SupervisorError, supervisor_error_handler)
    app.include_router(api_router)
    return app


async def _startup(app: FastAPI):
    """Démarrage: chargement de la configuration et autostart."""
    supervisor: Supervisor = app.state.supervisor
    result = await supervisor.initialize()
    logger.info(
        f"🚀 Superviseur MCP prêt: {result['servers']} serveur(s), "
        f"{len(result['autostarted'])} démarré(s), {len(result['failed'])} en échec"
    )


async def _shutdown(app: FastAPI):
    """Arrêt de l'application."""
    logger.info("👋 Arrêt du superviseur MCP...")
    await app.state.supervisor.cleanup()
    logger.info("✅ Superviseur arrêté proprement")


# Crée l'application pour uvicorn
app = create_app()
