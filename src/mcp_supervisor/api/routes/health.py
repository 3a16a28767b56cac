"""
Routes API pour le health check.
"""
from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Health check avec l'état du superviseur."""
    supervisor = request.app.state.supervisor
    status = supervisor.get_status()
    return {
        "status": "ok",
        "supervisor": status,
    }
