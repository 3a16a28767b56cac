"""
Conversion des erreurs du superviseur en réponses HTTP.

    ServerNotFoundError        -> 404
    autres ConfigurationError  -> 400
    ServerUnavailableError     -> 409
    ServerStoppedError         -> 409
    RequestTimeoutError        -> 504
    RemoteError/TransportError -> 502
"""
import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from ..core.exceptions import (
    ConfigurationError,
    RemoteError,
    RequestTimeoutError,
    ServerNotFoundError,
    ServerStoppedError,
    ServerUnavailableError,
    SupervisorError,
    TransportError,
)

logger = logging.getLogger(__name__)


def status_for_error(exc: SupervisorError) -> int:
    if isinstance(exc, ServerNotFoundError):
        return 404
    if isinstance(exc, ConfigurationError):
        return 400
    if isinstance(exc, (ServerUnavailableError, ServerStoppedError)):
        return 409
    if isinstance(exc, RequestTimeoutError):
        return 504
    if isinstance(exc, (RemoteError, TransportError)):
        return 502
    return 500


async def supervisor_error_handler(request: Request, exc: SupervisorError) -> JSONResponse:
    status = status_for_error(exc)
    if status >= 500:
        logger.warning(f"⚠️ {request.method} {request.url.path} -> {status}: {exc}")
    return JSONResponse(content={"success": False, "error": exc.to_dict()}, status_code=status)
