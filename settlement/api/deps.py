"""
Request-scoped dependencies.
"""
from fastapi import HTTPException, Request, status

from settlement.context import ServiceContext
from settlement.utils import get_logger

logger = get_logger(__name__)


def get_context(request: Request) -> ServiceContext:
    """
    Service context dependency.
    The context is built by the application lifespan and kept on ``app.state``.

    Raises:
        HTTPException: 503 while the service is still starting up
    """
    context = getattr(request.app.state, "context", None)
    if context is None:
        logger.warning("Service context requested before startup completed", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return context


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID", "unknown")
