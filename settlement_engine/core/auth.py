"""
Admin authentication for the settlement endpoints.

Admin routes require the X-Admin-Token header to match ADMIN_TOKEN.
With no ADMIN_TOKEN configured the admin surface is disabled (501).
"""
import hmac
from typing import Optional

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from settlement_engine.core.config import settings
from settlement_engine.core.logging import get_logger

logger = get_logger(__name__)

ADMIN_TOKEN_HEADER = "X-Admin-Token"

admin_token_header = APIKeyHeader(name=ADMIN_TOKEN_HEADER, auto_error=False)


def validate_admin_token(admin_token: Optional[str] = None) -> bool:
    """
    Validate an admin token.

    Raises:
        HTTPException: 501 when admin is not configured, 401 when no token
            was sent, 403 when it does not match
    """
    if not settings.ADMIN_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Admin functionality not enabled. Set ADMIN_TOKEN environment variable."
        )

    if not admin_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Admin token missing. Provide {ADMIN_TOKEN_HEADER} header."
        )

    if not hmac.compare_digest(admin_token, settings.ADMIN_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin token."
        )

    return True


def require_admin(request: Request, admin_token: Optional[str] = Security(admin_token_header)) -> str:
    """
    Dependency guarding admin routes.

    Usage:
        router = APIRouter(dependencies=[Depends(require_admin)])
    """
    try:
        validate_admin_token(admin_token)
    except HTTPException as e:
        if e.status_code == status.HTTP_403_FORBIDDEN:
            client = request.client.host if request.client else "unknown"
            logger.warning(f"Invalid admin token attempt from {client} on {request.url.path}")
        raise
    return admin_token
