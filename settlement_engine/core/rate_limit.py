"""Rate limiting (slowapi) shared by the app and the admin routers."""
from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from settlement_engine.core.config import settings

# Admin actions that move money get a tighter limit than reads
ADMIN_READ_LIMIT = "60/minute"
ADMIN_ACTION_LIMIT = "10/minute"


def get_rate_limit_key(request: Request) -> str:
    """
    Rate limit key for a request.

    Uses the first X-Forwarded-For address when behind a proxy, else the
    client address.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


limiter = Limiter(
    key_func=get_rate_limit_key,
    default_limits=["60/minute"],
    storage_uri=settings.REDIS_URL if settings.RATE_LIMIT_STORAGE == "redis" else "memory://",
    enabled=settings.RATE_LIMIT_ENABLED
)
