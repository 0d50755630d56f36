"""Authentication dependency and per-user rate limiting

Identity lives in an external provider; this service only resolves the
shared ``session_id`` cookie to a local user id stored in Redis.
"""
import logging
from typing import Optional

from fastapi import HTTPException, Request

from app.core.config import settings
from app.core.errors import RateLimited
from app.db.redis import get_session, increment_rate_limit

security_logger = logging.getLogger("security")


def require_auth(request: Request) -> int:
    """Dependency: Require authentication, return user_id"""
    session_id = request.cookies.get("session_id")

    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    user_id = get_session(session_id)
    if not user_id:
        raise HTTPException(401, "Session expired. Please log in again.")

    return user_id


def get_client_identifier(request: Request, user_id: Optional[int] = None) -> str:
    """Get a unique identifier for rate limiting"""
    if user_id:
        return f"user:{user_id}"

    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return f"ip:{client_ip}"


def enforce_checkout_rate_limit(request: Request, user_id: int) -> None:
    """Raise RateLimited when the user exceeded the checkout/portal window"""
    identifier = f"checkout:{get_client_identifier(request, user_id)}"
    count = increment_rate_limit(identifier, settings.CHECKOUT_RATE_LIMIT_WINDOW)
    if count > settings.CHECKOUT_RATE_LIMIT_REQUESTS:
        security_logger.warning(
            f"Checkout rate limit exceeded - User: {user_id}, Path: {request.url.path}"
        )
        raise RateLimited()
