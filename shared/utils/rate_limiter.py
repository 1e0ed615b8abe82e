"""
Rate limiting with slowapi backed by Redis, shared across API instances
"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request, Response
from starlette.responses import JSONResponse
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

STORAGE_URI = settings.RATE_LIMIT_STORAGE_URI or settings.REDIS_URL


def get_real_client_ip(request: Request) -> str:
    """
    Client IP behind proxies/load balancers.

    Scanners at a gate usually share one NAT address, so the first hop of
    X-Forwarded-For is preferred over the socket peer.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # client, proxy1, proxy2
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    cf_connecting_ip = request.headers.get("CF-Connecting-IP")
    if cf_connecting_ip:
        return cf_connecting_ip

    return get_remote_address(request)


limiter = Limiter(
    key_func=get_real_client_ip,
    storage_uri=STORAGE_URI,
    strategy="fixed-window",
    headers_enabled=False,  # keeps response_model endpoints compatible
    enabled=settings.RATE_LIMIT_ENABLED,
)
logger.info(
    f"Rate limiter storage: {STORAGE_URI.split('@')[-1]} (enabled={settings.RATE_LIMIT_ENABLED})"
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """429 with the same error envelope as the rest of the API"""
    retry_after = exc.detail.split(" ")[-1] if exc.detail else "60"

    logger.warning(
        f"Rate limit exceeded - IP: {get_real_client_ip(request)}, "
        f"Path: {request.url.path}, "
        f"Retry-After: {retry_after}"
    )

    return JSONResponse(
        status_code=429,
        content={
            "error": "RATE_LIMIT_EXCEEDED",
            "detail": "Too many requests. Please wait before trying again.",
            "retry_after_seconds": int(retry_after) if retry_after.isdigit() else 60,
        },
        headers={"Retry-After": str(retry_after)},
    )


# Named limits per route family
RATE_LIMITS = {
    # Opening sessions creates orders and gateway preferences
    "checkout": "10/minute",
    # Browsers poll verify/status while the buyer pays
    "verify": "60/minute",
    "status": "120/minute",
    # Gateway notifications may arrive in bursts
    "webhook": "100/minute",
    # Gate terminals scanning a queue
    "check_in": "300/minute",
    "default": "30/minute",
}
