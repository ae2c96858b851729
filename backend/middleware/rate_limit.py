"""
Rate Limiting Middleware - Redis-backed request throttling.

Provides rate limiting for:
- WebSocket connections (per IP)
- Chat messages (per session, shared by WebSocket and REST)
- REST chat messages (per IP)
- Chat session creation (per IP)
- Operator login (per IP, 15 minute window)

Uses Redis INCR with EXPIRE for fixed-window counters.
Fails open in development and closed in production when Redis is unavailable.

Usage:
    # REST middleware
    app.add_middleware(RateLimitMiddleware)

    # WebSocket (manual check)
    allowed, error_msg = await check_message_limit(session_id)
    if not allowed:
        await websocket.send_json({"type": "error", "code": "RATE_LIMITED", "message": error_msg})
"""

import logging
from enum import Enum
from typing import Optional, Tuple

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from errors import ErrorCode

logger = logging.getLogger(__name__)


class RateLimitType(Enum):
    """Rate limit types with their Redis key patterns."""
    WS_CONNECTION = "atelier:rl:conn"    # Per IP
    WS_MESSAGE = "atelier:rl:msg"        # Per session, WebSocket and REST
    CHAT_INIT = "atelier:rl:init"        # Per IP
    CHAT_MESSAGE = "atelier:rl:rest"     # Per IP, REST message endpoint
    ADMIN_LOGIN = "atelier:rl:admin"     # Per IP, stricter


def get_client_ip(conn) -> str:
    """Extract client IP from a Request or WebSocket, handling proxies."""
    # Check X-Forwarded-For header (set by nginx/load balancer)
    forwarded = conn.headers.get("X-Forwarded-For")
    if forwarded:
        # Take first IP in chain (original client)
        return forwarded.split(",")[0].strip()

    real_ip = conn.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if conn.client:
        return conn.client.host

    return "unknown"


def _default_limit(limit_type: RateLimitType) -> int:
    from config import runtime_config

    return {
        RateLimitType.WS_CONNECTION: runtime_config.rate_limit_ws_conn,
        RateLimitType.WS_MESSAGE: runtime_config.rate_limit_ws_msg,
        RateLimitType.CHAT_INIT: runtime_config.rate_limit_chat_init,
        RateLimitType.CHAT_MESSAGE: runtime_config.rate_limit_chat_message,
        RateLimitType.ADMIN_LOGIN: runtime_config.rate_limit_admin_login,
    }.get(limit_type, 30)


async def check_rate_limit(
    limit_type: RateLimitType,
    identifier: str,
    limit: Optional[int] = None,
    window_seconds: int = 60,
) -> Tuple[bool, int, int]:
    """
    Check if request is within rate limit.

    Args:
        limit_type: Type of rate limit to check
        identifier: Unique identifier (IP, session_id, etc.)
        limit: Max requests per window (uses config default if None)
        window_seconds: Time window in seconds

    Returns:
        Tuple of (allowed, current_count, limit)
    """
    from config import runtime_config

    if limit is None:
        limit = _default_limit(limit_type)

    # In production, deny requests when Redis is unavailable (fail-closed)
    fail_closed = runtime_config.is_production

    try:
        from services.redis_client import get_redis
        redis = await get_redis()

        if redis.fallback_mode:
            if fail_closed:
                logger.warning("Rate limiting fail-closed (Redis unavailable in production)")
                return (False, 0, limit)
            logger.debug("Rate limiting disabled (Redis fallback mode)")
            return (True, 0, limit)

        key = f"{limit_type.value}:{identifier}"

        count = await redis.incr(key)

        # Set TTL on first request in window
        if count == 1:
            await redis.expire(key, window_seconds)

        allowed = count <= limit

        if not allowed:
            logger.warning(
                f"Rate limit exceeded: {limit_type.name} for {identifier} "
                f"({count}/{limit} in {window_seconds}s)"
            )

        return (allowed, count, limit)

    except Exception as e:
        if fail_closed:
            logger.error(f"Rate limit check failed (fail-closed): {e}")
            return (False, 0, limit)
        logger.warning(f"Rate limit check failed: {e}, allowing request")
        return (True, 0, limit)


async def get_rate_limit_remaining(
    limit_type: RateLimitType,
    identifier: str,
    limit: Optional[int] = None,
) -> Tuple[int, int]:
    """
    Get remaining requests in current window.

    Returns:
        Tuple of (remaining, reset_in_seconds)
    """
    if limit is None:
        limit = _default_limit(limit_type)

    try:
        from services.redis_client import get_redis
        redis = await get_redis()

        if redis.fallback_mode:
            return (limit, 0)

        key = f"{limit_type.value}:{identifier}"

        current = await redis.get(key)
        count = int(current) if current else 0
        remaining = max(0, limit - count)

        ttl = await redis.get_ttl(key)
        reset_in = max(0, ttl) if ttl > 0 else 0

        return (remaining, reset_in)

    except Exception as e:
        logger.warning(f"Failed to get rate limit info: {e}")
        return (limit, 0)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Rate limiting middleware for REST endpoints.

    WebSocket rate limiting is handled separately in the WebSocket handler.
    """

    # Endpoints to rate limit: (method, path) -> (type, window_seconds)
    RATE_LIMITED_PATHS = {
        ("POST", "/api/chat/initialize"): (RateLimitType.CHAT_INIT, 60),
        ("POST", "/api/chat/message"): (RateLimitType.CHAT_MESSAGE, 60),
        ("POST", "/api/admin/auth/login"): (RateLimitType.ADMIN_LOGIN, 900),  # 5 attempts per 15 min
    }

    async def dispatch(self, request: Request, call_next) -> Response:
        """Process request with rate limiting."""
        rule = self.RATE_LIMITED_PATHS.get((request.method, request.url.path.rstrip("/")))
        if rule is None:
            return await call_next(request)

        limit_type, window = rule
        client_ip = get_client_ip(request)
        allowed, count, limit = await check_rate_limit(limit_type, client_ip, window_seconds=window)

        if not allowed:
            remaining, reset_in = await get_rate_limit_remaining(limit_type, client_ip)
            return JSONResponse(
                status_code=429,
                content={
                    "success": False,
                    "error": {
                        "code": ErrorCode.RATE_LIMITED.value,
                        "message": "Rate limit exceeded",
                        "details": None,
                        "operation": request.url.path,
                        "recoverable": True,
                        "context": {"retry_after": reset_in},
                    },
                },
                headers={
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": str(remaining),
                    "X-RateLimit-Reset": str(reset_in),
                    "Retry-After": str(reset_in),
                },
            )

        # Add rate limit headers to successful response
        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, limit - count))
        return response


async def check_ws_connection_limit(client_ip: str) -> Tuple[bool, str]:
    """
    Check WebSocket connection rate limit.

    Returns:
        Tuple of (allowed, error_message)
    """
    allowed, count, limit = await check_rate_limit(
        RateLimitType.WS_CONNECTION,
        client_ip,
    )

    if not allowed:
        return (False, f"Connection rate limit exceeded ({count}/{limit}/min)")

    return (True, "")


async def check_message_limit(session_id: str) -> Tuple[bool, str]:
    """
    Check chat message rate limit for one session.

    Returns:
        Tuple of (allowed, error_message)
    """
    allowed, count, limit = await check_rate_limit(
        RateLimitType.WS_MESSAGE,
        session_id,
    )

    if not allowed:
        remaining, reset_in = await get_rate_limit_remaining(
            RateLimitType.WS_MESSAGE,
            session_id,
        )
        return (
            False,
            f"Message rate limit exceeded ({count}/{limit}/min). "
            f"Try again in {reset_in} seconds.",
        )

    return (True, "")
