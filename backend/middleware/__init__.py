"""
Atelier Middleware - Request processing middleware.

- rate_limit: Rate limiting for REST and WebSocket endpoints
"""

from .rate_limit import RateLimitMiddleware, check_rate_limit, RateLimitType

__all__ = ["RateLimitMiddleware", "check_rate_limit", "RateLimitType"]
