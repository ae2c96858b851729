"""
Error handling decorators and FastAPI integration for Atelier.
"""

import logging
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .exceptions import AtelierError, RateLimitError
from .response import error_response

# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., Any])

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """Translate every AtelierError raised by a route into the error envelope.

    The status code comes from the exception class (400, 401, 403, 404, 409, 429,
    502, 503, 504).
    """

    @app.exception_handler(AtelierError)
    async def _atelier_error_handler(request: Request, exc: AtelierError):
        if exc.http_status >= 500:
            logger.warning(f"{request.method} {request.url.path} -> {exc.code.value}: {exc.message}")
        headers = None
        if isinstance(exc, RateLimitError):
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(
            status_code=exc.http_status,
            content=error_response(exc, operation=request.url.path),
            headers=headers,
        )


def handle_async_errors(operation: str, logger: Optional[logging.Logger] = None):
    """Decorator for WebSocket event handlers.

    Catches exceptions, logs them, and returns the error envelope instead of
    raising so the connection loop can forward it as an ``error`` frame.

    Args:
        operation: Event name for error response context
        logger: Optional logger instance (defaults to an operation logger)

    Example:
        >>> @handle_async_errors("join-chat")
        ... async def on_join(conn, data):
        ...     if not data.get("session_id"):
        ...         raise ValidationError("session_id is required")
        ...     return {"success": True}
    """

    def decorator(func: F) -> F:
        log = logger or logging.getLogger(f"atelier.{operation}")

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> dict:
            try:
                return await func(*args, **kwargs)
            except AtelierError as e:
                # Expected domain failures are not stack-trace worthy
                log.info(f"[{operation}] {e.code.value}: {e.message}")
                return error_response(e, operation=operation, include_context=False)
            except Exception as e:
                log.error(f"[{operation}] Unexpected error: {e}", exc_info=True)
                return error_response(e, operation=operation)

        return wrapper  # type: ignore

    return decorator


def log_error(
    logger: logging.Logger, error: Exception, context: Optional[str] = None, include_traceback: bool = True
) -> None:
    """Log an error with consistent formatting.

    Example:
        >>> log_error(logger, err, context="Auto-reply")
        # Logs: "[Auto-reply] PROVIDER_TIMEOUT: groq did not answer in time"
    """
    if isinstance(error, AtelierError):
        message = f"{error.code.value}: {error.message}"
    else:
        message = str(error)

    if context:
        message = f"[{context}] {message}"

    logger.error(message, exc_info=include_traceback)
