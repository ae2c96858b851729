"""
Standard response builders for Atelier.

Provides consistent response envelopes for REST endpoints and WebSocket frames.
"""

from typing import Any, Optional
from .codes import ErrorCode
from .exceptions import AtelierError


def error_response(
    error: AtelierError | Exception, operation: Optional[str] = None, include_context: bool = True
) -> dict:
    """Build a standard error response dictionary.

    Args:
        error: The exception to convert to a response
        operation: Optional operation name for context (e.g. "new-message")
        include_context: Whether to include the context dict (disable for end users)

    Returns:
        Standard error response dict with success=False

    Example:
        >>> from errors import NotFoundError, error_response
        >>> err = NotFoundError("Chat session not found", resource_type="session", resource_id="abc")
        >>> error_response(err, operation="history")
        {
            "success": False,
            "error": {
                "code": "NOT_FOUND_SESSION",
                "message": "Chat session not found",
                "details": None,
                "operation": "history",
                "recoverable": True,
                "context": {"resource_type": "session", "resource_id": "abc"}
            }
        }
    """
    if isinstance(error, AtelierError):
        return {
            "success": False,
            "error": {
                "code": error.code.value,
                "message": error.message,
                "details": error.details,
                "operation": operation,
                "recoverable": error.recoverable,
                "context": error.context if include_context else None,
            },
        }

    # Fallback for foreign exceptions; never leak their text
    return {
        "success": False,
        "error": {
            "code": ErrorCode.INTERNAL_UNEXPECTED.value,
            "message": "Internal server error",
            "details": None,
            "operation": operation,
            "recoverable": False,
            "context": None,
        },
    }


def success_response(data: Optional[dict] = None, **kwargs: Any) -> dict:
    """Build a standard success response dictionary.

    Example:
        >>> success_response(session_id="abc")
        {"success": True, "session_id": "abc"}
    """
    response = {"success": True}

    if data:
        response.update(data)
    if kwargs:
        response.update(kwargs)

    return response
