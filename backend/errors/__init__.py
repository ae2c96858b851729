"""
Atelier Error Handling Module

Provides standardized error codes, exceptions, and response builders
for consistent error handling across the chat backend.

Usage:
    from errors import (
        # Error codes
        ErrorCode,

        # Exceptions
        AtelierError,
        ValidationError,
        NotFoundError,
        InvalidTransitionError,
        ClosedSessionError,
        ProviderError,
        ProviderUnconfiguredError,
        ProviderDisabledError,
        ProviderTimeoutError,
        ProviderRejectedError,
        AuthError,
        ForbiddenError,
        RateLimitError,

        # Response builders
        error_response,
        success_response,

        # Integration
        register_exception_handlers,
        handle_async_errors,
        log_error,
    )

Example:
    from errors import ClosedSessionError, NotFoundError

    async def append_message(self, session_id, sender, content):
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(
                "Chat session not found",
                resource_type="session",
                resource_id=session_id,
            )
        if session.status is SessionStatus.CLOSED:
            raise ClosedSessionError(
                "Chat session is closed",
                session_id=session_id,
            )
        ...
"""

from .codes import ErrorCode
from .exceptions import (
    AtelierError,
    ValidationError,
    NotFoundError,
    InvalidTransitionError,
    ClosedSessionError,
    ProviderError,
    ProviderUnconfiguredError,
    ProviderDisabledError,
    ProviderTimeoutError,
    ProviderRejectedError,
    AuthError,
    ForbiddenError,
    RateLimitError,
)
from .response import (
    error_response,
    success_response,
)
from .handlers import (
    register_exception_handlers,
    handle_async_errors,
    log_error,
)

__all__ = [
    # Error codes
    "ErrorCode",
    # Exceptions
    "AtelierError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "ClosedSessionError",
    "ProviderError",
    "ProviderUnconfiguredError",
    "ProviderDisabledError",
    "ProviderTimeoutError",
    "ProviderRejectedError",
    "AuthError",
    "ForbiddenError",
    "RateLimitError",
    # Response builders
    "error_response",
    "success_response",
    # Integration
    "register_exception_handlers",
    "handle_async_errors",
    "log_error",
]
