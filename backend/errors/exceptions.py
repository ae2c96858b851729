"""
Custom exception hierarchy for Atelier.

All exceptions inherit from AtelierError and include:
- code: ErrorCode for categorization
- message: Human-readable error message
- details: Optional additional context
- recoverable: Whether the caller can retry/fix the issue
- context: Additional key-value pairs for debugging

Each class also carries the HTTP status the REST layer answers with.
"""

from typing import Any, Optional
from .codes import ErrorCode


class AtelierError(Exception):
    """Base exception for all Atelier errors.

    Attributes:
        code: The ErrorCode categorizing this error
        message: Human-readable error message
        details: Optional additional context for the user
        recoverable: Whether the error can be resolved by user action
        context: Additional debugging information
        http_status: Status code used when the error reaches an HTTP caller
    """

    code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED
    recoverable: bool = False
    http_status: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        recoverable: Optional[bool] = None,
        **context: Any,
    ):
        self.message = message
        self.details = details
        self.context = context if context else None

        # Allow overriding class defaults
        if code is not None:
            self.code = code
        if recoverable is not None:
            self.recoverable = recoverable

        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
        }


class ValidationError(AtelierError):
    """Malformed input to session creation, message content or provider config."""

    code = ErrorCode.VALIDATION_MISSING_PARAM
    recoverable = True
    http_status = 400

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        parameter: Optional[str] = None,
        expected: Optional[str] = None,
        received: Optional[str] = None,
        **context: Any,
    ):
        ctx = {**context}
        if parameter:
            ctx["parameter"] = parameter
        if expected:
            ctx["expected"] = expected
        if received:
            ctx["received"] = received
        super().__init__(message, details, **ctx)


class NotFoundError(AtelierError):
    """Unknown session, provider or operator."""

    code = ErrorCode.NOT_FOUND_RESOURCE
    recoverable = True
    http_status = 404

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        **context: Any,
    ):
        if resource_type == "session":
            code = ErrorCode.NOT_FOUND_SESSION
        elif resource_type == "provider":
            code = ErrorCode.NOT_FOUND_PROVIDER
        elif resource_type == "operator":
            code = ErrorCode.NOT_FOUND_OPERATOR
        else:
            code = ErrorCode.NOT_FOUND_RESOURCE

        ctx = {**context}
        if resource_type:
            ctx["resource_type"] = resource_type
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message, details, code=code, **ctx)


class InvalidTransitionError(AtelierError):
    """Attempted session state change that the lifecycle forbids."""

    code = ErrorCode.SESSION_INVALID_TRANSITION
    recoverable = False
    http_status = 409

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        session_id: Optional[str] = None,
        current: Optional[str] = None,
        requested: Optional[str] = None,
        **context: Any,
    ):
        ctx = {**context}
        if session_id:
            ctx["session_id"] = session_id
        if current:
            ctx["current"] = current
        if requested:
            ctx["requested"] = requested
        super().__init__(message, details, **ctx)


class ClosedSessionError(InvalidTransitionError):
    """Mutation attempted on a closed session."""

    code = ErrorCode.SESSION_CLOSED


class ProviderError(AtelierError):
    """Base for AI provider routing failures.

    The coordinator converts these into a fallback notice on the auto-reply
    path; admin flows surface them directly.
    """

    code = ErrorCode.PROVIDER_REJECTED
    recoverable = True
    http_status = 502

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        provider_id: Optional[str] = None,
        **context: Any,
    ):
        self.provider_id = provider_id
        ctx = {**context}
        if provider_id:
            ctx["provider_id"] = provider_id
        super().__init__(message, details, **ctx)


class ProviderUnconfiguredError(ProviderError):
    """Provider has no stored config or an empty credential."""

    code = ErrorCode.PROVIDER_UNCONFIGURED
    http_status = 503


class ProviderDisabledError(ProviderError):
    """Provider is switched off by an operator."""

    code = ErrorCode.PROVIDER_DISABLED
    http_status = 503


class ProviderTimeoutError(ProviderError):
    """Upstream call exceeded the provider timeout."""

    code = ErrorCode.PROVIDER_TIMEOUT
    http_status = 504


class ProviderRejectedError(ProviderError):
    """Upstream refused the request or answered with something unusable."""

    code = ErrorCode.PROVIDER_REJECTED

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        provider_id: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        ctx = {**context}
        if status_code:
            ctx["status_code"] = status_code
        super().__init__(message, details, provider_id=provider_id, **ctx)


class AuthError(AtelierError):
    """Operator-only action attempted without a valid credential."""

    code = ErrorCode.AUTH_INVALID_TOKEN
    recoverable = True
    http_status = 401


class ForbiddenError(AuthError):
    """Authenticated, but the role does not allow the action."""

    code = ErrorCode.AUTH_FORBIDDEN
    recoverable = False
    http_status = 403


class RateLimitError(AtelierError):
    """Too many requests in the current window."""

    code = ErrorCode.RATE_LIMITED
    recoverable = True
    http_status = 429

    def __init__(self, message: str, details: Optional[str] = None, retry_after: int = 60, **context: Any):
        self.retry_after = retry_after
        super().__init__(message, details, retry_after=retry_after, **context)
