"""
Error codes for the Atelier chat backend.

Provides a standardized taxonomy of error codes organized by category.
Use these codes consistently across REST responses and WebSocket error frames.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for Atelier.

    Categories:
    - VALIDATION_*: Input validation errors
    - NOT_FOUND_*: Resource not found errors
    - SESSION_*: Chat session state machine violations
    - PROVIDER_*: AI provider routing failures
    - AUTH_*: Operator authentication failures
    - RATE_*: Rate limiting
    - INTERNAL_*: Internal/unexpected errors
    """

    # Validation errors (input checking)
    VALIDATION_MISSING_PARAM = "VALIDATION_MISSING_PARAM"
    VALIDATION_INVALID_TYPE = "VALIDATION_INVALID_TYPE"
    VALIDATION_OUT_OF_RANGE = "VALIDATION_OUT_OF_RANGE"
    VALIDATION_INVALID_FORMAT = "VALIDATION_INVALID_FORMAT"

    # Not found errors (missing resources)
    NOT_FOUND_SESSION = "NOT_FOUND_SESSION"
    NOT_FOUND_PROVIDER = "NOT_FOUND_PROVIDER"
    NOT_FOUND_OPERATOR = "NOT_FOUND_OPERATOR"
    NOT_FOUND_RESOURCE = "NOT_FOUND_RESOURCE"

    # Session state errors
    SESSION_INVALID_TRANSITION = "SESSION_INVALID_TRANSITION"
    SESSION_CLOSED = "SESSION_CLOSED"

    # Provider errors (AI routing)
    PROVIDER_UNCONFIGURED = "PROVIDER_UNCONFIGURED"
    PROVIDER_DISABLED = "PROVIDER_DISABLED"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    PROVIDER_REJECTED = "PROVIDER_REJECTED"

    # Authentication errors
    AUTH_MISSING_TOKEN = "AUTH_MISSING_TOKEN"
    AUTH_INVALID_TOKEN = "AUTH_INVALID_TOKEN"
    AUTH_INVALID_CREDENTIALS = "AUTH_INVALID_CREDENTIALS"
    AUTH_FORBIDDEN = "AUTH_FORBIDDEN"

    # Rate limiting
    RATE_LIMITED = "RATE_LIMITED"

    # Internal errors (unexpected failures)
    INTERNAL_UNEXPECTED = "INTERNAL_UNEXPECTED"
    INTERNAL_CONFIG_ERROR = "INTERNAL_CONFIG_ERROR"
    INTERNAL_STATE_ERROR = "INTERNAL_STATE_ERROR"
