"""
Atelier Logging Configuration - Color-Coded Container Logs

Provides:
- ColorFormatter: ANSI color-coded log output
- Helper functions: log_message_in, log_message_out, log_provider, log_room
- setup_logging(): Configure application logging

Usage:
    from logging_config import setup_logging, log_message_in, log_provider
    setup_logging()
    logger = logging.getLogger(__name__)
    log_message_in(logger, session_id, "user", "Hello there")
"""

import logging
import sys

PREVIEW_CHARS = 80

# ANSI color codes
COLORS = {
    "RESET": "\033[0m",
    "BOLD": "\033[1m",
    "DIM": "\033[2m",
    # Event colors
    "MSG_IN": "\033[96m",  # Cyan - incoming message
    "MSG_OUT": "\033[92m",  # Green - outgoing message
    "ROOM": "\033[95m",  # Magenta - room membership
    "PROVIDER": "\033[94m",  # Blue - AI provider calls
    "ERROR": "\033[91m",  # Red - errors
    "WARN": "\033[33m",  # Orange/Yellow - warnings
    "DEBUG": "\033[90m",  # Gray - debug info
}


class ColorFormatter(logging.Formatter):
    """Custom formatter with colors for different log levels."""

    LEVEL_COLORS = {
        logging.DEBUG: COLORS["DEBUG"],
        logging.INFO: COLORS["RESET"],
        logging.WARNING: COLORS["WARN"],
        logging.ERROR: COLORS["ERROR"],
        logging.CRITICAL: COLORS["ERROR"] + COLORS["BOLD"],
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, COLORS["RESET"])

        # Format: timestamp [LEVEL] message (no module name for compactness)
        timestamp = self.formatTime(record, "%H:%M:%S")
        level = record.levelname[:4]

        formatted = (
            f"{COLORS['DIM']}{timestamp}{COLORS['RESET']} "
            f"[{color}{level}{COLORS['RESET']}] "
            f"{record.getMessage()}"
        )

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)

        return formatted


def setup_logging(level: int = logging.INFO) -> None:
    """Configure colored logging for the application."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColorFormatter())

    # Configure root logger
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _preview(text: str) -> str:
    return text[:PREVIEW_CHARS] + "..." if len(text) > PREVIEW_CHARS else text


# =============================================================================
# COLORED LOG HELPER FUNCTIONS
# =============================================================================


def log_message_in(logger: logging.Logger, session_id: str, sender: str, content: str) -> None:
    """Log an inbound chat message.

    Args:
        logger: Logger instance
        session_id: Chat session the message belongs to
        sender: 'user' or 'operator'
        content: Message text (truncated in the log)
    """
    logger.info(
        f"{COLORS['MSG_IN']}>>> MESSAGE{COLORS['RESET']} "
        f"[{session_id[:8]}] {sender}: {_preview(content)}"
    )


def log_message_out(logger: logging.Logger, session_id: str, sender: str, provider: str = None) -> None:
    """Log a message produced by the backend (AI reply or system notice)."""
    via = f" via {provider}" if provider else ""
    logger.info(f"{COLORS['MSG_OUT']}<<< REPLY{COLORS['RESET']} [{session_id[:8]}] {sender}{via}")


def log_provider(
    logger: logging.Logger,
    state: str,
    provider_id: str,
    duration: float = 0,
) -> None:
    """Log an AI provider call.

    Args:
        logger: Logger instance
        state: 'start', 'end' or 'fail'
        provider_id: Provider identifier (never the credential)
        duration: Call duration in seconds (for end/fail states)
    """
    if state == "start":
        logger.info(f"{COLORS['PROVIDER']}>>> PROVIDER{COLORS['RESET']} calling {provider_id}")
    elif state == "fail":
        logger.warning(
            f"{COLORS['PROVIDER']}<<< PROVIDER{COLORS['RESET']} {provider_id} failed after {duration:.1f}s"
        )
    else:
        logger.info(
            f"{COLORS['PROVIDER']}<<< PROVIDER{COLORS['RESET']} {provider_id} completed in {duration:.1f}s"
        )


def log_room(logger: logging.Logger, event: str, session_id: str, **context) -> None:
    """Log a gateway room membership event (join, leave, auth)."""
    ctx = " ".join(f"{k}={v}" for k, v in context.items()) if context else ""
    logger.info(f"{COLORS['ROOM']}*** ROOM{COLORS['RESET']} {event} [{session_id[:8]}] {ctx}".rstrip())
