"""Logging setup for the OERMS auth core.

All modules log through child loggers of the ``oerms_auth`` package
logger. A redaction filter on the handler scrubs bearer tokens and
OAuth secrets that slip into formatted messages.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from oerms_auth.config import Config

LOGGER_NAME = "oerms_auth"

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Bearer values and form-encoded secrets that must never reach a log sink
_SECRET_PATTERNS = (
    re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE),
    re.compile(
        r"(?<![A-Za-z0-9_])((?:access_token|refresh_token|code_verifier|code|token)=)[^&\s]+",
        re.IGNORECASE,
    ),
)

_handler: logging.Handler | None = None


class SecretRedactingFilter(logging.Filter):
    """Rewrite log records so tokens and verifiers are masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = message
        for pattern in _SECRET_PATTERNS:
            redacted = pattern.sub(r"\1***", redacted)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(config: Config) -> None:
    """Configure the package logger from ``config.log_level``.

    Safe to call repeatedly: the first call installs a single stderr
    handler, later calls only adjust the level.
    """
    global _handler

    log_level = getattr(logging, config.log_level.value)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)

    if _handler is not None:
        _handler.setLevel(log_level)
        return

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(SecretRedactingFilter())

    logger.addHandler(handler)
    logger.propagate = False
    _handler = handler

    logger.debug("Logging configured with level %s", config.log_level.value)


def get_logger(name: str) -> logging.Logger:
    """Return a logger nested under the package logger."""
    if name.startswith(LOGGER_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def reset_logging() -> None:
    """Drop the installed handler so tests can configure logging again."""
    global _handler
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = True
    _handler = None
