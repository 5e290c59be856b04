from __future__ import annotations

import errno
import logging
import re
import sys
from typing import Any

import structlog


BEARER_TOKEN_RE = re.compile(r"Bearer\s+[A-Za-z0-9._~+/=-]+")
API_KEY_RE = re.compile(r"(apikey[=:]\s*)[A-Za-z0-9._~+/=-]+", re.IGNORECASE)
SIGNED_URL_TOKEN_RE = re.compile(r"([?&]token=)[A-Za-z0-9._~+/=-]+")


def redact_text(value: str) -> str:
    redacted = BEARER_TOKEN_RE.sub("Bearer [REDACTED]", value)
    redacted = API_KEY_RE.sub(r"\1[REDACTED]", redacted)
    return SIGNED_URL_TOKEN_RE.sub(r"\1[REDACTED]", redacted)


def redact_secrets_processor(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Processor to redact API keys and signed upload tokens from log events."""
    for key, value in list(event_dict.items()):
        if isinstance(value, str):
            redacted = redact_text(value)
            if redacted != value:
                event_dict[key] = redacted
    return event_dict


class SafeStreamHandler(logging.StreamHandler):
    def handleError(self, record: logging.LogRecord) -> None:
        exc = sys.exc_info()[1]
        if isinstance(exc, BrokenPipeError) or (
            isinstance(exc, OSError) and exc.errno == errno.EPIPE
        ):
            try:
                self.stream.close()
            except OSError:
                pass
            return
        super().handleError(record)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def setup_logging(*, debug: bool = False) -> None:
    """Configure structlog with console output and secret redaction."""

    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_secrets_processor,
            structlog.dev.ConsoleRenderer(colors=True)
            if debug
            else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    stdlib_level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        format="%(message)s",
        handlers=[SafeStreamHandler(sys.stderr)],
        level=stdlib_level,
        force=True,
    )

    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
