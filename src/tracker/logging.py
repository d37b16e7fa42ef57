"""Structured logging for the tracker: structlog over stdlib, with API keys masked.

Source errors carry request URLs and headers into log events (Gnosisscan
puts its key in the query string), so every event passes through
SecretMasker before it is rendered.
"""

import logging
import os
import re
from collections.abc import Iterable

import structlog

MASK = "***"

# apikey=... in query strings, X-API-Key: ... in rendered headers
_KEY_PATTERNS = (
    re.compile(r"(?i)(apikey=)[^&\s'\"]+"),
    re.compile(r"(?i)(x-api-key['\"]?\s*[:=]\s*['\"]?)[^,\s'\"}]+"),
)


class SecretMasker:
    """structlog processor replacing API keys in string event values.

    Known secret values are replaced wherever they appear; key-shaped
    query parameters and headers are masked even when the value is unknown.
    """

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        self._secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def mask(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, MASK)
        for pattern in _KEY_PATTERNS:
            text = pattern.sub(rf"\g<1>{MASK}", text)
        return text

    def __call__(self, logger, method_name: str, event_dict: dict) -> dict:
        for key, value in event_dict.items():
            if isinstance(value, str):
                event_dict[key] = self.mask(value)
        return event_dict


def setup_logging(
    log_level: str = "INFO",
    log_format: str | None = None,
    secrets: Iterable[str] = (),
) -> None:
    """Configure structlog and the stdlib root logger.

    log_format is "json" (machine-readable) or "console" (default). When not
    given, the LOG_FORMAT environment variable decides. The address being
    computed is bound through structlog.contextvars, so it appears on every
    line logged by the concurrent source fetches of that run.
    """
    if log_format is None:
        log_format = os.environ.get("LOG_FORMAT", "console")

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        SecretMasker(secrets),
    ]

    if log_format.lower() == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Third-party stdlib records get the same masking and rendering
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # aiosqlite logs every statement at DEBUG
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a bound structlog logger with the given name."""
    return structlog.get_logger(name)
