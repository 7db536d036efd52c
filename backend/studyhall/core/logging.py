"""
Structured logging configuration using structlog.

Every payment decision (webhook, sweep, manual recovery, expiry) is logged as
a single event with its transaction/reservation ids bound, rendered as JSON in
production and as a console line in development. Gateway credentials and
guest contact details never reach the log output.
"""

import logging
import sys

import structlog
from structlog.typing import EventDict, WrappedLogger

from studyhall.core.config import get_settings

REDACTED = "***"

# Keys scrubbed from every event, at any nesting depth
SENSITIVE_KEYS = frozenset(
    {
        "api_key",
        "key",
        "key_secret",
        "webhook_secret",
        "signature",
        "razorpay_signature",
        "authorization",
        "x-admin-key",
        "x-ekqr-secret",
        "guest_phone",
        "customer_mobile",
    }
)

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore")


def _scrub(value):
    if isinstance(value, dict):
        return {
            k: REDACTED if str(k).lower() in SENSITIVE_KEYS else _scrub(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(v) for v in value)
    return value


def redact_sensitive(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """structlog processor masking credentials and guest phone numbers."""
    return _scrub(event_dict)


def _renderer(environment: str):
    if environment == "production":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging() -> None:
    settings = get_settings()
    production = settings.ENVIRONMENT == "production"

    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive,
    ]
    if production:
        pre_chain.append(structlog.processors.dict_tracebacks)

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(settings.ENVIRONMENT),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.LOG_LEVEL.upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
