"""
Structured Logging with Structlog.

Every log line is a snake_case event name plus keyword context, e.g.
``logger.info("payment_settled", user_id=user_id, credits_added=1000)``.

Payment flows pass provider objects around, so a redaction processor runs
before rendering: client secrets, bearer tokens and webhook signatures are
never written out, and customer emails are masked to their domain.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from paysync.config import settings

REDACTED = "[REDACTED]"

SECRET_KEYS = frozenset(
    {
        "authorization",
        "client_secret",
        "api_key",
        "stripe_signature",
        "signature",
        "token",
        "webhook_secret",
    }
)
EMAIL_KEYS = frozenset({"email", "customer_email", "receipt_email"})


def _mask_email(value: Any) -> Any:
    if not isinstance(value, str) or "@" not in value:
        return value
    return "***@" + value.rsplit("@", 1)[1]


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Blank out credentials and mask emails in the event context."""
    for key in list(event_dict):
        lowered = key.lower()
        if lowered in SECRET_KEYS:
            event_dict[key] = REDACTED
        elif lowered in EMAIL_KEYS:
            event_dict[key] = _mask_email(event_dict[key])
    return event_dict


def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", settings.service_name)
    event_dict.setdefault("version", settings.api_version)
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog on top of stdlib logging.

    LOG_FORMAT=json renders one JSON object per line for log shipping;
    anything else uses the colored console renderer for local work.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@contextmanager
def log_context(**context: Any) -> Iterator[None]:
    """
    Bind context to every log line emitted inside the block.

    Used around webhook dispatch so handler logs carry the event id:

        with log_context(event_id="evt_123", event_type="invoice.paid"):
            logger.info("webhook_dispatching")
    """
    with structlog.contextvars.bound_contextvars(**context):
        yield
