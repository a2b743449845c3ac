"""
Structured logging configuration using structlog.

Log events are snake_case names with key-value context, e.g.::

    logger = structlog.get_logger(__name__)
    logger.info("episode_started", episode_id=episode.id, access_level="full")

Phone numbers and one-time passwords never reach the rendered output: the
``redact_sensitive_fields`` processor masks them before rendering.
"""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

from clinical_gateway.common.common import mask_msisdn

SENSITIVE_PHONE_KEYS = frozenset(
    {"msisdn", "phone", "patient_phone", "provider_phone", "provider_msisdn"}
)
SENSITIVE_SECRET_KEYS = frozenset({"otp", "token", "authorization"})


def redact_sensitive_fields(
    _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor masking phone numbers and dropping secrets."""
    for key in list(event_dict):
        value = event_dict[key]
        if key in SENSITIVE_SECRET_KEYS:
            event_dict[key] = "[REDACTED]"
        elif key in SENSITIVE_PHONE_KEYS and isinstance(value, str):
            event_dict[key] = mask_msisdn(value)
    return event_dict


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """
    Configure stdlib logging and structlog for the application.

    Safe to call more than once; the last call wins.

    :param level: Name of the minimum log level, e.g. ``"DEBUG"``.
    :param json_output: Render JSON lines when ``True``, otherwise coloured console
        output for local development.
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
        force=True,
    )

    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_sensitive_fields,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
