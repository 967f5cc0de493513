"""Structured logging configuration with structlog.

Unlock PINs and liveness tokens are bearer secrets: anyone holding one can
move a user's account toward release. They are masked before rendering.
"""

import logging
from collections.abc import MutableMapping
from typing import Any

import structlog

from willtank.config import Settings

SECRET_FIELDS = frozenset({"code", "pin", "token"})
MASK = "***"


def redact_secrets(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Mask secret values, including inside a ``payload`` dict."""
    for key in SECRET_FIELDS & event_dict.keys():
        event_dict[key] = MASK
    payload = event_dict.get("payload")
    if isinstance(payload, dict) and SECRET_FIELDS & payload.keys():
        event_dict["payload"] = {k: MASK if k in SECRET_FIELDS else v for k, v in payload.items()}
    return event_dict


def _static_fields(settings: Settings) -> structlog.types.Processor:
    def add(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
        event_dict.setdefault("service", "willtank-lifecycle")
        event_dict.setdefault("environment", settings.environment)
        return event_dict

    return add


def setup_logging(settings: Settings) -> None:
    """Configure structlog; every event carries the service name and environment."""
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _static_fields(settings),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level)
    if level > logging.DEBUG:
        # Per-statement SQL and per-job arq chatter only at DEBUG
        for name in ("sqlalchemy.engine", "arq.worker"):
            logging.getLogger(name).setLevel(logging.WARNING)
