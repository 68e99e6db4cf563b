"""Structured logging configuration."""

from __future__ import annotations

import logging
import re
import sys
from typing import Any

import structlog


_SENSITIVE_KEY = re.compile(r"(token|password|secret|private_key|credential)", re.IGNORECASE)
_URL_CREDENTIALS = re.compile(r"(https?://)[^/@\s]+@")
MASK = "*****"


def mask_url_credentials(text: str) -> str:
    """Hide userinfo embedded in URLs, e.g. push remotes."""
    return _URL_CREDENTIALS.sub(rf"\g<1>{MASK}@", text)


def redact_sensitive(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask values of secret-looking keys and credentials inside URLs."""
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        if _SENSITIVE_KEY.search(key) and value:
            event_dict[key] = MASK
        elif isinstance(value, str):
            event_dict[key] = mask_url_credentials(value)
    return event_dict


def setup_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging with structlog."""
    renderer: Any = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.CallsiteParameterAdder(
                [
                    structlog.processors.CallsiteParameter.FILENAME,
                    structlog.processors.CallsiteParameter.FUNC_NAME,
                    structlog.processors.CallsiteParameter.LINENO,
                ],
            ),
            redact_sensitive,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )
