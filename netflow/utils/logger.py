"""structlog setup for the netflow indexer.

Every module logs through ``get_logger(<module>)`` with snake_case event
names. Production (any MODE but ``dev``) renders one JSON object per line
on stdout; ``dev`` renders a colored console. RPC endpoints and database
DSNs are logged often, so credentials and provider keys in URLs are
redacted before rendering.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from typing import Any

import structlog

_MASK = "***REDACTED***"
_SECRET_KEY = re.compile(
    r"(password|secret|api[-_]?key|authorization|private[-_]?key)",
    re.IGNORECASE,
)
_URL_KEY = re.compile(r"(url|dsn|endpoint)$", re.IGNORECASE)
_USERINFO = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)[^/@\s]+@", re.IGNORECASE)

# Chatty at INFO: per-request client logs, SQL echo, uvicorn access lines
_QUIET_LOGGERS = ("aiohttp", "asyncio", "sqlalchemy.engine", "web3", "uvicorn.access")


def _mask_url(url: str) -> str:
    """Keep scheme and host; redact userinfo and any path."""
    url = _USERINFO.sub(lambda m: m.group("scheme") + _MASK + "@", url)
    scheme, sep, rest = url.partition("://")
    if not sep:
        return url
    host, slash, path = rest.partition("/")
    # Alchemy, Infura and dRPC put the API key in the path
    return f"{scheme}://{host}/{_MASK}" if host and slash and path else url


def _mask_secrets(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """structlog processor: redact secret-named keys and URL-valued keys."""
    for key, value in list(event_dict.items()):
        if _SECRET_KEY.search(key):
            event_dict[key] = _MASK
        elif isinstance(value, str) and _URL_KEY.search(key):
            event_dict[key] = _mask_url(value)
    return event_dict


def setup_logging(log_level: str = "INFO", json_output: bool | None = None) -> None:
    """Route structlog through one stdout handler on the stdlib root logger.

    Args:
        log_level: Root level name; unknown names fall back to INFO.
        json_output: JSON lines if True, console if False. None means JSON
            unless ``MODE=dev``.
    """
    if json_output is None:
        json_output = os.getenv("MODE", "prod") != "dev"

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            _mask_secrets,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(module: str) -> structlog.stdlib.BoundLogger:
    """Logger bound with ``module=<module>``."""
    return structlog.get_logger(module=module)
