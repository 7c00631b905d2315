import logging
import sys
import uuid
from typing import Any, Dict

import structlog

_REDACT_KEYS = ("password", "secret", "token", "authorization", "cookie")


def _redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask values whose key looks like a credential."""
    for key in list(event_dict.keys()):
        if any(marker in key.lower() for marker in _REDACT_KEYS):
            value = event_dict[key]
            if isinstance(value, str) and len(value) > 8:
                event_dict[key] = value[:4] + "..." + value[-4:]
            elif value:
                event_dict[key] = "***"
    return event_dict


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog on top of stdlib logging for the application."""
    log_level = getattr(logging, str(level).upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        stream=sys.stdout,
        force=True,
    )

    # Suppress noisy third-party loggers
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def bind_request_context(request_id: str = None, **values: Any) -> str:
    """Start a fresh per-request logging context; returns the request id."""
    rid = request_id or uuid.uuid4().hex
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=rid, **values)
    return rid


def get_logger(name: str):
    return structlog.get_logger(name)
