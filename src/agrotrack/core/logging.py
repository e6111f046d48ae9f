"""
Structured logging setup.

Every module logs through ``structlog.get_logger(__name__)``; this module
configures the processor chain once per process and provides the security
event channel used by the CSRF guard.
"""

import logging
from typing import Any, Optional

import structlog

SECURITY_LOGGER_NAME = "agrotrack.security"

_configured = False


def configure_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """Configure stdlib logging and structlog."""
    global _configured

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
        force=not _configured,
    )

    # Quiet chatty third party loggers
    for noisy in ("watchfiles", "aiosqlite", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    renderer: Any
    if json_logs:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True


def log_security_event(event: str, **context: Any) -> None:
    """
    Record a security relevant event.

    Emitted at warning level on a dedicated logger so security events can be
    routed and alerted on separately from ordinary warnings.
    """
    logger = structlog.get_logger(SECURITY_LOGGER_NAME)
    logger.warning(f"Security event: {event}", security_event=True, event_name=event, **context)


def bind_request_context(request_id: str, path: Optional[str] = None, method: Optional[str] = None) -> None:
    """Bind per-request fields onto every log line emitted while handling it."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, path=path, method=method)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
