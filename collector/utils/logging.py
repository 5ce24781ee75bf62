import logging

import structlog

from collector.config import settings

# Libraries that log every request or job run at INFO.
_CHATTY_LOGGERS = ("httpx", "httpcore", "apscheduler")


def _stdlib_level(level: str) -> int:
    name = "WARNING" if level.lower() == "warn" else level.upper()
    return getattr(logging, name, logging.INFO)


def setup_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    """Configure structlog: JSON lines in production, console renderer otherwise."""
    if json_logs is None:
        json_logs = settings.is_production

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    log_level = _stdlib_level(level or settings.log_level)
    logging.basicConfig(format="%(message)s", level=log_level)
    logging.getLogger().setLevel(log_level)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance."""
    return structlog.get_logger(name)
