"""
Structured logging setup for the position monitor.

Uses structlog for JSON-formatted context-aware logging. Reconciliation code
binds the position being checked with ``position_context`` so every line
written during that check (scheduler log events included) carries its id.
"""
import structlog
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("aiohttp.access", "sqlalchemy.engine", "sqlalchemy.pool")

_file_handler: RotatingFileHandler | None = None


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: str | None = None) -> None:
    """
    Configure structured logging for the application.

    Safe to call more than once; the file handler is replaced, not stacked.

    Args:
        log_level: Logging level (DEBUG/INFO/WARNING/ERROR/CRITICAL)
        log_format: Format (json or text)
        log_file: Optional log file path (rotated at 10MB, 5 backups)
    """
    global _file_handler
    level = getattr(logging, log_level.upper())

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    logging.root.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.contextvars.merge_contextvars,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if _file_handler is not None:
        logging.root.removeHandler(_file_handler)
        _file_handler.close()
        _file_handler = None

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        _file_handler = RotatingFileHandler(log_path, maxBytes=10 * 1024 * 1024, backupCount=5)
        _file_handler.setLevel(level)
        _file_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.root.addHandler(_file_handler)

        get_logger(__name__).info("Logging initialized", log_file=str(log_file), log_level=log_level)


def position_context(position_id: str):
    """
    Bind ``position_id`` to every log line emitted inside the block.

    Context variables are per asyncio task, so concurrent checks started with
    ``asyncio.gather`` do not see each other's binding.
    """
    return structlog.contextvars.bound_contextvars(position_id=position_id)


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Structured logger instance
    """
    return structlog.get_logger(name)
