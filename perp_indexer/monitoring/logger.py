"""
Structured logging for the indexer and the price updater.

structlog renders every event (JSON in deployments, console text locally)
and hands it to stdlib logging, which fans out to stdout and, optionally, a
rotating file. setup_logging() may run more than once per process (tests,
one CLI command after another); each call replaces the handlers of the
previous one.
"""
import structlog
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

# 10MB per file, 5 backups
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

_HANDLER_TAG = "perp_indexer"


def _renderer(log_format: str):
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def _install_handler(handler: logging.Handler, level: int) -> None:
    handler.set_name(_HANDLER_TAG)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logging.root.addHandler(handler)


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: str | None = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG/INFO/WARNING/ERROR/CRITICAL
        log_format: json or text
        log_file: rotating log file path; console only when None
    """
    level = getattr(logging, log_level.upper())

    root = logging.getLogger()
    for handler in [h for h in root.handlers if h.get_name() == _HANDLER_TAG]:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level)

    _install_handler(logging.StreamHandler(sys.stdout), level)
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _install_handler(
            RotatingFileHandler(log_path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS),
            level,
        )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(log_format),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    get_logger(__name__).info("LOGGING_CONFIGURED", log_level=log_level, log_format=log_format, log_file=log_file)


def get_logger(name: str) -> structlog.BoundLogger:
    """Structured logger for a module (pass __name__)."""
    return structlog.get_logger(name)
