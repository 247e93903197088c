"""
Logging configuration for the trusthash sidecar.

Library chatter (HTTP clients, access logs) is suppressed by default.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "PIL")


def _has_stderr_handler(logger: logging.Logger) -> bool:
    return any(
        isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
        for h in logger.handlers
    )


def configure_logging(level: str = "info", verbose: bool = False) -> logging.Logger:
    """
    Install a stderr handler on the ``trusthash`` logger.

    Args:
        level: One of debug/info/warning/error
        verbose: If False, quiet the HTTP client and access loggers
    """
    app_logger = logging.getLogger("trusthash")
    app_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not _has_stderr_handler(app_logger):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%H:%M:%S"))
        app_logger.addHandler(handler)

    library_level = logging.DEBUG if verbose else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)
    return app_logger


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    app_logger = configure_logging("debug", verbose=True)
    for handler in app_logger.handlers:
        handler.setLevel(logging.DEBUG)


def configure_ops_log(log_dir):
    """Configure a persistent operations log.

    Writes to {log_dir}/trusthash-ops.log using a rotating file handler
    (1MB max, 3 backups). Returns the handler so it can be removed on
    shutdown.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_dir / "trusthash-ops.log"),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    app_logger = logging.getLogger("trusthash")
    app_logger.addHandler(handler)
    if app_logger.level == logging.NOTSET or app_logger.level > logging.INFO:
        app_logger.setLevel(logging.INFO)
    return handler
