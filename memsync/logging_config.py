"""
Logging configuration for memsync.

Suppress verbose library output by default for better UX.
"""

import logging
import os
import sys
import warnings

# Libraries that log every request at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "urllib3")


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose library output.

    This silences:
    - Per-request logging from httpx/httpcore
    - uvicorn access logs
    - Library warnings (deprecation, etc.)

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    if quiet:
        warnings.filterwarnings("ignore")
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
    else:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.NOTSET)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # stdout belongs to the MCP protocol; debug output goes to stderr only
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("memsync").setLevel(logging.DEBUG)
    # httpx is useful to see, httpcore is wire noise
    logging.getLogger("httpx").setLevel(logging.DEBUG)
    logging.getLogger("httpcore").setLevel(logging.INFO)


def is_verbose() -> bool:
    """True when MEMSYNC_VERBOSE is set to a truthy value."""
    return os.environ.get("MEMSYNC_VERBOSE", "").lower() in ("1", "true", "yes")


def configure_ops_log(log_dir):
    """Configure a persistent operations log.

    Writes to {log_dir}/memsync-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on shutdown.
    """
    from logging.handlers import RotatingFileHandler
    from pathlib import Path

    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_dir / "memsync-ops.log"),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    memsync_logger = logging.getLogger("memsync")
    memsync_logger.addHandler(handler)
    # Let INFO through even in quiet mode
    if memsync_logger.level == logging.NOTSET or memsync_logger.level > logging.INFO:
        memsync_logger.setLevel(logging.INFO)

    return handler
