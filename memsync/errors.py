"""
Error reporting for the memsync CLI.

Store failures get a one-line explanation on stderr; the full traceback
goes to memsync-errors.log in the config directory.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path

from .config import get_config_dir
from .store import StoreError, TransientStoreError

ERROR_LOG_NAME = "memsync-errors.log"


def user_message(exc: BaseException) -> str:
    """Short description of a failure, fit for a terminal."""
    if isinstance(exc, TransientStoreError):
        return f"Vector store unavailable: {exc} (is Qdrant running?)"
    if isinstance(exc, StoreError):
        if exc.status_code is not None:
            return f"Vector store rejected the request (HTTP {exc.status_code}): {exc}"
        return f"Vector store error: {exc}"
    return str(exc) or type(exc).__name__


def log_exception(exc: BaseException, context: str = "") -> Path:
    """
    Append an exception's traceback to the error log.

    The header line carries the UTC time, the context (usually the
    command) and, for store errors, the HTTP status.

    Returns:
        Path to the error log file
    """
    log_path = get_config_dir() / ERROR_LOG_NAME
    header = f"[{datetime.now(timezone.utc).isoformat()}]"
    if context:
        header += f" {context}"
    status = getattr(exc, "status_code", None)
    if isinstance(exc, StoreError) and status is not None:
        header += f" (store status {status})"
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'=' * 60}\n{header}\n")
            f.writelines(traceback.format_exception(type(exc), exc, exc.__traceback__))
    except OSError:
        pass  # Error log is best-effort
    return log_path
