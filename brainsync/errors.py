"""
Crash log for the brainsync CLI.

The CLI prints a one-line error; the traceback goes to
brainsync-errors.log in the store directory.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .logging_config import error_log_path

_SEPARATOR = "-" * 72


def _private_opener(path, flags):
    return os.open(path, flags, 0o600)


def format_entry(exc: BaseException, context: str = "") -> str:
    """One log entry: separator, timestamped header, traceback."""
    header = f"[{datetime.now(timezone.utc).isoformat()}] {type(exc).__name__}"
    if context:
        header += f" in {context}"
    trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return f"\n{_SEPARATOR}\n{header}\n{trace}"


def log_exception(exc: BaseException, context: str = "", log_path: Optional[Path] = None) -> Path:
    """
    Append exc with its traceback to the error log.

    The file is created owner-only (0600). Failure to write is ignored so
    the original error still reaches the user.

    Returns:
        Path to the error log file
    """
    log_path = Path(log_path or error_log_path())
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a", opener=_private_opener) as f:
            f.write(format_entry(exc, context))
    except OSError:
        pass
    return log_path
