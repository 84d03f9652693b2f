"""
Logging setup for brainsync.

Three destinations:
- stderr, only with --verbose or BRAINSYNC_VERBOSE=1
- brainsync-ops.log in the store directory (sync activity, always on)
- brainsync-errors.log (CLI crashes, see errors.py)
"""

import logging
import os
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPS_LOG_NAME = "brainsync-ops.log"
ERROR_LOG_NAME = "brainsync-errors.log"
OPS_LOG_MAX_BYTES = 1_000_000
OPS_LOG_BACKUPS = 3

# Libraries whose per-request INFO lines drown out ours
_CHATTY_LOGGERS = ("httpx", "httpcore")


def configure_quiet_mode(quiet: bool = True):
    """
    Silence HTTP client chatter and Python warnings.

    Args:
        quiet: False restores library INFO output and default warnings
    """
    warnings.filterwarnings("ignore" if quiet else "default")
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING if quiet else logging.INFO)


def enable_debug_mode():
    """Send DEBUG records from brainsync and httpx to stderr."""
    warnings.filterwarnings("default")

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    has_stderr = any(
        isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
        for h in root.handlers
    )
    if not has_stderr:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        ))
        root.addHandler(handler)

    logging.getLogger("brainsync").setLevel(logging.DEBUG)
    logging.getLogger("httpx").setLevel(logging.DEBUG)


def configure_ops_log(store_path) -> RotatingFileHandler:
    """
    Attach the rotating operations log for a store to the brainsync logger.

    Records mirror writes, migrations, session starts and calendar
    failures at INFO and above, whether or not --verbose is set.
    The caller removes the returned handler when it closes the store.
    """
    store_path = Path(store_path)
    store_path.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        store_path / OPS_LOG_NAME,
        maxBytes=OPS_LOG_MAX_BYTES,
        backupCount=OPS_LOG_BACKUPS,
        encoding="utf-8",
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    package_logger = logging.getLogger("brainsync")
    package_logger.addHandler(handler)
    if package_logger.level == logging.NOTSET or package_logger.level > logging.INFO:
        package_logger.setLevel(logging.INFO)
    return handler


def error_log_path() -> Path:
    """Where the CLI writes crash tracebacks: the store dir from the env, else ~/.brainsync."""
    store = os.environ.get("BRAINSYNC_STORE_PATH")
    base = Path(store).expanduser() if store else Path.home() / ".brainsync"
    return base / ERROR_LOG_NAME
