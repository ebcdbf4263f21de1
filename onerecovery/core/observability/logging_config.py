"""
Logging configuration — central setup for the CLI entrypoint.

Called once at startup by main.py.  Every module that does
``logger = logging.getLogger(__name__)`` inherits this config.

Levels are resolved in precedence order:
    CLI flag  >  ONERECOVERY_LOG_LEVEL env var  >  WARNING (default)

Optional file output via ONERECOVERY_LOG_FILE / ONERECOVERY_LOG_FILE_LEVEL.
Errors are additionally appended to the working directory's
``build_error.log`` for postmortem inspection.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

# ── Format strings ──────────────────────────────────────────────

# WARNING level: message only
_FMT_MINIMAL = "%(message)s"

# INFO level: timestamped with module context
_FMT_VERBOSE = "%(asctime)s [%(name)s] %(message)s"
_DATEFMT_VERBOSE = "%H:%M:%S"

# DEBUG level: file:line diagnostics
_FMT_DEBUG = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d — %(message)s"
_DATEFMT_DEBUG = "%H:%M:%S"

# File output: always full detail
_FMT_FILE = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d — %(message)s"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"

# Persistent error log: one line per error, append-only
_FMT_ERROR_LOG = "[%(asctime)s] [%(levelname)s] %(message)s"
_DATEFMT_ERROR_LOG = "%Y-%m-%d %H:%M:%S"

ERROR_LOG_NAME = "build_error.log"


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    error_log: Path | None = None,
) -> None:
    """Configure Python logging for the entire process.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional path to a log file.
        log_file_level: Optional separate level for the log file.
            Defaults to the same as ``level``.
        error_log: Optional path of the persistent error log. Only
            ERROR and above are appended there.
    """
    numeric_level = _parse_level(level)

    # ── Console handler (stderr) ────────────────────────────────
    if numeric_level <= logging.DEBUG:
        fmt, datefmt = _FMT_DEBUG, _DATEFMT_DEBUG
    elif numeric_level <= logging.INFO:
        fmt, datefmt = _FMT_VERBOSE, _DATEFMT_VERBOSE
    else:
        fmt, datefmt = _FMT_MINIMAL, None

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    # ── Root logger ─────────────────────────────────────────────
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.addHandler(console)

    # Effective root level = minimum of console and file levels
    effective_level = numeric_level

    # ── File handler (optional) ─────────────────────────────────
    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else numeric_level
        effective_level = min(effective_level, file_level)

        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter(_FMT_FILE, datefmt=_DATEFMT_FILE))
        root.addHandler(fh)

    root.setLevel(effective_level)

    # ── Persistent error log (optional) ─────────────────────────
    if error_log is not None:
        attach_error_log(error_log)

    # Don't propagate exceptions from logging itself
    logging.raiseExceptions = False


def attach_error_log(path: Path) -> None:
    """Append ERROR records to ``path``. A second call for the same file is a no-op.

    The working directory may only exist once a command creates it, so
    commands that create it call this again afterwards.
    """
    path = path.resolve()
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == path:
            return

    path.parent.mkdir(parents=True, exist_ok=True)
    eh = logging.FileHandler(path, mode="a", encoding="utf-8", delay=True)
    eh.setLevel(logging.ERROR)
    eh.setFormatter(logging.Formatter(_FMT_ERROR_LOG, datefmt=_DATEFMT_ERROR_LOG))
    root.addHandler(eh)
    if root.level > logging.ERROR:
        root.setLevel(logging.ERROR)


def _parse_level(level: str | None) -> int:
    """Convert a level name string to its numeric constant."""
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.WARNING
    return numeric
