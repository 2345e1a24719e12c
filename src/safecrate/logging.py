"""Logging setup for the safecrate command line."""

from __future__ import annotations

import logging as py_logging
import os
import sys
from pathlib import Path
from typing import TextIO

LOG_LEVELS = {
    "DEBUG": py_logging.DEBUG,
    "INFO": py_logging.INFO,
    "WARN": py_logging.WARNING,
    "WARNING": py_logging.WARNING,
    "ERROR": py_logging.ERROR,
}
LOG_LEVEL_ENV = "SAFECRATE_LOG_LEVEL"
DEFAULT_LOG_PATH = Path("~/.config/safecrate/logs/safecrate.log")
_FALLBACK_LOG_PATH = Path(".safecrate/logs/safecrate.log")
_STREAM_FORMAT = "%(levelname)s %(name)s: %(message)s"
_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s:%(lineno)d %(message)s"


def default_log_path() -> Path:
    try:
        resolved = DEFAULT_LOG_PATH.expanduser()
    except RuntimeError:
        # No resolvable home directory (e.g. stripped container env).
        return (Path.cwd() / _FALLBACK_LOG_PATH).resolve()
    if not resolved.is_absolute():
        resolved = resolved.resolve()
    return resolved


def resolve_level(level: str | None) -> int:
    """Map a level name to a logging level, honouring ``SAFECRATE_LOG_LEVEL``.

    An explicit ``level`` wins over the environment. Unknown names fall back
    to INFO so that a typo never silences error output.
    """
    raw = level or os.getenv(LOG_LEVEL_ENV, "") or "INFO"
    return LOG_LEVELS.get(raw.strip().upper(), py_logging.INFO)


def _file_handler(log_file: str | Path) -> py_logging.Handler | None:
    try:
        log_path = Path(log_file).expanduser()
    except RuntimeError:
        log_path = Path(log_file)
    if not log_path.is_absolute():
        log_path = log_path.resolve()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = py_logging.FileHandler(log_path, encoding="utf-8")
    except OSError:
        return None
    handler.setLevel(py_logging.DEBUG)
    handler.setFormatter(py_logging.Formatter(_FILE_FORMAT))
    return handler


def configure_logging(
    level: str | None = "INFO",
    stream: TextIO | None = None,
    *,
    log_file: str | Path | None = None,
) -> py_logging.Logger:
    resolved = resolve_level(level)

    logger = py_logging.getLogger("safecrate")
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    handler = py_logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(resolved)
    handler.setFormatter(py_logging.Formatter(_STREAM_FORMAT))
    logger.addHandler(handler)

    file_handler = _file_handler(log_file) if log_file else None
    if file_handler is not None:
        logger.addHandler(file_handler)
        logger.setLevel(py_logging.DEBUG)
    else:
        logger.setLevel(resolved)

    logger.propagate = False
    return logger
