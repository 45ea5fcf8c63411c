"""Process logging for the retirement service: stderr plus an optional log file."""

from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path

from logsource_retire.config import Settings, load_settings

_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# The SIEM client logs each REST call at INFO; jobs issue thousands.
_QUIET_LOGGERS: tuple[str, ...] = ("httpx", "httpcore")

_configured = threading.Event()
_configure_lock = threading.Lock()

_logger = logging.getLogger(__name__)


def _build_handlers(log_file: str | None) -> tuple[list[logging.Handler], OSError | None]:
    formatter = logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT)
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    if not log_file:
        return [console], None
    try:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        to_file = logging.FileHandler(log_file)
    except OSError as exc:
        return [console], exc
    to_file.setFormatter(formatter)
    return [console, to_file], None


def configure_logging(settings: Settings | None = None) -> None:
    """Install root handlers for the configured level.

    An unwritable log file degrades to stderr only, with a warning once
    the console handler is live.
    """
    settings = settings or load_settings()
    level = logging.getLevelName(settings.logging.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handlers, file_error = _build_handlers(settings.logging.file)
    logging.basicConfig(level=level, handlers=handlers, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if file_error is not None:
        _logger.warning(
            "Log file %s unavailable, logging to stderr only: %s",
            settings.logging.file,
            file_error,
        )
    _configured.set()


def get_logger(name: str) -> logging.Logger:
    if not _configured.is_set():
        with _configure_lock:
            if not _configured.is_set():
                configure_logging()
    return logging.getLogger(name)
