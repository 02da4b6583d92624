# utils/logger.py
"""
Logging for the resilience layer.

Every module obtains its logger through ``get_logger(__name__)``. Loggers are
cached by a process-wide manager so handlers are attached exactly once, and
``setup_logging`` can be called later to add a rotating file handler or change
the level of loggers that already exist.
"""
from __future__ import annotations

import copy
import logging
import logging.handlers
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
CONSOLE_DATEFMT = "%H:%M:%S"

_colorama_lock = threading.Lock()
_colorama_state: Optional[bool] = None


def _ensure_colorama() -> bool:
    """Initialise colorama once. Returns False when it is not installed."""
    global _colorama_state

    if _colorama_state is not None:
        return _colorama_state

    with _colorama_lock:
        if _colorama_state is None:
            try:
                import colorama

                colorama.just_fix_windows_console()
                _colorama_state = True
            except (ImportError, AttributeError):
                _colorama_state = False
        return _colorama_state


class ColorFormatter(logging.Formatter):
    """ANSI-coloured level names. Formats a copy so other handlers see the raw record."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        record_copy = copy.copy(record)
        color = self.COLORS.get(record_copy.levelname)
        if color:
            record_copy.levelname = f"{color}{record_copy.levelname}{self.RESET}"
        return super().format(record_copy)


class LoggerManager:
    """Creates and caches named loggers with one console and one shared file handler."""

    def __init__(self) -> None:
        self._loggers: Dict[str, logging.Logger] = {}
        self._lock = threading.Lock()
        self._file_handler: Optional[logging.Handler] = None
        self._level: int = logging.INFO

    @property
    def level(self) -> int:
        return self._level

    def setup(
        self,
        log_dir: Optional[Path] = None,
        level: int = logging.INFO,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
    ) -> Optional[Path]:
        """
        Reconfigure level and file output for all current and future loggers.

        Returns the log file path when file logging is enabled.
        """
        log_file: Optional[Path] = None
        with self._lock:
            self._level = level
            self._close_file_handler()

            if log_dir is not None:
                directory = Path(log_dir)
                directory.mkdir(parents=True, exist_ok=True)
                log_file = directory / f"resilience_{datetime.now():%Y%m%d}.log"

                handler = logging.handlers.RotatingFileHandler(
                    log_file,
                    maxBytes=max_bytes,
                    backupCount=backup_count,
                    encoding="utf-8",
                )
                handler.setLevel(level)
                handler.setFormatter(logging.Formatter(LOG_FORMAT))
                self._file_handler = handler

            for logger in self._loggers.values():
                logger.setLevel(level)
                for h in logger.handlers:
                    h.setLevel(level)
                if self._file_handler is not None and self._file_handler not in logger.handlers:
                    logger.addHandler(self._file_handler)

        return log_file

    def get_logger(self, name: str = "resilience") -> logging.Logger:
        with self._lock:
            cached = self._loggers.get(name)
            if cached is not None:
                return cached

            logger = logging.getLogger(name)
            logger.setLevel(self._level)
            logger.propagate = False
            for handler in logger.handlers[:]:
                logger.removeHandler(handler)

            logger.addHandler(self._console_handler())
            if self._file_handler is not None:
                logger.addHandler(self._file_handler)

            self._loggers[name] = logger
            return logger

    def teardown(self) -> None:
        """Detach and close every handler and forget cached loggers."""
        with self._lock:
            file_handler = self._file_handler
            for logger in self._loggers.values():
                for handler in logger.handlers[:]:
                    logger.removeHandler(handler)
                    if handler is not file_handler:
                        handler.close()
            self._loggers.clear()
            self._close_file_handler()

    def _console_handler(self) -> logging.StreamHandler:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(self._level)

        use_color = False
        isatty = getattr(sys.stdout, "isatty", None)
        if callable(isatty) and isatty():
            use_color = _ensure_colorama() if sys.platform == "win32" else True

        formatter_cls = ColorFormatter if use_color else logging.Formatter
        handler.setFormatter(formatter_cls(LOG_FORMAT, datefmt=CONSOLE_DATEFMT))
        return handler

    def _close_file_handler(self) -> None:
        handler, self._file_handler = self._file_handler, None
        if handler is not None:
            handler.close()


def format_fields(**fields: Any) -> str:
    """Render structured context as ``key=value`` pairs, skipping None values."""
    parts = []
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, float):
            value = f"{value:.4g}"
        parts.append(f"{key}={value}")
    return " ".join(parts)


_manager = LoggerManager()


def get_logger(name: str = "resilience") -> logging.Logger:
    """Get a cached logger."""
    return _manager.get_logger(name)


def setup_logging(
    log_dir: Optional[Path] = None,
    level: int | str = logging.INFO,
) -> Optional[Path]:
    """Configure level and optional file logging. Accepts level names like ``"DEBUG"``."""
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        level = resolved if isinstance(resolved, int) else logging.INFO
    return _manager.setup(log_dir, level)


def teardown_logging() -> None:
    _manager.teardown()


log: logging.Logger = get_logger("resilience")
