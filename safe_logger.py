#!/usr/bin/env python3
"""
Safe Logger Wrapper for portmap
Provides logging with graceful error handling so a broken log sink never
takes a relay down with it
"""

import logging
import os
import platform
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# ANSI colors per level, same palette the status table uses
LEVEL_COLORS = {
    logging.DEBUG: '\033[36m',
    logging.INFO: '\033[32m',
    logging.WARNING: '\033[33m',
    logging.ERROR: '\033[31m',
    logging.CRITICAL: '\033[1;31m',
}
COLOR_RESET = '\033[0m'


class SafeLogger:
    """
    Safe logger wrapper that prevents logging errors from crashing the application.
    The enabled state is global and checked on every call, so module level
    loggers created at import time follow later calls to setup_safe_logging().
    """

    def __init__(self, name: str):
        self.name = name
        self._logger = logging.getLogger(name)

    @property
    def enabled(self) -> bool:
        return _logging_enabled

    def is_enabled_for(self, level: int) -> bool:
        """True when a message at this level would actually be emitted"""
        if not _logging_enabled:
            return False
        try:
            return self._logger.isEnabledFor(level)
        except Exception:
            return False

    def _safe_log(self, level: int, msg: Any, *args, **kwargs):
        """Safely log a message, ignoring any errors"""
        if not _logging_enabled:
            return

        try:
            self._logger.log(level, msg, *args, **kwargs)
        except Exception:
            # Logging must never interrupt a relay
            pass

    def debug(self, msg: Any, *args, **kwargs):
        self._safe_log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: Any, *args, **kwargs):
        self._safe_log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: Any, *args, **kwargs):
        self._safe_log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: Any, *args, **kwargs):
        self._safe_log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: Any, *args, exc_info=True, **kwargs):
        """Log exception safely"""
        self._safe_log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)

    def critical(self, msg: Any, *args, **kwargs):
        self._safe_log(logging.CRITICAL, msg, *args, **kwargs)


class ColorFormatter(logging.Formatter):
    """Formatter that wraps the level name in an ANSI color"""

    def format(self, record: logging.LogRecord) -> str:
        color = LEVEL_COLORS.get(record.levelno)
        if not color:
            return super().format(record)
        original = record.levelname
        record.levelname = f"{color}{original}{COLOR_RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


# Global logging state
_logging_enabled = False
_loggers: Dict[str, SafeLogger] = {}
_installed_handlers = []


def supports_color(stream=None) -> bool:
    """
    Check whether ANSI colors should be written to a stream.

    Windows consoles and redirected output get plain text, and NO_COLOR
    disables colors everywhere.
    """
    stream = stream or sys.stdout
    if os.environ.get('NO_COLOR') is not None:
        return False
    if platform.system() == 'Windows':
        return False
    isatty = getattr(stream, 'isatty', None)
    return bool(isatty and isatty())


def check_log_writability(path: str) -> bool:
    """
    Test if we can append to the given log file.

    Returns:
        True if the file (and its directory) is writable, False otherwise
    """
    try:
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        with open(path, 'a'):
            pass
        return True
    except (OSError, IOError, PermissionError):
        return False


def setup_safe_logging(enabled: bool = True,
                       level: int = logging.WARNING,
                       fmt: str = DEFAULT_FORMAT,
                       log_file: Optional[str] = None,
                       max_bytes: int = 10 * 1024 * 1024,
                       backup_count: int = 5,
                       color: bool = False,
                       console: bool = True,
                       components: Optional[Dict[str, int]] = None) -> bool:
    """
    Setup safe logging system.

    Args:
        enabled: Whether to enable logging at all
        level: Root logging level
        fmt: Log record format
        log_file: Optional rotating log file, skipped if not writable
        max_bytes: Rotation size of the log file
        backup_count: Number of rotated files to keep
        color: Color level names on the console when the terminal supports it
        console: Whether to log to stdout
        components: Per-logger level overrides

    Returns:
        True if logging was successfully enabled, False otherwise
    """
    global _logging_enabled
    _logging_enabled = False  # Start disabled

    root = logging.getLogger()
    for handler in _installed_handlers:
        root.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    if not enabled:
        return False

    try:
        root.setLevel(level)

        if console:
            console_handler = logging.StreamHandler(sys.stdout)
            if color and supports_color(sys.stdout):
                console_handler.setFormatter(ColorFormatter(fmt))
            else:
                console_handler.setFormatter(logging.Formatter(fmt))
            root.addHandler(console_handler)
            _installed_handlers.append(console_handler)

        if log_file:
            if check_log_writability(log_file):
                file_handler = RotatingFileHandler(
                    log_file,
                    maxBytes=max_bytes,
                    backupCount=backup_count
                )
                file_handler.setFormatter(logging.Formatter(fmt))
                root.addHandler(file_handler)
                _installed_handlers.append(file_handler)
            else:
                print(f"Warning: Cannot write to log file {log_file} - file logging disabled")

        for component, component_level in (components or {}).items():
            logging.getLogger(component).setLevel(component_level)

        _logging_enabled = True
        return True
    except Exception as e:
        print(f"Warning: Logging setup failed ({e}) - logging disabled")
        return False


def get_safe_logger(name: str) -> SafeLogger:
    """
    Get a safe logger instance.

    Args:
        name: Logger name

    Returns:
        SafeLogger instance
    """
    if name not in _loggers:
        _loggers[name] = SafeLogger(name)
    return _loggers[name]


def is_logging_enabled() -> bool:
    """Check if logging is currently enabled"""
    return _logging_enabled


def parse_size(size: str) -> int:
    """Parse sizes like '10MB' or '1GB' into bytes"""
    size = str(size).strip().upper()
    if size.endswith('KB'):
        return int(size[:-2]) * 1024
    if size.endswith('MB'):
        return int(size[:-2]) * 1024 * 1024
    if size.endswith('GB'):
        return int(size[:-2]) * 1024 * 1024 * 1024
    return int(size)
