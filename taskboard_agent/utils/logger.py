"""
Logger module - Logging configuration and utilities

This module provides logging configuration with support for:
- File and console logging
- Configuration from .env
- Rotating log files
- Unicode-safe console output
"""

import logging
import logging.handlers
import os
import sys
import threading
from pathlib import Path
from typing import List, Optional

CONSOLE_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
FILE_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(funcName)s:%(lineno)d | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_handlers: Optional[List[logging.Handler]] = None
_handlers_lock = threading.Lock()


class SafeStreamHandler(logging.StreamHandler):
    """
    StreamHandler that never raises on characters the console cannot encode.
    """

    def emit(self, record):
        try:
            msg = self.format(record)
            try:
                self.stream.write(msg + self.terminator)
            except UnicodeEncodeError:
                encoding = getattr(self.stream, "encoding", None) or "ascii"
                self.stream.write(msg.encode(encoding, "replace").decode(encoding) + self.terminator)
            self.flush()
        except RecursionError:
            raise
        except Exception:
            self.handleError(record)


def _build_handlers() -> List[logging.Handler]:
    """
    Build the shared handler set from the environment.

    Reads AGENT_LOG_LEVEL, AGENT_LOG_FOLDER, AGENT_ENABLE_CONSOLE_LOGGING,
    AGENT_ENABLE_FILE_LOGGING, AGENT_LOG_MAX_BYTES and AGENT_LOG_BACKUP_COUNT.
    """
    from taskboard_agent.config.env_config import EnvConfig

    EnvConfig.load_env_file()

    level = EnvConfig.get("AGENT_LOG_LEVEL", "INFO").upper()
    log_folder = EnvConfig.get("AGENT_LOG_FOLDER", "./logs")
    enable_console = EnvConfig.get_bool("AGENT_ENABLE_CONSOLE_LOGGING", True)
    enable_file = EnvConfig.get_bool("AGENT_ENABLE_FILE_LOGGING", True)
    max_bytes = EnvConfig.get_int("AGENT_LOG_MAX_BYTES", 10 * 1024 * 1024)
    backup_count = EnvConfig.get_int("AGENT_LOG_BACKUP_COUNT", 5)

    handlers: List[logging.Handler] = []

    if enable_console:
        console = SafeStreamHandler(sys.stdout)
        console.setLevel(level)
        console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
        handlers.append(console)

    if enable_file:
        try:
            Path(log_folder).mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                os.path.join(log_folder, "taskboard_agent.log"),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
            handlers.append(file_handler)
        except OSError as e:
            # Console-only when the log folder is not writable
            logging.getLogger(__name__).warning(f"Failed to add file handler: {e}")

    return handlers


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Get or create a logger with standard formatting and .env configuration.

    The handler set is built once per process and shared by every logger
    returned from here, so all components write to the same rotating file.

    Args:
        name: Logger name (typically __name__)
        level: Optional logging level override (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        Configured logger instance
    """
    global _handlers

    with _handlers_lock:
        if _handlers is None:
            _handlers = _build_handlers()

    logger = logging.getLogger(name)
    if not getattr(logger, "_taskboard_configured", False):
        for handler in _handlers:
            logger.addHandler(handler)
        logger.setLevel((level or os.getenv("AGENT_LOG_LEVEL", "INFO")).upper())
        logger.propagate = False
        logger._taskboard_configured = True
    elif level:
        logger.setLevel(level.upper())

    return logger
