#!/usr/bin/env python3
"""
Centralized logging configuration for realmctl.
Provides the persistent manager log plus a structured JSON debug log.
"""

import logging
import logging.handlers
import sys
import json
from pathlib import Path
from datetime import datetime
from typing import Optional, Dict, Any

# Add custom VERBOSE log level
VERBOSE = 15  # Between INFO (20) and DEBUG (10)
logging.addLevelName(VERBOSE, "VERBOSE")

DEFAULT_LOG_FILE = Path("/var/log/realm_manager.log")
ROOT_LOGGER_NAME = "realmctl"


def verbose(self, message, *args, **kwargs):
    """Log with VERBOSE level."""
    if self.isEnabledFor(VERBOSE):
        self._log(VERBOSE, message, args, **kwargs)

# Add verbose method to Logger class
logging.Logger.verbose = verbose


class JSONFormatter(logging.Formatter):
    """Custom formatter that outputs structured JSON logs."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        # Add extra fields if present
        if hasattr(record, 'extra_fields'):
            log_entry.update(record.extra_fields)

        # Add exception info if present
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class StructuredLogger:
    """Logger wrapper that attaches keyword fields to the JSON debug log."""

    def __init__(self, name: str, base_logger: logging.Logger):
        self.name = name
        self.logger = base_logger

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, kwargs)

    def verbose(self, message: str, **kwargs):
        self._log(VERBOSE, message, kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        self._log(logging.CRITICAL, message, kwargs)

    def _log(self, level: int, message: str, extra_fields: Dict[str, Any]):
        """Internal method to log with extra fields."""
        if extra_fields:
            if not self.logger.isEnabledFor(level):
                return
            record = self.logger.makeRecord(
                self.logger.name, level, "", 0, message, (), None
            )
            record.extra_fields = extra_fields
            self.logger.handle(record)
        else:
            self.logger.log(level, message)


class LoggingConfig:
    """Centralized logging configuration for realmctl."""

    def __init__(self, log_file: Optional[Path] = None, log_dir: Optional[Path] = None,
                 log_level: str = "INFO"):
        self.log_file = Path(log_file) if log_file else DEFAULT_LOG_FILE
        self.log_dir = Path(log_dir) if log_dir else self.log_file.parent

        # Handle custom VERBOSE level
        if log_level.upper() == "VERBOSE":
            self.log_level = VERBOSE
        else:
            self.log_level = getattr(logging, log_level.upper(), logging.INFO)

        self.loggers = {}

        # Ensure log locations exist
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._setup_root_logger()

    def _setup_root_logger(self):
        """Configure the package logger with appropriate handlers."""
        root_logger = logging.getLogger(ROOT_LOGGER_NAME)
        root_logger.setLevel(min(self.log_level, logging.DEBUG))

        # Clear any existing handlers
        for handler in list(root_logger.handlers):
            handler.close()
        root_logger.handlers.clear()

        # Console handler: warnings and errors only, the menu prints its own messages
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.WARNING)
        console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
        root_logger.addHandler(console_handler)

        # Persistent manager log, one timestamped line per event
        main_handler = logging.FileHandler(self.log_file, encoding="utf-8")
        main_handler.setLevel(self.log_level)
        main_handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s: %(message)s', datefmt='%Y-%m-%d %H:%M:%S'
        ))
        root_logger.addHandler(main_handler)

        # Debug log file handler (JSON format for structured data)
        debug_handler = logging.handlers.RotatingFileHandler(
            self.log_dir / "realmctl-debug.log", maxBytes=10*1024*1024, backupCount=3,
            encoding="utf-8"
        )
        debug_handler.setLevel(logging.DEBUG)
        debug_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(debug_handler)

    def get_logger(self, name: str) -> StructuredLogger:
        """Get a structured logger for the given name."""
        if name not in self.loggers:
            base_logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
            self.loggers[name] = StructuredLogger(name, base_logger)
        return self.loggers[name]

    def set_console_level(self, level: str):
        """Adjust console logging level (useful for verbose mode)."""
        console_level = getattr(logging, level.upper(), logging.WARNING)
        root_logger = logging.getLogger(ROOT_LOGGER_NAME)
        for handler in root_logger.handlers:
            if type(handler) is logging.StreamHandler and handler.stream == sys.stderr:
                handler.setLevel(console_level)
                break

    def get_log_file(self) -> Path:
        return self.log_file


# Global logging configuration instance
_logging_config: Optional[LoggingConfig] = None


def setup_logging(log_file: Optional[Path] = None, log_dir: Optional[Path] = None,
                  log_level: str = "INFO", verbose_console: bool = False) -> LoggingConfig:
    """Initialize logging configuration."""
    global _logging_config
    _logging_config = LoggingConfig(log_file, log_dir, log_level)

    if verbose_console:
        _logging_config.set_console_level("INFO")

    return _logging_config


def get_logger(name: str) -> StructuredLogger:
    """Get a logger instance. Auto-initializes if not already set up."""
    if _logging_config is None:
        setup_logging()
    return _logging_config.get_logger(name)


def get_log_file() -> Path:
    """Get the persistent manager log path."""
    if _logging_config is None:
        setup_logging()
    return _logging_config.get_log_file()


def tail_log(log_file: Path, lines: int = 50) -> Optional[str]:
    """Return the last ``lines`` lines of a log file, or None if it is missing."""
    log_file = Path(log_file)
    if not log_file.exists():
        return None
    content = log_file.read_text(encoding="utf-8", errors="replace").splitlines()
    return "\n".join(content[-lines:]) if lines > 0 else ""
