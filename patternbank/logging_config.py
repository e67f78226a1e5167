"""Structured logging configuration for patternbank.

Provides a consistent logging setup:
- Console handler: warnings and above
- File handler: debug and above, only when a log file is configured
  (configure_logging(log_file=...) or PATTERNBANK_LOG_FILE)
"""

import logging
import os
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "patternbank"
LOG_FILE_ENV = "PATTERNBANK_LOG_FILE"

# Module-level logger cache
_loggers = {}
_log_file: Optional[Path] = None


def _file_handler(path: Path) -> Optional[logging.Handler]:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path)
    except OSError:
        # Can't write to log file - continue with console only
        return None
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    ))
    return handler


def _root() -> logging.Logger:
    """Configure the parent logger once."""
    global _log_file
    root = logging.getLogger(ROOT_LOGGER)
    if root.handlers:
        return root

    root.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(logging.Formatter("[%(name)s] %(levelname)s: %(message)s"))
    root.addHandler(console_handler)

    env_file = os.environ.get(LOG_FILE_ENV)
    if env_file:
        handler = _file_handler(Path(env_file))
        if handler is not None:
            root.addHandler(handler)
            _log_file = Path(env_file)

    # Don't propagate to the application's root logger
    root.propagate = False
    return root


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Get a logger in the patternbank hierarchy.

    Args:
        name: Logger name (typically module name like "patternbank.memory.store")

    Returns:
        Configured logger instance
    """
    if name in _loggers:
        return _loggers[name]

    _root()
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    logger = logging.getLogger(name)

    _loggers[name] = logger
    return logger


def configure_logging(log_file: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    """Attach a DEBUG file handler and optionally lower the console level."""
    global _log_file
    root = _root()
    if log_file is not None and _log_file != Path(log_file):
        for h in [h for h in root.handlers if isinstance(h, logging.FileHandler)]:
            root.removeHandler(h)
            h.close()
        handler = _file_handler(Path(log_file))
        if handler is not None:
            root.addHandler(handler)
            _log_file = Path(log_file)
    if verbose:
        for h in root.handlers:
            if not isinstance(h, logging.FileHandler):
                h.setLevel(logging.DEBUG)
    return root


def current_log_file() -> Optional[Path]:
    return _log_file


def clear_log(log_file: Optional[Path] = None) -> bool:
    """Clear the log file. Returns True if a file was removed."""
    path = Path(log_file) if log_file else _log_file
    if path and path.exists():
        path.unlink()
        return True
    return False


def get_log_contents(log_file: Optional[Path] = None, max_lines: int = 100) -> list[str]:
    """Get recent log file contents.

    Args:
        log_file: Log file to read (defaults to the configured one)
        max_lines: Maximum number of lines to return

    Returns:
        List of log lines (most recent last)
    """
    path = Path(log_file) if log_file else _log_file
    if path is None or not path.exists():
        return []

    try:
        lines = path.read_text().strip().split("\n")
        return lines[-max_lines:]
    except OSError:
        return []
