"""Structured logging for pvelxcbuild."""

from __future__ import annotations

import logging
import threading

from rich.logging import RichHandler

REDACTED = "<sensitive>"


class LogSecretFilter(logging.Filter):
    """Process-wide registry of values that must never reach a log line.

    Attached to every handler created by get_logger(); the Ui routes its
    console output through redact() as well.
    """

    def __init__(self):
        super().__init__()
        self._secrets: set[str] = set()
        self._lock = threading.Lock()

    def set(self, *values: str | None) -> None:
        with self._lock:
            for value in values:
                if value:
                    self._secrets.add(value)

    def clear(self) -> None:
        with self._lock:
            self._secrets.clear()

    @property
    def secrets(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._secrets)

    def redact(self, text: str) -> str:
        # Longest first so a secret containing another is fully masked
        for secret in sorted(self.secrets, key=len, reverse=True):
            text = text.replace(secret, REDACTED)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if self._secrets:
            record.msg = self.redact(record.getMessage())
            record.args = None
        return True


log_secret_filter = LogSecretFilter()


def get_logger(name: str) -> logging.Logger:
    """Get a configured logger instance."""
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = RichHandler(
            show_time=True,
            show_path=False,
            markup=True,
            rich_tracebacks=True,
        )
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler.addFilter(log_secret_filter)
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

    return logger


def set_log_level(level: str) -> None:
    """Set global log level (DEBUG, INFO, WARNING, ERROR)."""
    numeric = getattr(logging, level.upper(), logging.INFO)
    for name, logger in logging.Logger.manager.loggerDict.items():
        if name.startswith("pvelxcbuild") and isinstance(logger, logging.Logger):
            logger.setLevel(numeric)
