"""
Secure Logger - credential masking for all security logs.

Wraps Python's standard logging so that passwords, tokens, TOTP secrets,
backup codes and authorization headers never reach a handler in clear
text, whatever module emits them.

Usage:
    from security.secure_logger import get_logger

    logger = get_logger(__name__)
    logger.warning(f"Rejected token Bearer {token}")
    # Logs: Rejected token ***MASKED***
"""

import logging
from typing import Any, Dict, Optional

from .data_sanitizer import DataSanitizer, get_sanitizer


class SanitizingLogFilter(logging.Filter):
    """Masks the message, its arguments and string extras of every record."""

    def __init__(self, sanitizer: Optional[DataSanitizer] = None):
        super().__init__()
        self.sanitizer = sanitizer or get_sanitizer()

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.sanitizer.sanitize_string(record.msg)

        # Sanitize arguments (for %s, %d formatting)
        if record.args:
            if isinstance(record.args, dict):
                record.args = self.sanitizer.sanitize_dict(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(self.sanitizer.sanitize_value(arg) for arg in record.args)

        if record.exc_info and record.exc_text:
            record.exc_text = self.sanitizer.sanitize_string(record.exc_text)

        for key, value in list(record.__dict__.items()):
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            if isinstance(value, dict):
                setattr(record, key, self.sanitizer.sanitize_dict(value))
            elif isinstance(value, str):
                setattr(record, key, self.sanitizer.sanitize_string(value))

        # Always emit, only masked
        return True


_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()) | {"message", "asctime"}


class SecureLogger(logging.LoggerAdapter):
    """
    Logger adapter that masks credentials in every message.

    Drop-in replacement for a standard logger.
    """

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})
        self.sanitizer = get_sanitizer()

        if not any(isinstance(f, SanitizingLogFilter) for f in logger.filters):
            logger.addFilter(SanitizingLogFilter(self.sanitizer))

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        if "extra" in kwargs:
            kwargs["extra"] = self.sanitizer.sanitize_dict(kwargs["extra"])

        if self.extra:
            kwargs.setdefault("extra", {})
            kwargs["extra"].update(self.extra)

        return msg, kwargs


# Global logger registry
_loggers: Dict[str, SecureLogger] = {}


def get_logger(name: str, extra: Optional[Dict[str, Any]] = None) -> SecureLogger:
    """
    Get a masking logger, the entry point for security modules.

    Example:
        logger = get_logger(__name__)
        logger.info("MFA device added", extra={"user_id": "u1", "secret": s})
        # extra["secret"] is emitted as ***MASKED***
    """
    if name not in _loggers:
        _loggers[name] = SecureLogger(logging.getLogger(name), extra)
    return _loggers[name]


def configure_secure_logging(
    level: int = logging.INFO,
    format_string: Optional[str] = None,
    add_console: bool = True,
    file_path: Optional[str] = None,
):
    """
    Configure masking for the whole application.

    Call once at startup; every root handler gets the masking filter so
    third-party loggers are covered too.
    """
    if format_string is None:
        format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    formatter = logging.Formatter(format_string)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handlers = []
    if add_console:
        handlers.append(logging.StreamHandler())
    if file_path:
        handlers.append(logging.FileHandler(file_path))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        # Handler-level so records from child loggers are masked as well
        handler.addFilter(SanitizingLogFilter())
        root_logger.addHandler(handler)


def log_security_event(
    logger: SecureLogger,
    event_type: str,
    severity: str,
    details: Optional[Dict] = None,
):
    """
    Log a security event at the level named by ``severity``.

    Args:
        event_type: e.g. account_locked, rate_limit_exceeded
        severity: INFO, WARNING, ERROR or CRITICAL
        details: Event details (masked)
    """
    sanitized_details = get_sanitizer().sanitize_dict(details) if details else {}

    level = getattr(logging, severity.upper(), logging.WARNING)
    logger.log(
        level,
        f"SECURITY: {event_type}",
        extra={
            "event_type": event_type,
            "severity": severity,
            "details": sanitized_details,
        },
    )


__all__ = [
    "get_logger",
    "configure_secure_logging",
    "log_security_event",
    "SecureLogger",
    "SanitizingLogFilter",
]
