import logging
import os
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, MutableMapping, Tuple

from flask import g, has_request_context

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
MAX_LOGGED_VALUE_LENGTH = 512
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_NAMED_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}


def log_level() -> int:
    return getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)


def _escape_control(match: "re.Match[str]") -> str:
    char = match.group()
    return _NAMED_ESCAPES.get(char, f"\\x{ord(char):02x}")


def sanitize_log_value(value: Any) -> Any:
    """Make a client-supplied value safe to embed in a one-line log record.

    Control characters are escaped and anything past
    ``MAX_LOGGED_VALUE_LENGTH`` characters is cut off. Bytes are decoded first;
    other types pass through untouched.
    """

    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="backslashreplace")
    if not isinstance(value, str):
        return value
    cleaned = _CONTROL_CHARS.sub(_escape_control, value)
    if len(cleaned) > MAX_LOGGED_VALUE_LENGTH:
        return cleaned[:MAX_LOGGED_VALUE_LENGTH] + "..."
    return cleaned


class RequestAwareLogger(logging.LoggerAdapter):
    """Prefixes records emitted while serving a request with its ``request_id``."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        request_id = getattr(g, "request_id", None) if has_request_context() else None
        if request_id:
            msg = f"request_id={request_id} {msg}"
        return msg, kwargs


def get_logger(name: str) -> RequestAwareLogger:
    return RequestAwareLogger(logging.getLogger(name), {})


def configure_logging(logs_dir: Path) -> Path:
    """Set the root level and attach a rotating file handler under *logs_dir*."""

    level = log_level()
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT)

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path
