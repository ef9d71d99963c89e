"""
Logging Setup - Console + rotating file handlers with secret masking
"""
import logging
import os
import re
from logging.handlers import RotatingFileHandler

from .config import settings

_SECRET_PATTERN = re.compile(r"(key|token|password|secret)=([^&\s]+)", re.IGNORECASE)
_EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")

SENSITIVE_KEYS = {"email", "phone", "password", "token", "secret", "api_key", "access_token"}


def sanitize_message(message: str) -> str:
    """Mask credentials and email addresses in free text"""
    message = _SECRET_PATTERN.sub(r"\1=***", message)
    return _EMAIL_PATTERN.sub("***@***", message)


def mask_sensitive_data(data):
    """Recursively mask values whose key looks sensitive"""
    if isinstance(data, dict):
        return {
            k: "***" if any(s in str(k).lower() for s in SENSITIVE_KEYS) else mask_sensitive_data(v)
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [mask_sensitive_data(item) for item in data]
    return data


class SensitiveDataFilter(logging.Filter):
    """Rewrites log records so secrets and PII never reach a handler"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = sanitize_message(record.getMessage())
        record.args = None
        return True


def setup_logging(log_file: str = "commercehub.log", level: str = None):
    """
    Configure root logging once per process.
    Rotating file: 50MB per file, keep 7 files.
    """
    level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    os.makedirs(settings.LOGS_PATH, exist_ok=True)

    mask = SensitiveDataFilter()

    file_handler = RotatingFileHandler(
        os.path.join(settings.LOGS_PATH, log_file),
        maxBytes=50 * 1024 * 1024,
        backupCount=7,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    file_handler.addFilter(mask)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    ))
    console_handler.addFilter(mask)

    # Quiet noisy libraries before installing handlers
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [file_handler, console_handler]
