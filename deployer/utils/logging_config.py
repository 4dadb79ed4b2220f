import logging
import sys
import os
import threading
from datetime import datetime

# Secret values currently bound by a SecretScope; masked in every record
_ACTIVE_SECRETS: dict[str, int] = {}
_SECRETS_LOCK = threading.Lock()
_MASK = "***"


def register_secret(value: str) -> None:
    if not value:
        return
    with _SECRETS_LOCK:
        _ACTIVE_SECRETS[value] = _ACTIVE_SECRETS.get(value, 0) + 1


def forget_secret(value: str) -> None:
    if not value:
        return
    with _SECRETS_LOCK:
        count = _ACTIVE_SECRETS.get(value, 0) - 1
        if count > 0:
            _ACTIVE_SECRETS[value] = count
        else:
            _ACTIVE_SECRETS.pop(value, None)


def redact(text: str) -> str:
    with _SECRETS_LOCK:
        secrets = sorted(_ACTIVE_SECRETS, key=len, reverse=True)
    for secret in secrets:
        text = text.replace(secret, _MASK)
    return text


class RedactingFilter(logging.Filter):
    """Mask bound credential values before a record reaches any handler."""

    def filter(self, record):
        with _SECRETS_LOCK:
            has_secrets = bool(_ACTIVE_SECRETS)
        if has_secrets:
            record.msg = redact(record.getMessage())
            record.args = None
        return True


LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVEL_COLORS = {
    logging.DEBUG: "\x1b[36m",
    logging.INFO: "\x1b[32m",
    logging.WARNING: "\x1b[33m",
    logging.ERROR: "\x1b[31m",
    logging.CRITICAL: "\x1b[31;1m",
}
_RESET = "\x1b[0m"


class ColoredFormatter(logging.Formatter):
    """Console formatter: one color per level, plain for unknown levels."""

    def __init__(self) -> None:
        super().__init__(LOG_FORMAT, datefmt=DATE_FORMAT)
        self._by_level = {
            level: logging.Formatter(color + LOG_FORMAT + _RESET, datefmt=DATE_FORMAT)
            for level, color in _LEVEL_COLORS.items()
        }

    def format(self, record):
        formatter = self._by_level.get(record.levelno)
        if formatter is None:
            return super().format(record)
        return formatter.format(record)


def setup_logging(level=logging.INFO, log_dir="logs"):
    """Setup centralized logging configuration."""
    root_logger = logging.getLogger()

    # Clear existing handlers to prevent duplicate logs
    if root_logger.handlers:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

    root_logger.setLevel(level)
    redactor = RedactingFilter()

    # 1. Console handler (stderr keeps stdout free for CI tooling)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter())
    console_handler.addFilter(redactor)
    root_logger.addHandler(console_handler)

    # 2. File handler for the run audit trail
    if log_dir:
        if not os.path.exists(log_dir):
            os.makedirs(log_dir)

        file_handler = logging.FileHandler(
            os.path.join(log_dir, f"pipeline_{datetime.now().strftime('%Y%m%d')}.log")
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        file_handler.addFilter(redactor)
        root_logger.addHandler(file_handler)

    for logger_name in ["deployer", "uvicorn", "uvicorn.error", "uvicorn.access", "main"]:
        l = logging.getLogger(logger_name)
        l.setLevel(level)
        l.propagate = True

    root_logger.info("Logging initialized (Console + File, secrets redacted).")
