from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable

LOGGER_NAMESPACE = "pkcs11_harness"
DEFAULT_LOG_FILE = "logs/pkcs11-harness.log"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 5
REDACTED = "****"

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _parse_int(value: str, name: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {value}") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be >= 0, got: {value}")
    return parsed


def _resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    normalized = level.strip().upper()
    if normalized.isdigit():
        return int(normalized)
    numeric_level = getattr(logging, normalized, None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level}")
    return numeric_level


class SecretRedactingFilter(logging.Filter):
    """Replace known secret values (token PINs) in rendered log messages."""

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        super().__init__()
        self._secrets = {secret for secret in secrets if secret}

    def add_secret(self, secret: str) -> None:
        if secret:
            self._secrets.add(secret)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in self._secrets:
            redacted = redacted.replace(secret, REDACTED)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def _ensure_redacting_filter(handler: logging.Handler, secrets: Iterable[str]) -> None:
    for existing in handler.filters:
        if isinstance(existing, SecretRedactingFilter):
            for secret in secrets:
                existing.add_secret(secret)
            return
    handler.addFilter(SecretRedactingFilter(secrets))


def configure_logging(
    *,
    log_file: str | Path | None = None,
    level: str | int | None = None,
    max_bytes: int | None = None,
    backup_count: int | None = None,
    console: bool = False,
    secrets: Iterable[str] = (),
) -> logging.Logger:
    """
    Configure rotating file logging for the pkcs11_harness logger namespace.

    Environment variable overrides:
    - PKCS11_HARNESS_LOG_FILE
    - PKCS11_HARNESS_LOG_LEVEL
    - PKCS11_HARNESS_LOG_MAX_BYTES
    - PKCS11_HARNESS_LOG_BACKUP_COUNT

    ``secrets`` are masked in every message written by the handlers; the
    CLI passes the token PIN here. ``console`` adds a stderr handler.
    """

    resolved_log_file = Path(
        str(log_file or os.environ.get("PKCS11_HARNESS_LOG_FILE", DEFAULT_LOG_FILE))
    )
    numeric_level = _resolve_level(
        level or os.environ.get("PKCS11_HARNESS_LOG_LEVEL", DEFAULT_LOG_LEVEL)
    )

    if max_bytes is None:
        max_bytes = _parse_int(
            os.environ.get("PKCS11_HARNESS_LOG_MAX_BYTES", str(DEFAULT_LOG_MAX_BYTES)),
            "PKCS11_HARNESS_LOG_MAX_BYTES",
        )
    if backup_count is None:
        backup_count = _parse_int(
            os.environ.get(
                "PKCS11_HARNESS_LOG_BACKUP_COUNT", str(DEFAULT_LOG_BACKUP_COUNT)
            ),
            "PKCS11_HARNESS_LOG_BACKUP_COUNT",
        )
    if max_bytes < 0:
        raise ValueError("max_bytes must be >= 0.")
    if backup_count < 0:
        raise ValueError("backup_count must be >= 0.")

    secrets = tuple(secrets)
    resolved_log_file.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(LOGGER_NAMESPACE)
    logger.setLevel(numeric_level)
    logger.propagate = False

    resolved_path = resolved_log_file.resolve()
    file_handler: logging.Handler | None = None
    for existing in logger.handlers:
        if (
            isinstance(existing, RotatingFileHandler)
            and Path(existing.baseFilename).resolve() == resolved_path
        ):
            existing.setLevel(numeric_level)
            file_handler = existing

    if file_handler is None:
        file_handler = RotatingFileHandler(
            resolved_log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(file_handler)
        logger.info(
            "Configured rotating file logging (path=%s, level=%s, max_bytes=%d, backup_count=%d)",
            resolved_log_file,
            logging.getLevelName(numeric_level),
            max_bytes,
            backup_count,
        )
    _ensure_redacting_filter(file_handler, secrets)

    if console:
        stream_handler = next(
            (
                existing
                for existing in logger.handlers
                if type(existing) is logging.StreamHandler
            ),
            None,
        )
        if stream_handler is None:
            stream_handler = logging.StreamHandler(sys.stderr)
            stream_handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
            logger.addHandler(stream_handler)
        stream_handler.setLevel(numeric_level)
        _ensure_redacting_filter(stream_handler, secrets)

    return logger
