from __future__ import annotations

import logging
from pathlib import Path

from pkcs11_harness import configure_logging


def _flush(logger: logging.Logger) -> None:
    for handler in logger.handlers:
        handler.flush()


def test_configure_logging_creates_rotating_log_file(tmp_path: Path) -> None:
    log_file = tmp_path / "pkcs11-harness.log"
    logger = configure_logging(
        log_file=log_file,
        level="INFO",
        max_bytes=1024,
        backup_count=2,
    )
    logging.getLogger("pkcs11_harness.provisioner").info("logging test message")
    _flush(logger)

    assert log_file.exists()
    contents = log_file.read_text(encoding="utf-8")
    assert "logging test message" in contents
    assert "pkcs11_harness.provisioner" in contents


def test_configured_secrets_are_redacted(tmp_path: Path) -> None:
    log_file = tmp_path / "redacted.log"
    logger = configure_logging(log_file=log_file, level="DEBUG", secrets=["12345678"])
    logger.info("Running pkcs11-tool --pin=%s --login", "12345678")
    _flush(logger)

    contents = log_file.read_text(encoding="utf-8")
    assert "12345678" not in contents
    assert "--pin=**** --login" in contents


def test_environment_overrides_log_file(tmp_path: Path, monkeypatch) -> None:
    log_file = tmp_path / "from-env.log"
    monkeypatch.setenv("PKCS11_HARNESS_LOG_FILE", str(log_file))
    monkeypatch.setenv("PKCS11_HARNESS_LOG_LEVEL", "WARNING")
    logger = configure_logging()
    logger.info("hidden")
    logger.warning("shown")
    _flush(logger)

    contents = log_file.read_text(encoding="utf-8")
    assert "shown" in contents
    assert "hidden" not in contents
