"""Smoke tests for logging configuration."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from xfactor.logging_config import PII_LOGGERS, PiiScrubbingFilter, scrub_text, setup_logging


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


def test_scrub_text_masks_contacts_and_secrets() -> None:
    text = "mail jamie@example.com call 555-123-4567 sig=abcdef123456 token: zzzz9999"
    assert scrub_text(text) == "mail <email> call <phone> sig=<token> token: <token>"
    assert scrub_text("") == ""


def test_setup_logging_creates_files(tmp_path, restore_root_logging) -> None:
    log_dir = tmp_path / "logs"
    setup_logging(log_dir=str(log_dir), level="debug")

    logging.getLogger("testcase").info("hello from test")
    logging.getLogger("testcase").warning("warn message")
    logging.getLogger("audit").warning(
        "report filed: email=%s phone=%s secret=%s",
        "parent@example.com",
        "555-123-4567",
        "link-secret-value",
    )
    logging.getLogger("xfactor.system").error("link rejected sig=%s", "deadbeefcafe")

    for handler in logging.getLogger().handlers:
        if hasattr(handler, "flush"):
            handler.flush()

    main_log = Path(log_dir) / "xfactor.log"
    errors_log = Path(log_dir) / "errors.log"

    assert main_log.exists(), "main log file must be created"
    assert errors_log.exists(), "errors log file must be created"

    main_text = main_log.read_text(encoding="utf-8")
    errors_text = errors_log.read_text(encoding="utf-8")

    assert "hello from test" in main_text
    assert "hello from test" not in errors_text
    assert "warn message" in errors_text
    assert "parent@example.com" not in main_text
    assert "555-123-4567" not in main_text
    assert "link-secret-value" not in main_text
    assert "email=<email>" in main_text
    assert "secret=<token>" in errors_text
    assert "deadbeefcafe" in main_text
    assert "deadbeefcafe" not in errors_text
    assert "sig=<token>" in errors_text
    assert "logging initialized, level=DEBUG" in main_text


def test_pii_filter_installed_once(tmp_path, restore_root_logging) -> None:
    setup_logging(log_dir=str(tmp_path), level=logging.INFO)
    setup_logging(log_dir=str(tmp_path), level=logging.INFO)

    for name in PII_LOGGERS:
        filters = [f for f in logging.getLogger(name).filters if isinstance(f, PiiScrubbingFilter)]
        assert len(filters) == 1
