"""Logging setup for the growth service.

Two rotating files are written next to the console stream: ``xfactor.log``
with everything at the configured level and ``errors.log`` with warnings and
above.  The error file and the audit-style loggers listed in
``PII_LOGGERS`` never see raw contact details or link secrets.
"""

from __future__ import annotations

import logging
import re
from contextlib import suppress
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Pattern, Tuple

MAIN_LOG = "xfactor.log"
ERROR_LOG = "errors.log"
PII_LOGGERS = ("audit", "trust_safety", "agents.trust_safety")

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_SCRUBBERS: Tuple[Tuple[Pattern[str], str], ...] = (
    (re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE), "<email>"),
    (re.compile(r"\+?\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b|\b\+?\d{6,15}\b"), "<phone>"),
    (
        re.compile(r"(?P<key>(?:token|secret|sig)\s*[=:]\s*)[A-Za-z0-9._-]{4,}", re.IGNORECASE),
        r"\g<key><token>",
    ),
)

# Third-party loggers that are too chatty at INFO.
_QUIET = {
    "aiohttp.access": logging.WARNING,
    "apscheduler": logging.WARNING,
    "httpx": logging.WARNING,
    "asyncio": logging.INFO,
}


def scrub_text(value: str) -> str:
    """Mask emails, phone numbers and ``token=``/``secret=``/``sig=`` values."""

    if not value:
        return value
    for pattern, replacement in _SCRUBBERS:
        value = pattern.sub(replacement, value)
    return value


class PiiScrubbingFilter(logging.Filter):
    """Rewrites the record message with :func:`scrub_text` applied."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401 - standard logging hook
        record.msg = scrub_text(record.getMessage())
        record.args = ()
        return True


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _rotating(path: Path, level: int, *, max_bytes: int, backups: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backups, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT))
    return handler


def _reset_root(root: logging.Logger) -> None:
    for handler in list(root.handlers):
        root.removeHandler(handler)
        with suppress(Exception):  # pragma: no cover - best effort cleanup
            handler.close()


def _install_pii_filter() -> None:
    pii_filter = PiiScrubbingFilter()
    for name in PII_LOGGERS:
        target = logging.getLogger(name)
        target.filters = [f for f in target.filters if not isinstance(f, PiiScrubbingFilter)]
        target.addFilter(pii_filter)


def setup_logging(log_dir: str = "logs", level: int | str = logging.INFO) -> None:
    """Replace root handlers with console, main-file and error-file handlers."""

    level = _resolve_level(level)
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    _reset_root(root)

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT))
    root.addHandler(console)

    root.addHandler(_rotating(log_path / MAIN_LOG, level, max_bytes=5_000_000, backups=5))

    # Must stay last: the filter rewrites the shared record in place.
    errors = _rotating(log_path / ERROR_LOG, logging.WARNING, max_bytes=2_000_000, backups=3)
    errors.addFilter(PiiScrubbingFilter())
    root.addHandler(errors)

    for name, quiet_level in _QUIET.items():
        logging.getLogger(name).setLevel(quiet_level)
    _install_pii_filter()

    root.info("logging initialized, level=%s", logging.getLevelName(level))
    root.info("log_paths main=%s errors=%s", (log_path / MAIN_LOG).resolve(), (log_path / ERROR_LOG).resolve())


__all__ = ["ERROR_LOG", "MAIN_LOG", "PII_LOGGERS", "PiiScrubbingFilter", "scrub_text", "setup_logging"]
