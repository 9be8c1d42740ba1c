from __future__ import annotations

import contextlib
import contextvars
import logging
import os
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

LOG_FILE = Path("logs/app.log")
DEFAULT_CATEGORY = "CONFIG"
CATEGORIES = {
    "SIP",
    "SDP",
    "RTP",
    "DNS",
    "CALLS",
    "CSV",
    "REPLAY",
    "CONFIG",
    "ERRORS",
}

# Propagated automatically within the calling thread; engine callback threads must re-set explicitly.
_correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="-")
_category_var: contextvars.ContextVar[str] = contextvars.ContextVar("category", default=DEFAULT_CATEGORY)


def short_uuid() -> str:
    return uuid.uuid4().hex[:8]


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_category() -> str:
    return _category_var.get()


@contextlib.contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[None]:
    token = _correlation_id_var.set(correlation_id or short_uuid())
    try:
        yield
    finally:
        _correlation_id_var.reset(token)


@contextlib.contextmanager
def category_context(category: str) -> Iterator[None]:
    token = _category_var.set(category if category in CATEGORIES else DEFAULT_CATEGORY)
    try:
        yield
    finally:
        _category_var.reset(token)


class ContextEnricherFilter(logging.Filter):
    """
    Ensures every LogRecord has:
      - category
      - correlation_id
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if not hasattr(record, "category") or not getattr(record, "category"):
            record.category = get_category()
        if not hasattr(record, "correlation_id") or not getattr(record, "correlation_id"):
            record.correlation_id = get_correlation_id()
        return True


def _file_handler(target: Path, formatter: logging.Formatter, enricher: logging.Filter) -> RotatingFileHandler:
    target.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        target,
        maxBytes=10 * 1024 * 1024,
        backupCount=10,
        encoding="utf-8",
    )
    handler.setFormatter(formatter)
    handler.addFilter(enricher)
    return handler


def setup_logging(log_file: Optional[Path] = None) -> None:
    """
    Central logging setup.

    Format (mandatory):
      %(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s |
      %(filename)s:%(lineno)d %(funcName)s() | %(message)s

    Calling again with ``log_file`` moves the rotating file to that path, so a
    command can switch to its configured log directory once the config is loaded.
    """
    fmt = (
        "%(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s | "
        "%(filename)s:%(lineno)d %(funcName)s() | %(message)s"
    )
    # Important: do NOT pass datefmt; default includes ",%03d" milliseconds.
    formatter = logging.Formatter(fmt=fmt)

    level_name = os.environ.get("SIPLOADTRACE_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    external_level_name = os.environ.get("SIPLOADTRACE_EXTERNAL_LIB_LOG_LEVEL", "WARNING").upper()
    external_level = getattr(logging, external_level_name, logging.WARNING)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for noisy in ("scapy", "scapy.runtime", "asyncio"):
        logging.getLogger(noisy).setLevel(external_level)

    current = getattr(root_logger, "_siploadtrace_file_handler", None)
    if current is not None:
        for h in root_logger.handlers:
            h.setLevel(level)
        if log_file is None or Path(current.baseFilename) == Path(log_file).resolve():
            return
        replacement = _file_handler(Path(log_file), formatter, ContextEnricherFilter())
        replacement.setLevel(level)
        root_logger.removeHandler(current)
        current.close()
        root_logger.addHandler(replacement)
        root_logger._siploadtrace_file_handler = replacement  # type: ignore[attr-defined]
        return

    enricher = ContextEnricherFilter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(enricher)

    file_handler = _file_handler(log_file or LOG_FILE, formatter, enricher)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)
    root_logger._siploadtrace_file_handler = file_handler  # type: ignore[attr-defined]
