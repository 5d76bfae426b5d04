"""Structured logging helpers."""

from __future__ import annotations

import logging

from rich.logging import RichHandler

from exambench.capture.sanitization import sanitize_text
from exambench.config import settings


class RedactingFilter(logging.Filter):
    """Masks API keys and bearer tokens in rendered log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = sanitize_text(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


def setup_logging(level: str | None = None) -> None:
    level = level or settings.log_level
    handler = RichHandler(rich_tracebacks=True, show_path=False)
    if settings.sanitize_logs:
        handler.addFilter(RedactingFilter())
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
    )
    # httpx logs every request at INFO; keep the run log readable
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
