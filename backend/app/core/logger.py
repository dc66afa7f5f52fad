"""
Application logger

Every record carries the correlation id of the HTTP request (or background
job) that produced it, so log lines for one sync can be grepped together.
"""
from __future__ import annotations

import logging
import sys
from contextvars import ContextVar

from app.core.config import settings

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s"


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = correlation_id_var.get()
        return True


def setup_logging(level: str | None = None) -> logging.Logger:
    root = logging.getLogger()
    root.setLevel((level or settings.LOG_LEVEL or "INFO").upper())

    if not any(getattr(h, "_processo_sync", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(CorrelationIdFilter())
        handler._processo_sync = True
        root.addHandler(handler)

    return logging.getLogger("app")


logger = setup_logging()
