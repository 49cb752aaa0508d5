"""Application logging setup."""

from __future__ import annotations

import contextvars
import logging
import uuid

from app.config import settings

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s %(message)s"

trace_id: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="")

_configured = False


def set_trace_id(value: str | None = None) -> str:
    if not value:
        value = uuid.uuid4().hex[:12]
    trace_id.set(value)
    return value


def get_trace_id() -> str:
    return trace_id.get()


class _TraceIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "trace_id", None):
            record.trace_id = get_trace_id() or "-"
        return True


def configure_logging(level: str | None = None) -> None:
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler.addFilter(_TraceIdFilter())
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel((level or settings.log_level).upper())
    _configured = True


class ContextLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        extra = kwargs.get("extra") or {}
        if "trace_id" not in extra:
            tid = get_trace_id()
            if tid:
                extra["trace_id"] = tid
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> logging.LoggerAdapter:
    return ContextLoggerAdapter(logging.getLogger(name), {})
