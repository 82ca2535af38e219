"""
Structured logging with run-scoped trace ids.

Every line has the shape::

    t=<ISO8601> level=<LEVEL> trace=<run id> mod=<module> op=<func> [ms=<dur>] msg="..." k=v ...

The trace id is carried in a ``ContextVar`` so that concurrent runs scheduled
on the same event loop each log under their own id.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime

trace_id_ctx: ContextVar[str | None] = ContextVar("council_trace_id", default=None)

_loggers: dict[str, "StructuredLogger"] = {}

# Attributes every LogRecord carries; anything else was passed as a field.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}
_INTERNAL_FIELDS = {"trace_id", "op", "ms"}


class StructuredFormatter(logging.Formatter):
    """Render records as single-line key=value logs."""

    def format(self, record: logging.LogRecord) -> str:
        trace_id = getattr(record, "trace_id", None) or trace_id_ctx.get() or "-"
        mod = record.name.rsplit(".", 1)[-1]
        op = getattr(record, "op", None) or record.funcName or "-"
        duration = getattr(record, "ms", None)
        ms_part = f" ms={duration:.1f}" if duration is not None else ""

        fields = "".join(
            f" {key}={value}"
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and key not in _INTERNAL_FIELDS
        )
        line = (
            f"t={datetime.now(UTC).isoformat()} level={record.levelname} trace={trace_id} "
            f'mod={mod} op={op}{ms_part} msg="{record.getMessage()}"{fields}'
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredLogger:
    """Logger facade accepting structured keyword fields."""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)

    def _log(self, level: int, msg: str, exc_info: bool = False, **kwargs):
        extra = {k: v for k, v in kwargs.items() if k not in _RECORD_ATTRS}
        extra.setdefault("trace_id", trace_id_ctx.get())
        self.logger.log(level, msg, extra=extra, exc_info=exc_info, stacklevel=3)

    def debug(self, msg: str, **kwargs):
        self._log(logging.DEBUG, msg, **kwargs)

    def info(self, msg: str, **kwargs):
        self._log(logging.INFO, msg, **kwargs)

    def warning(self, msg: str, **kwargs):
        self._log(logging.WARNING, msg, **kwargs)

    def error(self, msg: str, **kwargs):
        self._log(logging.ERROR, msg, **kwargs)

    def exception(self, msg: str, **kwargs):
        self._log(logging.ERROR, msg, exc_info=True, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for the given module."""
    if name not in _loggers:
        _loggers[name] = StructuredLogger(name)
    return _loggers[name]


def setup_logging(level: str = "INFO") -> None:
    """Install the structured formatter on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper()))

    for noisy in ("httpx", "httpcore", "opentelemetry", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_trace_id() -> str | None:
    return trace_id_ctx.get()


@contextmanager
def bind_trace_id(trace_id: str) -> Iterator[str]:
    """Scope the trace id to a block, restoring the previous one afterwards."""
    token = trace_id_ctx.set(trace_id)
    try:
        yield trace_id
    finally:
        trace_id_ctx.reset(token)
