"""Logging setup that tags every record with the discovery run it belongs to.

Records emitted inside :func:`run_scope` carry the run id and snapshot
version, so a single refresh can be followed across the graph builder,
propagation engine and coordinator. Output goes to stderr; stdout is kept
for snapshot JSON.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import IO, Any, Dict, Iterator, Optional

from ..config.settings import MonitoringConfig, get_app_config


@dataclass(slots=True, frozen=True)
class RunContext:
    run_id: str = "-"
    version: Optional[int] = None


_NO_RUN = RunContext()
_RUN_CONTEXT: ContextVar[RunContext] = ContextVar("run_context", default=_NO_RUN)
_CONFIGURED_HANDLER: Optional[logging.Handler] = None

_RESERVED = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"run_id", "snapshot_version"}


class _RunContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        context = _RUN_CONTEXT.get()
        record.run_id = context.run_id
        record.snapshot_version = context.version
        return True


def _fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED and not key.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": getattr(record, "run_id", "-"),
        }
        version = getattr(record, "snapshot_version", None)
        if version is not None:
            payload["snapshot_version"] = version
        fields = _fields(record)
        if fields:
            payload["fields"] = fields
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ConsoleFormatter(logging.Formatter):
    """Single-line output for interactive CLI use."""

    def format(self, record: logging.LogRecord) -> str:
        run = getattr(record, "run_id", "-")
        version = getattr(record, "snapshot_version", None)
        tag = run if version is None else f"{run} v{version}"
        line = f"{record.levelname:<7} [{tag}] {record.name}: {record.getMessage()}"
        fields = _fields(record)
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(
    config: Optional[MonitoringConfig] = None,
    *,
    stream: Optional[IO[str]] = None,
) -> logging.Handler:
    """Install the root handler once per process and return it."""

    global _CONFIGURED_HANDLER
    if _CONFIGURED_HANDLER is not None:
        return _CONFIGURED_HANDLER
    cfg = config or get_app_config().monitoring
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(ConsoleFormatter() if cfg.log_format == "text" else StructuredFormatter())
    handler.addFilter(_RunContextFilter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, cfg.log_level, logging.INFO))
    logging.captureWarnings(True)
    _CONFIGURED_HANDLER = handler
    return handler


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def current_run() -> RunContext:
    return _RUN_CONTEXT.get()


@contextmanager
def run_scope(run_id: Optional[str], version: Optional[int] = None) -> Iterator[RunContext]:
    """Tag records logged inside the block with ``run_id`` and ``version``."""

    context = RunContext(run_id or "-", version)
    token = _RUN_CONTEXT.set(context)
    try:
        yield context
    finally:
        _RUN_CONTEXT.reset(token)


__all__ = [
    "ConsoleFormatter",
    "RunContext",
    "StructuredFormatter",
    "configure_logging",
    "current_run",
    "get_logger",
    "run_scope",
]
