"""Monitoring package exports and helpers."""

from __future__ import annotations

import json
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from ..config.settings import AppConfig, get_app_config
from .logger import configure_logging
from .metrics import METRICS


def bootstrap_observability(*, config: Optional[AppConfig] = None) -> None:
    """Configure structured logging for a process."""

    app_config = config or get_app_config()
    configure_logging(app_config.monitoring)


@contextmanager
def performance_monitor(operation_name: str) -> Iterator[None]:
    """Record call count and wall-clock duration of the wrapped block."""

    start_time = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start_time
        METRICS.observe(f"{operation_name}.duration_seconds", duration)
        METRICS.increment(f"{operation_name}.calls_total", 1.0)


def write_metrics(path: Path | str) -> Path:
    """Dump the registry for a textfile collector.

    A ``.json`` suffix writes the raw snapshot; anything else gets the
    Prometheus text format. The file is replaced atomically.
    """

    target = Path(path)
    if target.suffix.lower() == ".json":
        body = json.dumps(METRICS.snapshot(), indent=2, sort_keys=True) + "\n"
    else:
        body = METRICS.export_prometheus()
    target.parent.mkdir(parents=True, exist_ok=True)
    staging = target.with_name(f".{target.name}.tmp")
    staging.write_text(body, encoding="utf-8")
    os.replace(staging, target)
    return target


__all__ = ["bootstrap_observability", "performance_monitor", "write_metrics", "METRICS"]
