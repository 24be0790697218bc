"""Serialised, cached refreshes of the published price snapshot."""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Optional

from cachetools import TTLCache

from ..config.settings import AppConfig, get_app_config
from ..datalake.schemas import PriceSnapshot
from ..ingestion.pool_source import PoolSource
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import utc_now
from .errors import RunFailedError, RunTimeoutError
from .pipeline import discover_from_inputs

logger = get_logger(__name__)

_CACHE_KEY = "current"


class RefreshCoordinator:
    """Owns the current snapshot and guarantees at most one run in flight.

    Readers call :meth:`get_snapshot`, which returns the cached snapshot while
    it is younger than ``refresh.ttl_seconds`` and refreshes otherwise. A
    failed refresh never replaces the published snapshot; the stale one is
    served instead when it exists.
    """

    def __init__(
        self,
        source: PoolSource,
        config: Optional[AppConfig] = None,
        *,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._config = config or get_app_config()
        refresh = self._config.refresh
        self._timer = timer
        self._cache: TTLCache[str, int] = TTLCache(maxsize=1, ttl=max(refresh.ttl_seconds, 0), timer=timer)
        # Single worker: a timed-out run keeps the slot until it returns.
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="price-refresh")
        self._abandoned: Optional[Future[PriceSnapshot]] = None
        self._abandoned_version = 0
        self._run_lock = threading.Lock()
        self._snapshot: Optional[PriceSnapshot] = None
        self._published_at: Optional[float] = None
        self._version = 0
        self._attempts = 0
        self._last_failed = False
        self._last_error: Optional[BaseException] = None
        self._last_success_at = None
        self._last_failure_at = None
        self._consecutive_failures = 0

    @property
    def snapshot(self) -> Optional[PriceSnapshot]:
        """Currently published snapshot, without triggering a refresh."""

        return self._snapshot

    def get_snapshot(self) -> PriceSnapshot:
        current = self._snapshot
        if current is not None and _CACHE_KEY in self._cache:
            return current
        try:
            return self.refresh()
        except RunFailedError as exc:
            stale = self._snapshot
            if stale is None:
                raise
            logger.warning(
                "Serving stale snapshot v%d after failed refresh: %s",
                stale.version,
                exc,
            )
            METRICS.increment("refresh.stale_served")
            return stale

    def refresh(self, force: bool = False) -> PriceSnapshot:
        """Run discovery unless another caller's run already answered this request."""

        observed = self._attempts
        with self._run_lock:
            if self._attempts != observed:
                # A run finished while this caller waited for the lock.
                if self._last_failed:
                    raise RunFailedError(f"shared refresh failed: {self._last_error}") from self._last_error
                if self._snapshot is not None:
                    return self._snapshot
            if not force and self._snapshot is not None and _CACHE_KEY in self._cache:
                return self._snapshot
            return self._run_locked()

    def needs_refresh(self, max_age: Optional[float] = None) -> bool:
        if self._snapshot is None or self._published_at is None:
            return True
        limit = self._config.refresh.ttl_seconds if max_age is None else max_age
        return (self._timer() - self._published_at) > limit

    def stats(self) -> Dict[str, Any]:
        return {
            "version": self._version,
            "has_snapshot": self._snapshot is not None,
            "runs_attempted": self._attempts,
            "last_success": self._last_success_at.isoformat() if self._last_success_at else None,
            "last_failure": self._last_failure_at.isoformat() if self._last_failure_at else None,
            "last_error": str(self._last_error) if self._last_error else None,
            "consecutive_failures": self._consecutive_failures,
        }

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def __enter__(self) -> "RefreshCoordinator":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _execute(self, version: int) -> PriceSnapshot:
        inputs = self._source.load()
        return discover_from_inputs(inputs, config=self._config, version=version)

    def _await_idle_worker(self, version: int, timeout: float) -> None:
        abandoned = self._abandoned
        if abandoned is None:
            return
        if not abandoned.done():
            logger.warning(
                "Worker still busy with timed-out run v%d; waiting up to %.1fs before v%d",
                self._abandoned_version,
                timeout,
                version,
            )
            wait_futures([abandoned], timeout=timeout)
        if not abandoned.done():
            METRICS.increment("refresh.worker_busy")
            busy = RunFailedError(
                f"discovery run v{version} not started: worker still busy with "
                f"timed-out run v{self._abandoned_version}"
            )
            self._record_failure(busy)
            raise busy
        logger.info("Timed-out run v%d has finished; worker is idle", self._abandoned_version)
        self._abandoned = None

    def _run_locked(self) -> PriceSnapshot:
        version = self._version + 1
        timeout = self._config.refresh.run_timeout_seconds
        self._await_idle_worker(version, timeout)
        # The worker is idle, so the timeout below covers the run itself.
        future = self._executor.submit(self._execute, version)
        try:
            snapshot = future.result(timeout=timeout)
        except FutureTimeout as exc:
            self._abandoned = future
            self._abandoned_version = version
            METRICS.increment("refresh.timeouts")
            timed_out = RunTimeoutError(f"discovery run v{version} exceeded {timeout:.1f}s")
            self._record_failure(timed_out)
            raise timed_out from exc
        except Exception as exc:
            self._record_failure(exc)
            raise RunFailedError(f"discovery run v{version} failed: {exc}") from exc

        self._snapshot = snapshot
        self._version = version
        self._attempts += 1
        self._published_at = self._timer()
        self._cache[_CACHE_KEY] = version
        self._last_failed = False
        self._last_success_at = utc_now()
        self._consecutive_failures = 0
        METRICS.increment("refresh.success")
        METRICS.gauge("refresh.version", version)
        logger.info("Published snapshot v%d (run %s)", version, snapshot.run_id)
        return snapshot

    def _record_failure(self, exc: BaseException) -> None:
        self._attempts += 1
        self._last_failed = True
        self._last_error = exc
        self._last_failure_at = utc_now()
        self._consecutive_failures += 1
        METRICS.increment("refresh.failures")
        logger.error(
            "Refresh failed (%d consecutive); keeping snapshot v%d: %s",
            self._consecutive_failures,
            self._version,
            exc,
        )


__all__ = ["RefreshCoordinator"]
