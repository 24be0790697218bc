"""Tests for cached, serialised snapshot refreshes."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import List

import pytest
from dex_price_discovery.config.settings import AnchorConfig, AppConfig, PropagationConfig, RefreshConfig
from dex_price_discovery.datalake.schemas import PoolEdge, RunInputs, TokenMetadata
from dex_price_discovery.monitoring.metrics import METRICS
from dex_price_discovery.pricing.coordinator import RefreshCoordinator
from dex_price_discovery.pricing.errors import RunFailedError, RunTimeoutError, SourceError

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeSource:
    def __init__(self) -> None:
        self.calls = 0
        self.fail = False
        self.delay = 0.0
        self.gate: threading.Event | None = None
        self.btc_price = 60_000.0

    def load(self) -> RunInputs:
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise SourceError("upstream unavailable")
        return RunInputs(
            pools=[PoolEdge("p1", "sbtc", "tkn", 100_000_000, 60_000_000 * 10**6, NOW)],
            tokens={"sbtc": TokenMetadata("sbtc", 8), "tkn": TokenMetadata("tkn", 6)},
            btc_price_usd=self.btc_price,
        )


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _config(**refresh) -> AppConfig:
    return AppConfig(
        anchors=AnchorConfig(stablecoins=["usdc"], btc_token_id="sbtc"),
        propagation=PropagationConfig(decay_factor=0.8),
        refresh=RefreshConfig(**{"ttl_seconds": 60, **refresh}),
    )


def _coordinator(source: FakeSource, clock: Clock, **refresh) -> RefreshCoordinator:
    return RefreshCoordinator(source, _config(**refresh), timer=clock)


def test_snapshot_is_cached_until_ttl_expires() -> None:
    source, clock = FakeSource(), Clock()
    with _coordinator(source, clock) as coordinator:
        first = coordinator.get_snapshot()
        clock.now = 30.0
        assert coordinator.get_snapshot() is first
        assert source.calls == 1
        assert not coordinator.needs_refresh()

        clock.now = 61.0
        assert coordinator.needs_refresh()
        second = coordinator.get_snapshot()

    assert second is not first
    assert (first.version, second.version) == (1, 2)
    assert source.calls == 2


def test_failed_refresh_keeps_and_serves_previous_snapshot() -> None:
    METRICS.reset()
    source, clock = FakeSource(), Clock()
    with _coordinator(source, clock) as coordinator:
        published = coordinator.get_snapshot()

        source.fail = True
        clock.now = 120.0
        assert coordinator.get_snapshot() is published
        # The coordinator does not retry; sources own their retry policy.
        assert source.calls == 2

        with pytest.raises(RunFailedError):
            coordinator.refresh(force=True)
        assert coordinator.snapshot is published

        stats = coordinator.stats()
        assert stats["version"] == 1
        assert stats["consecutive_failures"] == 2
        assert "upstream unavailable" in stats["last_error"]

        source.fail = False
        recovered = coordinator.refresh(force=True)
        assert recovered.version == 2
        assert coordinator.stats()["consecutive_failures"] == 0

    assert METRICS.get("refresh.stale_served") == 1
    assert METRICS.get("refresh.failures") == 2


def test_failure_without_snapshot_raises() -> None:
    source, clock = FakeSource(), Clock()
    source.fail = True
    with _coordinator(source, clock) as coordinator:
        with pytest.raises(RunFailedError):
            coordinator.get_snapshot()
        assert coordinator.snapshot is None


def test_invalid_oracle_price_is_a_failed_run() -> None:
    source, clock = FakeSource(), Clock()
    source.btc_price = 0.0
    with _coordinator(source, clock) as coordinator:
        with pytest.raises(RunFailedError):
            coordinator.refresh()
        assert coordinator.stats()["has_snapshot"] is False


def test_slow_run_times_out() -> None:
    source, clock = FakeSource(), Clock()
    source.delay = 0.5
    coordinator = _coordinator(source, clock, run_timeout_seconds=0.05)
    try:
        with pytest.raises(RunTimeoutError):
            coordinator.refresh()
        assert coordinator.snapshot is None
    finally:
        coordinator.close()


def test_concurrent_callers_share_one_run() -> None:
    source, clock = FakeSource(), Clock()
    source.gate = threading.Event()
    coordinator = _coordinator(source, clock)
    results: List[object] = []

    def reader() -> None:
        results.append(coordinator.refresh())

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for thread in threads:
        thread.start()
    time.sleep(0.05)
    source.gate.set()
    for thread in threads:
        thread.join(timeout=5)
    coordinator.close()

    assert source.calls == 1
    assert len(results) == 4
    assert all(result is results[0] for result in results)


def test_refresh_waits_for_timed_out_run_before_starting_another() -> None:
    METRICS.reset()
    source, clock = FakeSource(), Clock()
    source.delay = 0.8
    coordinator = _coordinator(source, clock, run_timeout_seconds=0.2)
    try:
        with pytest.raises(RunTimeoutError):
            coordinator.refresh()

        with pytest.raises(RunFailedError) as busy:
            coordinator.refresh()
        assert not isinstance(busy.value, RunTimeoutError)
        assert "not started" in str(busy.value)
        assert source.calls == 1

        source.delay = 0.0
        time.sleep(1.0)
        snapshot = coordinator.refresh()
        assert snapshot.version == 1
        assert source.calls == 2
    finally:
        coordinator.close()

    assert METRICS.get("refresh.timeouts") == 1
    assert METRICS.get("refresh.worker_busy") == 1
