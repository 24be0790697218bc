"""Tests for the pool graph builder."""

from __future__ import annotations

from datetime import datetime, timezone

from dex_price_discovery.datalake.schemas import DiagnosticCode, PoolEdge, TokenMetadata
from dex_price_discovery.monitoring.metrics import METRICS
from dex_price_discovery.pricing.graph import build_graph

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)

TOKENS = {
    "usdc": TokenMetadata("usdc", 6, "USDC"),
    "sbtc": TokenMetadata("sbtc", 8, "sBTC"),
    "tkn": TokenMetadata("tkn", 6, "TKN"),
}


def _pool(pool_id: str, token_a: str, token_b: str, reserve_a: int, reserve_b: int) -> PoolEdge:
    return PoolEdge(pool_id, token_a, token_b, reserve_a, reserve_b, NOW)


def test_build_graph_indexes_both_sides() -> None:
    graph = build_graph(
        [
            _pool("p2", "tkn", "usdc", 10, 20),
            _pool("p1", "sbtc", "tkn", 5, 7),
        ],
        TOKENS,
    )

    assert [(neighbor, pool.pool_id) for neighbor, pool in graph.neighbors("tkn")] == [
        ("sbtc", "p1"),
        ("usdc", "p2"),
    ]
    assert [neighbor for neighbor, _ in graph.neighbors("usdc")] == ["tkn"]
    assert graph.graph_tokens == {"usdc", "sbtc", "tkn"}
    assert graph.neighbors("missing") == []
    assert graph.diagnostics == []


def test_malformed_pools_become_diagnostics() -> None:
    METRICS.reset()
    graph = build_graph(
        [
            _pool("self", "tkn", "tkn", 1, 1),
            _pool("neg", "tkn", "usdc", -1, 5),
            _pool("ghost", "tkn", "unknown", 1, 1),
            _pool("ok", "tkn", "usdc", 1, 1),
            _pool("ok", "sbtc", "usdc", 1, 1),
        ],
        TOKENS,
    )

    codes = {diag.pool_id: diag.code for diag in graph.diagnostics}
    assert codes["self"] is DiagnosticCode.SELF_POOL
    assert codes["neg"] is DiagnosticCode.NEGATIVE_RESERVE
    assert codes["ghost"] is DiagnosticCode.UNKNOWN_TOKEN
    assert codes["ok"] is DiagnosticCode.DUPLICATE_POOL
    assert list(graph.pools) == ["ok"]
    assert graph.pools["ok"].token_a == "tkn"
    assert METRICS.get("graph.malformed_pools") == 4


def test_zero_reserve_pool_is_retained_but_not_traversable() -> None:
    graph = build_graph([_pool("dry", "sbtc", "tkn", 0, 100)], TOKENS)

    assert "dry" in graph.pools
    assert graph.usable_pools == []
    assert graph.neighbors("sbtc") == []
    assert [diag.code for diag in graph.diagnostics] == [DiagnosticCode.ZERO_RESERVE]
    assert graph.pools_for("tkn")[0].pool_id == "dry"


def test_competing_pools_for_one_pair_are_distinct_edges() -> None:
    graph = build_graph(
        [
            _pool("pa", "tkn", "usdc", 10, 20),
            _pool("pb", "usdc", "tkn", 40, 30),
        ],
        TOKENS,
    )

    assert [pool.pool_id for _, pool in graph.neighbors("tkn")] == ["pa", "pb"]
    assert graph.pools["pa"].pair_key == graph.pools["pb"].pair_key
    assert graph.diagnostics == []


def test_reserve_too_large_for_a_float_skips_only_that_pool() -> None:
    graph = build_graph(
        [
            _pool("huge", "tkn", "usdc", 1, 10**400),
            _pool("ok", "tkn", "usdc", 10, 20),
        ],
        TOKENS,
    )

    assert list(graph.pools) == ["ok"]
    assert [(diag.pool_id, diag.code) for diag in graph.diagnostics] == [
        ("huge", DiagnosticCode.INVALID_RECORD)
    ]
