from __future__ import annotations

from datetime import datetime, timezone

import pytest

from dex_price_discovery.datalake.schemas import PoolEdge, PriceResult, TokenMetadata
from dex_price_discovery.pricing.graph import build_graph
from dex_price_discovery.pricing.liquidity import LiquidityRanker, pool_liquidity_usd, rank_pools

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)

TOKENS = {
    "sbtc": TokenMetadata("sbtc", 8),
    "tkn": TokenMetadata("tkn", 6),
    "usdc": TokenMetadata("usdc", 6),
    "x": TokenMetadata("x", 6),
}

PRICES = {
    "sbtc": PriceResult("sbtc", 60_000.0, 1.0, 0, 1, 0.0, is_anchor=True),
    "usdc": PriceResult("usdc", 1.0, 1.0, 0, 1, 0.0, is_anchor=True),
    "tkn": PriceResult("tkn", 0.001, 0.8, 1, 1, 60_000.0),
}


def test_pool_liquidity_is_symmetric() -> None:
    forward = PoolEdge("p1", "sbtc", "tkn", 100_000_000, 60_000_000 * 10**6, NOW)
    reverse = PoolEdge("p1", "tkn", "sbtc", 60_000_000 * 10**6, 100_000_000, NOW)

    value = pool_liquidity_usd(forward, 8, 6, PRICES)

    assert value == pytest.approx(60_000.0)
    assert pool_liquidity_usd(reverse, 6, 8, PRICES) == pytest.approx(value)


def test_pool_liquidity_needs_both_sides_priced() -> None:
    pool = PoolEdge("px", "tkn", "x", 1_000, 1_000, NOW)

    assert pool_liquidity_usd(pool, 6, 6, PRICES) == 0.0


def test_ranker_scales_relative_to_the_deepest_pool() -> None:
    graph = build_graph(
        [
            PoolEdge("deep", "sbtc", "tkn", 100_000_000, 60_000_000 * 10**6, NOW),
            PoolEdge("shallow", "usdc", "tkn", 15_000 * 10**6, 15_000_000 * 10**6, NOW),
            PoolEdge("dry", "usdc", "sbtc", 0, 100, NOW),
            PoolEdge("island", "x", "tkn", 10, 10, NOW),
        ],
        TOKENS,
    )

    ranking = LiquidityRanker().rank(graph, PRICES)

    assert ranking.max_liquidity_usd == pytest.approx(60_000.0)
    assert ranking.annotations["deep"].liquidity_relative == pytest.approx(100.0)
    assert ranking.annotations["shallow"].liquidity_usd == pytest.approx(15_000.0)
    assert ranking.annotations["shallow"].liquidity_relative == pytest.approx(25.0)
    assert ranking.annotations["dry"].liquidity_usd == 0.0
    assert ranking.annotations["dry"].liquidity_relative == 0.0
    assert ranking.annotations["island"].liquidity_usd == 0.0

    assert ranking.token_stats["tkn"].pool_count == 3
    assert ranking.token_stats["tkn"].total_liquidity_usd == pytest.approx(75_000.0)
    assert ranking.token_stats["usdc"].pool_count == 2


def test_ranker_without_any_priced_pool_scores_zero() -> None:
    graph = build_graph([PoolEdge("island", "x", "tkn", 10, 10, NOW)], TOKENS)

    ranking = LiquidityRanker().rank(graph, {})

    assert ranking.max_liquidity_usd == 0.0
    assert ranking.annotations["island"].liquidity_relative == 0.0


def test_rank_pools_returns_annotations_only() -> None:
    graph = build_graph([PoolEdge("deep", "sbtc", "tkn", 100_000_000, 60_000_000 * 10**6, NOW)], TOKENS)

    annotations = rank_pools(graph, PRICES)

    assert list(annotations) == ["deep"]
    assert annotations["deep"].liquidity_relative == pytest.approx(100.0)
