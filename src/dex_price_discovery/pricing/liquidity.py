"""USD liquidity and global relative ranking of pools."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping

from ..datalake.schemas import PoolAnnotation, PoolEdge, PriceResult, TokenStats
from ..monitoring.logger import get_logger
from .decimals import geometric_liquidity, usd_value
from .graph import PoolGraph

logger = get_logger(__name__)


@dataclass(slots=True)
class LiquidityRanking:
    annotations: Dict[str, PoolAnnotation]
    token_stats: Dict[str, TokenStats]
    max_liquidity_usd: float


def pool_liquidity_usd(
    pool: PoolEdge,
    decimals_a: int,
    decimals_b: int,
    prices: Mapping[str, PriceResult],
) -> float:
    """Geometric mean of both sides' USD value; 0 unless both sides are priced."""

    if not pool.is_usable:
        return 0.0
    price_a = prices.get(pool.token_a)
    price_b = prices.get(pool.token_b)
    if price_a is None or price_b is None:
        return 0.0
    return geometric_liquidity(
        usd_value(pool.reserve_a, decimals_a, price_a.usd_price),
        usd_value(pool.reserve_b, decimals_b, price_b.usd_price),
    )


class LiquidityRanker:
    """Annotates every retained pool with absolute and relative liquidity."""

    def rank(self, graph: PoolGraph, prices: Mapping[str, PriceResult]) -> LiquidityRanking:
        absolute: Dict[str, float] = {}
        for pool_id, pool in graph.pools.items():
            absolute[pool_id] = pool_liquidity_usd(
                pool,
                graph.decimals_of(pool.token_a),
                graph.decimals_of(pool.token_b),
                prices,
            )

        max_liquidity = max(absolute.values(), default=0.0)
        annotations: Dict[str, PoolAnnotation] = {}
        for pool_id, liquidity in absolute.items():
            relative = 100.0 * liquidity / max_liquidity if max_liquidity > 0 else 0.0
            annotations[pool_id] = PoolAnnotation(
                liquidity_usd=liquidity,
                liquidity_relative=relative,
            )

        pool_counts: Dict[str, int] = {}
        totals: Dict[str, float] = {}
        for pool_id, pool in graph.pools.items():
            for token_id in (pool.token_a, pool.token_b):
                pool_counts[token_id] = pool_counts.get(token_id, 0) + 1
                totals[token_id] = totals.get(token_id, 0.0) + absolute[pool_id]
        token_stats = {
            token_id: TokenStats(
                token_id=token_id,
                pool_count=pool_counts[token_id],
                total_liquidity_usd=totals[token_id],
            )
            for token_id in sorted(pool_counts)
        }

        if max_liquidity > 1_000_000_000:
            logger.warning(
                "Very high maximum pool liquidity $%.0f compresses relative scores",
                max_liquidity,
            )
        return LiquidityRanking(
            annotations=annotations,
            token_stats=token_stats,
            max_liquidity_usd=max_liquidity,
        )


def rank_pools(graph: PoolGraph, prices: Mapping[str, PriceResult]) -> Dict[str, PoolAnnotation]:
    """Convenience wrapper returning only the per-pool annotations."""

    return LiquidityRanker().rank(graph, prices).annotations


__all__ = ["LiquidityRanker", "LiquidityRanking", "pool_liquidity_usd", "rank_pools"]
