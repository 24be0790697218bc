"""Packages a run's prices and pool annotations into one immutable snapshot."""

from __future__ import annotations

from datetime import datetime
from types import MappingProxyType
from typing import Dict, Iterable, List, Optional

from ..datalake.schemas import (
    AnnotatedPool,
    Diagnostic,
    DiagnosticCode,
    GraphStats,
    PoolAnnotation,
    PriceSnapshot,
    TokenPriceData,
    Unpriced,
)
from ..utils.constants import utc_now
from .graph import PoolGraph
from .liquidity import LiquidityRanking
from .propagation import PropagationOutcome


class ResultAssembler:
    """Builds `PriceSnapshot` objects; never touches a published snapshot."""

    def __init__(self, btc_token_id: str) -> None:
        self._btc_token_id = btc_token_id

    def assemble(
        self,
        *,
        graph: PoolGraph,
        outcome: PropagationOutcome,
        ranking: LiquidityRanking,
        btc_price_usd: float,
        version: int,
        run_id: str,
        generated_at: Optional[datetime] = None,
        extra_diagnostics: Iterable[Diagnostic] = (),
    ) -> PriceSnapshot:
        timestamp = generated_at or utc_now()
        members = graph.graph_tokens

        prices: Dict[str, TokenPriceData] = {}
        for token_id in sorted(outcome.prices):
            result = outcome.prices[token_id]
            metadata = graph.tokens.get(token_id)
            prices[token_id] = TokenPriceData(
                token_id=token_id,
                usd_price=result.usd_price,
                sbtc_ratio=result.usd_price / btc_price_usd,
                confidence=result.confidence,
                paths_used=result.paths_used,
                total_liquidity=result.total_liquidity,
                last_updated=timestamp,
                hop_count=result.hop_count,
                symbol=metadata.symbol if metadata else None,
                source_pool_id=result.source_pool_id,
                via_token=result.via_token,
                price_variation=result.price_variation,
                is_anchor=result.is_anchor,
            )

        unpriced = tuple(
            Unpriced(token_id=token_id, reason="no anchor path within the cycle limit")
            for token_id in sorted(members - set(prices))
        )

        pools = tuple(
            AnnotatedPool(
                pool=pool,
                annotation=ranking.annotations.get(pool_id, PoolAnnotation()),
            )
            for pool_id, pool in sorted(graph.pools.items())
        )

        diagnostics: List[Diagnostic] = [*extra_diagnostics, *graph.diagnostics, *outcome.diagnostics]
        for token_id, result in sorted(outcome.prices.items()):
            if result.is_anchor and token_id not in members:
                diagnostics.append(
                    Diagnostic(
                        code=DiagnosticCode.ANCHOR_NOT_IN_GRAPH,
                        message=f"anchor {token_id} has no usable pool in this run",
                        token_id=token_id,
                    )
                )

        priced_members = sum(1 for token_id in members if token_id in prices)
        total_pools = len(graph.pools)
        stats = GraphStats(
            total_tokens=len(members),
            total_pools=total_pools,
            usable_pools=len(graph.usable_pools),
            avg_pools_per_token=round(total_pools * 2 / len(members), 2) if members else 0.0,
            btc_pair_count=sum(
                1
                for pool in graph.pools.values()
                if self._btc_token_id in (pool.token_a, pool.token_b)
            ),
            global_max_liquidity=ranking.max_liquidity_usd,
            priced_tokens=priced_members,
            coverage_pct=(priced_members / len(members) * 100.0) if members else 0.0,
            cycles_run=outcome.cycles_run,
            converged=outcome.converged,
        )

        return PriceSnapshot(
            version=version,
            run_id=run_id,
            generated_at=timestamp,
            btc_price_usd=btc_price_usd,
            prices=MappingProxyType(prices),
            pools=pools,
            unpriced=unpriced,
            token_stats=MappingProxyType(dict(ranking.token_stats)),
            stats=stats,
            diagnostics=tuple(diagnostics),
        )


__all__ = ["ResultAssembler"]
