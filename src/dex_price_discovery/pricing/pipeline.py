"""Single discovery run: graph, anchors, propagation, ranking, snapshot."""

from __future__ import annotations

import uuid
from typing import Dict, Iterable, Mapping, Optional

from ..config.settings import AppConfig, get_app_config
from ..datalake.schemas import Diagnostic, PoolEdge, PriceSnapshot, RunInputs, TokenMetadata
from ..monitoring import performance_monitor
from ..monitoring.logger import get_logger, run_scope
from ..monitoring.metrics import METRICS
from .anchors import seed_anchors
from .assembler import ResultAssembler
from .graph import build_graph
from .liquidity import LiquidityRanker
from .propagation import PropagationEngine

logger = get_logger(__name__)


def discover_prices(
    pools: Iterable[PoolEdge],
    tokens: Mapping[str, TokenMetadata],
    btc_price_usd: Optional[float],
    *,
    config: Optional[AppConfig] = None,
    version: int = 0,
    diagnostics: Iterable[Diagnostic] = (),
    run_id: Optional[str] = None,
) -> PriceSnapshot:
    """Run one full discovery pass and return a new snapshot.

    ``btc_price_usd`` falls back to ``anchors.btc_price_usd`` from the
    configuration when not supplied. Configuration problems raise
    :class:`ConfigurationError` before any propagation cycle runs.
    """

    app_config = config or get_app_config()
    run_id = run_id or uuid.uuid4().hex
    oracle_price = btc_price_usd if btc_price_usd is not None else app_config.anchors.btc_price_usd

    with run_scope(run_id, version), performance_monitor("pricing.run"):
        anchors_cfg = app_config.anchors
        seeds = seed_anchors(
            anchors_cfg.stablecoins,
            anchors_cfg.btc_token_id,
            oracle_price,
            stablecoin_price_usd=anchors_cfg.stablecoin_price_usd,
        )
        engine = PropagationEngine(app_config.propagation)

        graph = build_graph(pools, tokens)
        outcome = engine.run(graph, seeds)
        ranking = LiquidityRanker().rank(graph, outcome.prices)
        snapshot = ResultAssembler(anchors_cfg.btc_token_id).assemble(
            graph=graph,
            outcome=outcome,
            ranking=ranking,
            btc_price_usd=seeds[anchors_cfg.btc_token_id].usd_price,
            version=version,
            run_id=run_id,
            extra_diagnostics=diagnostics,
        )

        METRICS.increment("pricing.runs")
        METRICS.increment("pricing.cycles", outcome.cycles_run)
        METRICS.gauge("pricing.priced_tokens", snapshot.stats.priced_tokens)
        METRICS.gauge("pricing.coverage_pct", snapshot.stats.coverage_pct)
        hops: Dict[str, float] = {}
        for price in snapshot.prices.values():
            key = str(price.hop_count)
            hops[key] = hops.get(key, 0.0) + 1
        METRICS.set_mapping("pricing.tokens_by_hop", hops)
        logger.info(
            "Run %s v%d: %d/%d tokens priced in %d cycles (converged=%s), %d diagnostics",
            run_id,
            version,
            snapshot.stats.priced_tokens,
            snapshot.stats.total_tokens,
            snapshot.stats.cycles_run,
            snapshot.stats.converged,
            len(snapshot.diagnostics),
        )
    return snapshot


def discover_from_inputs(
    inputs: RunInputs,
    *,
    config: Optional[AppConfig] = None,
    version: int = 0,
) -> PriceSnapshot:
    """Run discovery on parsed source inputs, carrying their diagnostics.

    A configured ``anchors.btc_price_usd`` overrides the price in the inputs.
    """

    app_config = config or get_app_config()
    override = app_config.anchors.btc_price_usd
    return discover_prices(
        inputs.pools,
        inputs.tokens,
        override if override is not None else inputs.btc_price_usd,
        config=app_config,
        version=version,
        diagnostics=inputs.diagnostics,
    )


__all__ = ["discover_from_inputs", "discover_prices"]
