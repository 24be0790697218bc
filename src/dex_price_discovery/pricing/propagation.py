"""Iterative, confidence-weighted price propagation over the pool graph.

Each cycle reads the previous cycle's frozen price table, derives one
estimate per (priced token, usable pool, unpriced-or-priced neighbour), and
merges the estimates per neighbour with a liquidity-weighted average. A
merged candidate replaces the current state only when it is strictly better
(higher confidence, then fewer hops, then more paths), so every token's
accepted quality only ever rises and the loop settles.
"""

from __future__ import annotations

import math
from collections import defaultdict
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

from ..config.settings import PropagationConfig, get_app_config
from ..datalake.schemas import Diagnostic, DiagnosticCode, PriceEstimate, PriceResult
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from .decimals import geometric_liquidity, implied_price, usd_value
from .errors import ConfigurationError
from .graph import PoolGraph

logger = get_logger(__name__)


@dataclass(slots=True)
class CycleRecord:
    """Tokens whose state was replaced in one cycle, with the accepted confidence."""

    cycle: int
    changed: Dict[str, float] = field(default_factory=dict)
    candidates: int = 0


@dataclass(slots=True)
class AnchorCheck:
    """Comparison of a pool joining two anchors against their seeded prices."""

    pool_id: str
    token_a: str
    token_b: str
    implied_price_a: float
    seeded_price_a: float
    deviation_pct: float


@dataclass(slots=True)
class PropagationOutcome:
    prices: Dict[str, PriceResult]
    cycles_run: int
    converged: bool
    history: List[CycleRecord] = field(default_factory=list)
    anchor_checks: List[AnchorCheck] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)


def _weighted_variation(estimates: Sequence[PriceEstimate], mean_price: float) -> float:
    """Liquidity-weighted coefficient of variation of the estimate prices."""

    if len(estimates) <= 1 or mean_price <= 0:
        return 0.0
    total_weight = sum(est.liquidity_usd for est in estimates)
    if total_weight <= 0:
        return 0.0
    variance = (
        sum(((est.usd_price - mean_price) ** 2) * est.liquidity_usd for est in estimates)
        / total_weight
    )
    return math.sqrt(variance) / mean_price


def merge_estimates(token_id: str, estimates: Sequence[PriceEstimate]) -> PriceResult:
    """Combine one cycle's estimates for a token into a single candidate."""

    if not estimates:
        raise ValueError(f"no estimates to merge for {token_id}")
    ordered = sorted(estimates, key=lambda est: (est.source_pool_id, est.via_token))
    total_liquidity = sum(est.liquidity_usd for est in ordered)
    if total_liquidity > 0:
        usd_price = sum(est.usd_price * est.liquidity_usd for est in ordered) / total_liquidity
    else:
        usd_price = sum(est.usd_price for est in ordered) / len(ordered)
    best = max(ordered, key=lambda est: (est.confidence, -est.hop_count, est.liquidity_usd))
    return PriceResult(
        token_id=token_id,
        usd_price=usd_price,
        confidence=best.confidence,
        hop_count=best.hop_count,
        paths_used=len({est.source_pool_id for est in ordered}),
        total_liquidity=total_liquidity,
        source_pool_id=best.source_pool_id,
        via_token=best.via_token,
        contributing_pools=tuple(est.source_pool_id for est in ordered),
        price_variation=_weighted_variation(ordered, usd_price),
    )


class PropagationEngine:
    """Multi-source relaxation that prices every token reachable from an anchor."""

    def __init__(self, config: Optional[PropagationConfig] = None) -> None:
        self._config = config or get_app_config().propagation
        if not 0.0 < self._config.decay_factor < 1.0:
            raise ConfigurationError(
                f"decay factor must be in (0, 1), got {self._config.decay_factor}"
            )

    def run(self, graph: PoolGraph, seeds: Mapping[str, PriceResult]) -> PropagationOutcome:
        if not seeds:
            raise ConfigurationError("anchor set is empty; nothing to propagate from")
        anchors: Set[str] = {token_id for token_id, seed in seeds.items() if seed.is_anchor}
        state: Dict[str, PriceResult] = dict(seeds)
        outcome = PropagationOutcome(prices=state, cycles_run=0, converged=False)
        outcome.anchor_checks, outcome.diagnostics = self._cross_validate(graph, seeds, anchors)

        executor: Optional[ThreadPoolExecutor] = None
        if self._config.max_workers > 1:
            executor = ThreadPoolExecutor(
                max_workers=self._config.max_workers, thread_name_prefix="propagation"
            )
        try:
            for cycle in range(1, self._config.max_cycles + 1):
                frozen = dict(state)
                grouped = self._collect(graph, frozen, anchors, executor)
                record = CycleRecord(cycle=cycle, candidates=sum(len(v) for v in grouped.values()))
                accepted: Dict[str, PriceResult] = {}
                for token_id in sorted(grouped):
                    candidate = merge_estimates(token_id, grouped[token_id])
                    current = frozen.get(token_id)
                    if current is None or self._is_improvement(candidate, current):
                        accepted[token_id] = candidate
                # Updates land together at the cycle boundary.
                state.update(accepted)
                record.changed = {token_id: result.confidence for token_id, result in accepted.items()}
                outcome.history.append(record)
                outcome.cycles_run = cycle
                METRICS.increment("propagation.cycles")
                logger.info(
                    "Cycle %d: %d candidates, %d tokens updated, %d priced",
                    cycle,
                    record.candidates,
                    len(accepted),
                    len(state),
                )
                if not accepted:
                    outcome.converged = True
                    break
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        if not outcome.converged:
            logger.warning(
                "Propagation stopped at the cycle cap (%d) before converging",
                self._config.max_cycles,
            )
        return outcome

    def _collect(
        self,
        graph: PoolGraph,
        frozen: Mapping[str, PriceResult],
        anchors: Set[str],
        executor: Optional[Executor],
    ) -> Dict[str, List[PriceEstimate]]:
        frontier = sorted(token_id for token_id in frozen if graph.neighbors(token_id))
        if executor is not None and len(frontier) > 1:
            batches = list(
                executor.map(lambda token_id: self._estimates_from(graph, frozen, anchors, token_id), frontier)
            )
        else:
            batches = [self._estimates_from(graph, frozen, anchors, token_id) for token_id in frontier]
        grouped: Dict[str, List[PriceEstimate]] = defaultdict(list)
        for batch in batches:
            for estimate in batch:
                grouped[estimate.token_id].append(estimate)
        return grouped

    def _estimates_from(
        self,
        graph: PoolGraph,
        frozen: Mapping[str, PriceResult],
        anchors: Set[str],
        token_id: str,
    ) -> List[PriceEstimate]:
        source = frozen[token_id]
        if source.usd_price <= 0:
            return []
        source_decimals = graph.decimals_of(token_id)
        confidence = source.confidence * self._config.decay_factor
        if confidence < self._config.min_confidence:
            return []
        estimates: List[PriceEstimate] = []
        for neighbor, pool in graph.neighbors(token_id):
            if neighbor in anchors:
                continue
            # A pool never sends a price back to the side it was derived from.
            if pool.pool_id in source.contributing_pools:
                continue
            source_reserve = pool.reserve_of(token_id)
            neighbor_reserve = pool.reserve_of(neighbor)
            neighbor_decimals = graph.decimals_of(neighbor)
            price = implied_price(
                source.usd_price,
                source_reserve,
                source_decimals,
                neighbor_reserve,
                neighbor_decimals,
            )
            if price <= 0:
                continue
            liquidity = geometric_liquidity(
                usd_value(source_reserve, source_decimals, source.usd_price),
                usd_value(neighbor_reserve, neighbor_decimals, price),
            )
            if liquidity <= 0 or liquidity < self._config.min_liquidity_usd:
                continue
            estimates.append(
                PriceEstimate(
                    token_id=neighbor,
                    usd_price=price,
                    confidence=confidence,
                    hop_count=source.hop_count + 1,
                    source_pool_id=pool.pool_id,
                    via_token=token_id,
                    liquidity_usd=liquidity,
                )
            )
        return estimates

    def _is_improvement(self, candidate: PriceResult, current: PriceResult) -> bool:
        if current.is_anchor:
            return False
        epsilon = self._config.confidence_epsilon
        if candidate.confidence > current.confidence + epsilon:
            return True
        if candidate.confidence < current.confidence - epsilon:
            return False
        if candidate.hop_count != current.hop_count:
            return candidate.hop_count < current.hop_count
        return candidate.paths_used > current.paths_used

    def _cross_validate(
        self,
        graph: PoolGraph,
        seeds: Mapping[str, PriceResult],
        anchors: Set[str],
    ) -> Tuple[List[AnchorCheck], List[Diagnostic]]:
        checks: List[AnchorCheck] = []
        diagnostics: List[Diagnostic] = []
        for pool in sorted(graph.usable_pools, key=lambda item: item.pool_id):
            if pool.token_a not in anchors or pool.token_b not in anchors:
                continue
            seeded_a = seeds[pool.token_a].usd_price
            implied_a = implied_price(
                seeds[pool.token_b].usd_price,
                pool.reserve_b,
                graph.decimals_of(pool.token_b),
                pool.reserve_a,
                graph.decimals_of(pool.token_a),
            )
            deviation = abs(implied_a - seeded_a) / seeded_a * 100 if implied_a > 0 else 100.0
            checks.append(
                AnchorCheck(
                    pool_id=pool.pool_id,
                    token_a=pool.token_a,
                    token_b=pool.token_b,
                    implied_price_a=implied_a,
                    seeded_price_a=seeded_a,
                    deviation_pct=deviation,
                )
            )
            if deviation > self._config.anchor_deviation_warn_pct:
                message = (
                    f"anchor pool {pool.pool_id} implies {pool.token_a} at ${implied_a:.6f} "
                    f"vs seeded ${seeded_a:.6f} ({deviation:.2f}% off)"
                )
                logger.warning(message, extra={"pool_id": pool.pool_id})
                METRICS.increment("propagation.anchor_deviations")
                diagnostics.append(
                    Diagnostic(
                        code=DiagnosticCode.ANCHOR_DEVIATION,
                        message=message,
                        pool_id=pool.pool_id,
                        token_id=pool.token_a,
                    )
                )
        return checks, diagnostics


__all__ = [
    "AnchorCheck",
    "CycleRecord",
    "PropagationEngine",
    "PropagationOutcome",
    "merge_estimates",
]
