"""Adjacency index over liquidity pools."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Set, Tuple

from ..datalake.schemas import Diagnostic, DiagnosticCode, PoolEdge, TokenMetadata
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from .decimals import atomic_to_decimal
from .errors import MalformedPoolError

logger = get_logger(__name__)

Neighbor = Tuple[str, PoolEdge]


@dataclass(slots=True)
class PoolGraph:
    """Read-only token graph for the duration of a run.

    ``pools`` keeps every well-formed pool, including zero-reserve ones that
    are absent from the adjacency index, so they can still be reported.
    """

    tokens: Dict[str, TokenMetadata]
    pools: Dict[str, PoolEdge]
    adjacency: Dict[str, List[Neighbor]]
    diagnostics: List[Diagnostic] = field(default_factory=list)

    def neighbors(self, token_id: str) -> List[Neighbor]:
        return self.adjacency.get(token_id, [])

    def pools_for(self, token_id: str) -> List[PoolEdge]:
        return [
            pool
            for pool in self.pools.values()
            if token_id in (pool.token_a, pool.token_b)
        ]

    def decimals_of(self, token_id: str) -> int:
        return self.tokens[token_id].decimals

    @property
    def usable_pools(self) -> List[PoolEdge]:
        return [pool for pool in self.pools.values() if pool.is_usable]

    @property
    def graph_tokens(self) -> Set[str]:
        """Tokens that appear on at least one retained pool."""

        members: Set[str] = set()
        for pool in self.pools.values():
            members.add(pool.token_a)
            members.add(pool.token_b)
        return members


def _validate(pool: PoolEdge, tokens: Mapping[str, TokenMetadata], seen: Set[str]) -> None:
    if pool.pool_id in seen:
        raise MalformedPoolError(
            f"duplicate pool id {pool.pool_id}",
            pool_id=pool.pool_id,
            code=DiagnosticCode.DUPLICATE_POOL,
        )
    if pool.token_a == pool.token_b:
        raise MalformedPoolError(
            f"pool {pool.pool_id} pairs {pool.token_a} with itself",
            pool_id=pool.pool_id,
            code=DiagnosticCode.SELF_POOL,
        )
    if pool.reserve_a < 0 or pool.reserve_b < 0:
        raise MalformedPoolError(
            f"pool {pool.pool_id} has negative reserves "
            f"({pool.reserve_a}, {pool.reserve_b})",
            pool_id=pool.pool_id,
            code=DiagnosticCode.NEGATIVE_RESERVE,
        )
    for token_id in (pool.token_a, pool.token_b):
        if token_id not in tokens:
            raise MalformedPoolError(
                f"pool {pool.pool_id} references {token_id} without token metadata",
                pool_id=pool.pool_id,
                code=DiagnosticCode.UNKNOWN_TOKEN,
            )
    for token_id, reserve in ((pool.token_a, pool.reserve_a), (pool.token_b, pool.reserve_b)):
        try:
            atomic_to_decimal(reserve, tokens[token_id].decimals)
        except OverflowError as exc:
            raise MalformedPoolError(
                f"pool {pool.pool_id} reserve of {token_id} is too large to price",
                pool_id=pool.pool_id,
            ) from exc


def build_graph(
    pools: Iterable[PoolEdge],
    tokens: Mapping[str, TokenMetadata],
) -> PoolGraph:
    """Index pools by token, skipping malformed and zero-reserve pools."""

    retained: Dict[str, PoolEdge] = {}
    adjacency: Dict[str, List[Neighbor]] = defaultdict(list)
    diagnostics: List[Diagnostic] = []
    seen: Set[str] = set()

    for pool in pools:
        try:
            _validate(pool, tokens, seen)
        except MalformedPoolError as exc:
            logger.warning("Skipping malformed pool: %s", exc, extra={"pool_id": exc.pool_id})
            METRICS.increment("graph.malformed_pools")
            diagnostics.append(Diagnostic(code=exc.code, message=str(exc), pool_id=exc.pool_id))
            continue

        seen.add(pool.pool_id)
        retained[pool.pool_id] = pool
        if not pool.is_usable:
            message = (
                f"pool {pool.pool_id} has a zero reserve "
                f"({pool.reserve_a}, {pool.reserve_b}); excluded from propagation"
            )
            logger.warning(message, extra={"pool_id": pool.pool_id})
            METRICS.increment("graph.zero_reserve_pools")
            diagnostics.append(
                Diagnostic(code=DiagnosticCode.ZERO_RESERVE, message=message, pool_id=pool.pool_id)
            )
            continue
        adjacency[pool.token_a].append((pool.token_b, pool))
        adjacency[pool.token_b].append((pool.token_a, pool))

    for neighbors in adjacency.values():
        neighbors.sort(key=lambda item: (item[1].pool_id, item[0]))

    graph = PoolGraph(
        tokens=dict(tokens),
        pools=retained,
        adjacency=dict(adjacency),
        diagnostics=diagnostics,
    )
    logger.info(
        "Graph built: %d tokens, %d pools (%d usable), %d skipped",
        len(graph.graph_tokens),
        len(retained),
        len(graph.usable_pools),
        len(diagnostics) - sum(1 for diag in diagnostics if diag.code == DiagnosticCode.ZERO_RESERVE),
    )
    return graph


__all__ = ["Neighbor", "PoolGraph", "build_graph"]
