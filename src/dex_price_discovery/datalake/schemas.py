"""Data models shared by the graph builder, propagation engine, and snapshots."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union


class AnchorKind(str, Enum):
    """How an anchor's price is sourced."""

    STABLECOIN = "stablecoin"
    ORACLE = "oracle"


class DiagnosticCode(str, Enum):
    """Categories of non-fatal findings recorded during a run."""

    SELF_POOL = "self_pool"
    NEGATIVE_RESERVE = "negative_reserve"
    ZERO_RESERVE = "zero_reserve"
    UNKNOWN_TOKEN = "unknown_token"
    DUPLICATE_POOL = "duplicate_pool"
    INVALID_RECORD = "invalid_record"
    ANCHOR_NOT_IN_GRAPH = "anchor_not_in_graph"
    ANCHOR_DEVIATION = "anchor_deviation"


@dataclass(slots=True, frozen=True)
class TokenMetadata:
    """Identity and decimal precision of a token in the pool graph."""

    token_id: str
    decimals: int
    symbol: Optional[str] = None
    name: Optional[str] = None


@dataclass(slots=True, frozen=True)
class PoolEdge:
    """A two-sided liquidity pool with atomic (integer) reserves."""

    pool_id: str
    token_a: str
    token_b: str
    reserve_a: int
    reserve_b: int
    last_updated: datetime

    @property
    def is_usable(self) -> bool:
        return self.reserve_a > 0 and self.reserve_b > 0

    @property
    def pair_key(self) -> Tuple[str, str]:
        return tuple(sorted((self.token_a, self.token_b)))  # type: ignore[return-value]

    def reserve_of(self, token_id: str) -> int:
        if token_id == self.token_a:
            return self.reserve_a
        if token_id == self.token_b:
            return self.reserve_b
        raise KeyError(f"{token_id} is not a side of pool {self.pool_id}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "poolId": self.pool_id,
            "tokenA": self.token_a,
            "tokenB": self.token_b,
            # Atomic reserves can exceed 2**53, keep them exact for JSON consumers.
            "reserveA": str(self.reserve_a),
            "reserveB": str(self.reserve_b),
            "lastUpdated": self.last_updated.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class Anchor:
    """A token with an authoritative USD price."""

    token_id: str
    usd_price: float
    kind: AnchorKind
    confidence: float = 1.0


@dataclass(slots=True, frozen=True)
class PriceEstimate:
    """A single edge-derived price estimate produced during one cycle."""

    token_id: str
    usd_price: float
    confidence: float
    hop_count: int
    source_pool_id: str
    via_token: str
    liquidity_usd: float


@dataclass(slots=True, frozen=True)
class PriceResult:
    """Merged price state for a token."""

    token_id: str
    usd_price: float
    confidence: float
    hop_count: int
    paths_used: int
    total_liquidity: float
    source_pool_id: Optional[str] = None
    via_token: Optional[str] = None
    contributing_pools: Tuple[str, ...] = ()
    price_variation: float = 0.0
    is_anchor: bool = False


@dataclass(slots=True, frozen=True)
class Unpriced:
    """Explicit outcome for a token no anchor path reaches."""

    token_id: str
    reason: str = "no price available"


@dataclass(slots=True, frozen=True)
class PoolAnnotation:
    """Liquidity figures attached to a pool by the ranker."""

    liquidity_usd: float = 0.0
    liquidity_relative: float = 0.0


@dataclass(slots=True, frozen=True)
class AnnotatedPool:
    """A pool together with its liquidity annotation."""

    pool: PoolEdge
    annotation: PoolAnnotation

    def to_dict(self) -> Dict[str, Any]:
        payload = self.pool.to_dict()
        payload["liquidityUsd"] = self.annotation.liquidity_usd
        payload["liquidityRelative"] = self.annotation.liquidity_relative
        return payload


@dataclass(slots=True, frozen=True)
class TokenPriceData:
    """Published per-token price record."""

    token_id: str
    usd_price: float
    sbtc_ratio: float
    confidence: float
    paths_used: int
    total_liquidity: float
    last_updated: datetime
    hop_count: int = 0
    symbol: Optional[str] = None
    source_pool_id: Optional[str] = None
    via_token: Optional[str] = None
    price_variation: float = 0.0
    is_anchor: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokenId": self.token_id,
            "symbol": self.symbol,
            "usdPrice": self.usd_price,
            "sbtcRatio": self.sbtc_ratio,
            "confidence": self.confidence,
            "pathsUsed": self.paths_used,
            "totalLiquidity": self.total_liquidity,
            "lastUpdated": self.last_updated.isoformat(),
            "hopCount": self.hop_count,
            "sourcePoolId": self.source_pool_id,
            "viaToken": self.via_token,
            "priceVariation": self.price_variation,
            "isAnchor": self.is_anchor,
        }


PriceLookup = Union[TokenPriceData, Unpriced]


@dataclass(slots=True, frozen=True)
class TokenStats:
    """Per-token pool participation summary."""

    token_id: str
    pool_count: int
    total_liquidity_usd: float


@dataclass(slots=True, frozen=True)
class GraphStats:
    """Run-level summary of the pool graph and discovery coverage."""

    total_tokens: int
    total_pools: int
    usable_pools: int
    avg_pools_per_token: float
    btc_pair_count: int
    global_max_liquidity: float
    priced_tokens: int
    coverage_pct: float
    cycles_run: int
    converged: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalTokens": self.total_tokens,
            "totalPools": self.total_pools,
            "usablePools": self.usable_pools,
            "avgPoolsPerToken": self.avg_pools_per_token,
            "btcPairCount": self.btc_pair_count,
            "globalMaxLiquidity": self.global_max_liquidity,
            "pricedTokens": self.priced_tokens,
            "coveragePct": self.coverage_pct,
            "cyclesRun": self.cycles_run,
            "converged": self.converged,
        }


@dataclass(slots=True, frozen=True)
class Diagnostic:
    """Non-fatal finding recorded while building or propagating."""

    code: DiagnosticCode
    message: str
    pool_id: Optional[str] = None
    token_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "poolId": self.pool_id,
            "tokenId": self.token_id,
        }


@dataclass(slots=True)
class RunInputs:
    """Everything a single discovery run consumes."""

    pools: List[PoolEdge] = field(default_factory=list)
    tokens: Dict[str, TokenMetadata] = field(default_factory=dict)
    btc_price_usd: Optional[float] = None
    diagnostics: List[Diagnostic] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class PriceSnapshot:
    """Immutable, versioned output of a discovery run."""

    version: int
    run_id: str
    generated_at: datetime
    btc_price_usd: float
    prices: Mapping[str, TokenPriceData]
    pools: Tuple[AnnotatedPool, ...]
    unpriced: Tuple[Unpriced, ...]
    token_stats: Mapping[str, TokenStats]
    stats: GraphStats
    diagnostics: Tuple[Diagnostic, ...] = ()

    def price_for(self, token_id: str) -> PriceLookup:
        price = self.prices.get(token_id)
        if price is not None:
            return price
        for entry in self.unpriced:
            if entry.token_id == token_id:
                return entry
        return Unpriced(token_id=token_id, reason="token not present in pool graph")

    def pool(self, pool_id: str) -> Optional[AnnotatedPool]:
        for entry in self.pools:
            if entry.pool.pool_id == pool_id:
                return entry
        return None

    def top_pools(self, limit: int = 5) -> List[AnnotatedPool]:
        ranked: Iterable[AnnotatedPool] = sorted(
            self.pools,
            key=lambda entry: (-entry.annotation.liquidity_usd, entry.pool.pool_id),
        )
        return list(ranked)[: max(limit, 0)]

    def to_dict(self) -> Dict[str, Any]:
        """Convert the snapshot to a JSON-serialisable dictionary."""

        return {
            "version": self.version,
            "runId": self.run_id,
            "generatedAt": self.generated_at.isoformat(),
            "btcPriceUsd": self.btc_price_usd,
            "prices": {token_id: data.to_dict() for token_id, data in self.prices.items()},
            "pools": [entry.to_dict() for entry in self.pools],
            "unpriced": [
                {"tokenId": entry.token_id, "reason": entry.reason} for entry in self.unpriced
            ],
            "tokenStats": {
                token_id: {
                    "poolCount": stats.pool_count,
                    "totalLiquidityUsd": stats.total_liquidity_usd,
                }
                for token_id, stats in self.token_stats.items()
            },
            "stats": self.stats.to_dict(),
            "diagnostics": [diag.to_dict() for diag in self.diagnostics],
        }


__all__ = [
    "Anchor",
    "AnchorKind",
    "AnnotatedPool",
    "Diagnostic",
    "DiagnosticCode",
    "GraphStats",
    "PoolAnnotation",
    "PoolEdge",
    "PriceEstimate",
    "PriceLookup",
    "PriceResult",
    "PriceSnapshot",
    "RunInputs",
    "TokenMetadata",
    "TokenPriceData",
    "TokenStats",
    "Unpriced",
]
