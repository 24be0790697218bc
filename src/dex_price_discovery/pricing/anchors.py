"""Initial price frontier built from stablecoins and the BTC oracle."""

from __future__ import annotations

import math
from typing import Dict, Iterable, List, Optional

from ..datalake.schemas import Anchor, AnchorKind, PriceResult
from ..monitoring.logger import get_logger
from .errors import ConfigurationError

logger = get_logger(__name__)


def build_anchors(
    stablecoins: Iterable[str],
    btc_token_id: str,
    btc_price_usd: Optional[float],
    *,
    stablecoin_price_usd: float = 1.0,
) -> List[Anchor]:
    """Validate anchor configuration and return the anchor list."""

    if btc_price_usd is None:
        raise ConfigurationError("BTC oracle price is missing; propagation cannot start")
    try:
        oracle_price = float(btc_price_usd)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"BTC oracle price is not numeric: {btc_price_usd!r}") from exc
    if not math.isfinite(oracle_price) or oracle_price <= 0:
        raise ConfigurationError(f"BTC oracle price must be positive, got {btc_price_usd!r}")
    if not btc_token_id:
        raise ConfigurationError("BTC anchor token id is not configured")
    if not math.isfinite(stablecoin_price_usd) or stablecoin_price_usd <= 0:
        raise ConfigurationError(
            f"stablecoin peg must be positive, got {stablecoin_price_usd!r}"
        )

    anchors: List[Anchor] = [
        Anchor(token_id=btc_token_id, usd_price=oracle_price, kind=AnchorKind.ORACLE)
    ]
    for token_id in dict.fromkeys(stablecoins):
        if not token_id or token_id == btc_token_id:
            continue
        anchors.append(
            Anchor(token_id=token_id, usd_price=stablecoin_price_usd, kind=AnchorKind.STABLECOIN)
        )
    return anchors


def seed_anchors(
    stablecoins: Iterable[str],
    btc_token_id: str,
    btc_price_usd: Optional[float],
    *,
    stablecoin_price_usd: float = 1.0,
) -> Dict[str, PriceResult]:
    """Return the anchor frontier: every anchor at confidence 1.0 and hop 0."""

    anchors = build_anchors(
        stablecoins,
        btc_token_id,
        btc_price_usd,
        stablecoin_price_usd=stablecoin_price_usd,
    )
    if not anchors:
        raise ConfigurationError("anchor set is empty")
    frontier: Dict[str, PriceResult] = {}
    for anchor in anchors:
        frontier[anchor.token_id] = PriceResult(
            token_id=anchor.token_id,
            usd_price=anchor.usd_price,
            confidence=anchor.confidence,
            hop_count=0,
            paths_used=1,
            total_liquidity=0.0,
            is_anchor=True,
        )
        logger.debug(
            "Anchor %s seeded at $%.6f (%s)",
            anchor.token_id,
            anchor.usd_price,
            anchor.kind.value,
        )
    return frontier


__all__ = ["build_anchors", "seed_anchors"]
