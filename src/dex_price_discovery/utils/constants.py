"""Shared constants for pool-graph price discovery."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


# Bitcoin-pegged anchor priced by the external BTC oracle.
SBTC_CONTRACT_ID = "SM3VDXK3WZZSA84XXFKAFAF15NNZX32CTSG82JFQ4.sbtc-token"

# Stablecoin contracts pegged to $1 and seeded as anchors.
STABLECOIN_CONTRACTS: dict[str, str] = {
    "SP3Y2ZSH8P7D50B0VBTSX11S7XSG24M1VB9YFQA4K.token-aeusdc": "aeUSDC",
    "SP2XD7417HGPRTREMKF748VNEQPDRR0RMANB7X1NK.token-susdt": "sUSDT",
    "SP2C2YFP12AJZB4MABJBAJ55XECVS7E4PMMZ89YZR.usda-token": "USDA",
}

DEFAULT_STABLECOIN_IDS: tuple[str, ...] = tuple(STABLECOIN_CONTRACTS)

__all__ = [
    "utc_now",
    "SBTC_CONTRACT_ID",
    "STABLECOIN_CONTRACTS",
    "DEFAULT_STABLECOIN_IDS",
]
