"""Loading pool reserves, token metadata, and the BTC oracle price."""

from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol, Tuple

import requests
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..config.settings import RefreshConfig, get_app_config
from ..datalake.schemas import Diagnostic, DiagnosticCode, PoolEdge, RunInputs, TokenMetadata
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..pricing.errors import MalformedPoolError, SourceError
from ..utils.constants import utc_now

DEFAULT_HEADERS = {"User-Agent": "dex-price-discovery/1.0"}

logger = get_logger(__name__)


class PoolSource(Protocol):
    """Anything able to produce the inputs of one discovery run."""

    def load(self) -> RunInputs:
        ...


def _parse_reserve(value: Any, field_name: str, pool_id: str) -> int:
    if isinstance(value, bool):
        raise MalformedPoolError(f"pool {pool_id} {field_name} is not an integer", pool_id=pool_id)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return int(value)
        raise MalformedPoolError(f"pool {pool_id} {field_name} is not an integer: {value!r}", pool_id=pool_id)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError as exc:
            raise MalformedPoolError(
                f"pool {pool_id} {field_name} is not an integer: {value!r}", pool_id=pool_id
            ) from exc
    raise MalformedPoolError(f"pool {pool_id} {field_name} is missing", pool_id=pool_id)


def _parse_timestamp(value: Any) -> datetime:
    if value is None or value == "":
        return utc_now()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch values above 1e11 are milliseconds.
        seconds = float(value) / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"unsupported timestamp {value!r}")


def parse_pool(record: Mapping[str, Any]) -> PoolEdge:
    """Convert one pool record into a `PoolEdge`."""

    if not isinstance(record, Mapping):
        raise MalformedPoolError(f"pool record is not an object: {record!r}")
    pool_id = str(record.get("poolId") or record.get("pool_id") or "").strip()
    if not pool_id:
        raise MalformedPoolError("pool record has no poolId")
    token_a = str(record.get("tokenA") or record.get("token_a") or "").strip()
    token_b = str(record.get("tokenB") or record.get("token_b") or "").strip()
    if not token_a or not token_b:
        raise MalformedPoolError(f"pool {pool_id} is missing a token id", pool_id=pool_id)
    try:
        last_updated = _parse_timestamp(record.get("lastUpdated", record.get("last_updated")))
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        raise MalformedPoolError(f"pool {pool_id} has an invalid lastUpdated: {exc}", pool_id=pool_id) from exc
    return PoolEdge(
        pool_id=pool_id,
        token_a=token_a,
        token_b=token_b,
        reserve_a=_parse_reserve(record.get("reserveA", record.get("reserve_a")), "reserveA", pool_id),
        reserve_b=_parse_reserve(record.get("reserveB", record.get("reserve_b")), "reserveB", pool_id),
        last_updated=last_updated,
    )


def parse_token(token_id: str, record: Any) -> TokenMetadata:
    """Convert one token metadata record; a bare integer is taken as decimals."""

    if isinstance(record, Mapping):
        decimals = record.get("decimals")
        symbol = record.get("symbol")
        name = record.get("name")
    else:
        decimals, symbol, name = record, None, None
    if isinstance(decimals, bool) or not isinstance(decimals, int) or decimals < 0:
        raise ValueError(f"token {token_id} has invalid decimals {decimals!r}")
    return TokenMetadata(
        token_id=token_id,
        decimals=decimals,
        symbol=str(symbol) if symbol else None,
        name=str(name) if name else None,
    )


def _iter_token_records(raw: Any) -> Iterable[Tuple[Any, Any]]:
    if isinstance(raw, Mapping):
        yield from raw.items()
    elif isinstance(raw, list):
        for item in raw:
            token_id = None
            if isinstance(item, Mapping):
                token_id = item.get("tokenId") or item.get("contractId")
            yield token_id, item


def parse_run_inputs(payload: Mapping[str, Any]) -> RunInputs:
    """Build `RunInputs` from a ``{tokens, pools, btcPriceUsd}`` payload.

    Bad token or pool records are skipped and reported as diagnostics. A
    missing BTC price stays ``None`` so anchor seeding can reject the run.
    """

    if not isinstance(payload, Mapping):
        raise SourceError("run input payload must be a JSON object")

    inputs = RunInputs()
    for token_id, record in _iter_token_records(payload.get("tokens") or {}):
        if not token_id:
            inputs.diagnostics.append(
                Diagnostic(code=DiagnosticCode.INVALID_RECORD, message=f"token record without id: {record!r}")
            )
            continue
        try:
            inputs.tokens[str(token_id)] = parse_token(str(token_id), record)
        except ValueError as exc:
            logger.warning("Skipping token record: %s", exc)
            inputs.diagnostics.append(
                Diagnostic(code=DiagnosticCode.INVALID_RECORD, message=str(exc), token_id=str(token_id))
            )

    raw_pools = payload.get("pools") or []
    if not isinstance(raw_pools, list):
        raise SourceError("'pools' must be a list of pool records")
    for record in raw_pools:
        try:
            inputs.pools.append(parse_pool(record))
        except MalformedPoolError as exc:
            logger.warning("Skipping pool record: %s", exc, extra={"pool_id": exc.pool_id})
            METRICS.increment("ingestion.invalid_records")
            inputs.diagnostics.append(Diagnostic(code=exc.code, message=str(exc), pool_id=exc.pool_id))

    btc_price = payload.get("btcPriceUsd", payload.get("btc_price_usd"))
    if btc_price is not None:
        try:
            inputs.btc_price_usd = float(btc_price)
        except (TypeError, ValueError):
            logger.warning("Ignoring non-numeric btcPriceUsd %r", btc_price)
    return inputs


class JsonFilePoolSource:
    """Reads run inputs from a JSON file on disk."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    def load(self) -> RunInputs:
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, ValueError) as exc:
            raise SourceError(f"cannot read run inputs from {self._path}: {exc}") from exc
        inputs = parse_run_inputs(payload)
        logger.info(
            "Loaded %d pools and %d tokens from %s",
            len(inputs.pools),
            len(inputs.tokens),
            self._path,
        )
        return inputs


def _is_transient(exc: BaseException) -> bool:
    """Connection failures, timeouts, 429 and 5xx responses are worth retrying."""

    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


class HttpPoolSource:
    """Fetches run inputs as JSON over HTTP."""

    def __init__(
        self,
        url: str,
        session: Optional[requests.Session] = None,
        config: Optional[RefreshConfig] = None,
        *,
        wait: Any = None,
    ) -> None:
        self._url = url
        self._config = config or get_app_config().refresh
        self._session = session or requests.Session()
        self._wait = wait or wait_exponential(multiplier=1, min=1, max=10)

    def _get(self) -> Dict[str, Any]:
        retrying = Retrying(
            stop=stop_after_attempt(self._config.fetch_attempts),
            wait=self._wait,
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info("Retrying %s (attempt %d)", self._url, attempt.retry_state.attempt_number)
                response = self._session.get(
                    self._url,
                    headers=dict(DEFAULT_HEADERS),
                    timeout=self._config.http_timeout,
                )
                response.raise_for_status()
                return response.json()
        raise SourceError(f"no response from {self._url}")  # pragma: no cover - Retrying always yields

    def load(self) -> RunInputs:
        try:
            payload = self._get()
        except (requests.RequestException, ValueError) as exc:
            METRICS.increment("ingestion.fetch_failures")
            raise SourceError(f"fetching run inputs from {self._url} failed: {exc}") from exc
        inputs = parse_run_inputs(payload)
        logger.info("Fetched %d pools and %d tokens from %s", len(inputs.pools), len(inputs.tokens), self._url)
        return inputs


def source_from_config(config: Optional[RefreshConfig] = None) -> PoolSource:
    """Pick the configured source: a URL wins over a file path."""

    refresh = config or get_app_config().refresh
    if refresh.source_url:
        return HttpPoolSource(refresh.source_url, config=refresh)
    if refresh.source_path is not None:
        return JsonFilePoolSource(refresh.source_path)
    raise SourceError("no run input source configured (refresh.source_url or refresh.source_path)")


__all__ = [
    "HttpPoolSource",
    "JsonFilePoolSource",
    "PoolSource",
    "parse_pool",
    "parse_run_inputs",
    "parse_token",
    "source_from_config",
]
