"""Command-line entrypoint for pool-graph price discovery."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from pydantic_settings import SettingsError

from .config.settings import AppConfig, PropagationConfig, get_app_config
from .datalake.schemas import PriceSnapshot
from .ingestion.pool_source import HttpPoolSource, JsonFilePoolSource, PoolSource, source_from_config
from .monitoring import bootstrap_observability, write_metrics
from .monitoring.logger import get_logger
from .pricing.coordinator import RefreshCoordinator
from .pricing.errors import ConfigurationError, RunFailedError, SourceError
from .pricing.pipeline import discover_from_inputs

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Discover USD prices for every token in a DEX pool graph")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--input", help="Path to a JSON file with tokens, pools and btcPriceUsd.")
    source.add_argument("--url", help="HTTP endpoint returning the same JSON payload.")
    parser.add_argument(
        "--btc-price",
        type=float,
        default=None,
        help="Oracle USD price of the BTC anchor; overrides the value in the input.",
    )
    parser.add_argument("--max-cycles", type=int, default=None, help="Propagation cycle cap.")
    parser.add_argument("--decay", type=float, default=None, help="Confidence decay per hop, in (0, 1).")
    parser.add_argument(
        "--min-liquidity",
        type=float,
        default=None,
        help="Ignore edge estimates whose USD liquidity is below this threshold.",
    )
    parser.add_argument("--pretty", action="store_true", help="Indent the JSON output.")
    parser.add_argument(
        "--metrics-file",
        default=None,
        help="Write metrics after each run (Prometheus text, or JSON for a .json path).",
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep refreshing through the cache coordinator instead of running once.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=60.0,
        help="Seconds between refreshes when --loop is enabled (default: 60)",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=None,
        help="Optional limit to the number of refreshes in --loop mode.",
    )
    return parser


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    overrides: Dict[str, Any] = {}
    if args.max_cycles is not None:
        overrides["max_cycles"] = args.max_cycles
    if args.decay is not None:
        overrides["decay_factor"] = args.decay
    if args.min_liquidity is not None:
        overrides["min_liquidity_usd"] = args.min_liquidity
    update: Dict[str, Any] = {}
    if overrides:
        update["propagation"] = PropagationConfig(**{**config.propagation.model_dump(), **overrides})
    if args.btc_price is not None:
        update["anchors"] = config.anchors.model_copy(update={"btc_price_usd": args.btc_price})
    if args.metrics_file:
        update["monitoring"] = config.monitoring.model_copy(update={"metrics_file": Path(args.metrics_file)})
    return config.model_copy(update=update) if update else config


def _select_source(config: AppConfig, args: argparse.Namespace) -> PoolSource:
    if args.input:
        return JsonFilePoolSource(args.input)
    if args.url:
        return HttpPoolSource(args.url, config=config.refresh)
    return source_from_config(config.refresh)


def _emit(snapshot: PriceSnapshot, pretty: bool) -> None:
    json.dump(snapshot.to_dict(), sys.stdout, indent=2 if pretty else None, sort_keys=pretty)
    sys.stdout.write("\n")
    sys.stdout.flush()


def _export_metrics(config: AppConfig) -> None:
    path = config.monitoring.metrics_file
    if path is None:
        return
    try:
        write_metrics(path)
    except OSError as exc:
        logger.warning("Could not write metrics to %s: %s", path, exc)


def run_once(config: AppConfig, source: PoolSource, pretty: bool) -> int:
    try:
        inputs = source.load()
        snapshot = discover_from_inputs(inputs, config=config, version=1)
    except SourceError as exc:
        logger.error("Could not load run inputs: %s", exc)
        return EXIT_RUN_FAILED
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        return EXIT_CONFIG_ERROR
    finally:
        _export_metrics(config)
    _emit(snapshot, pretty)
    return EXIT_OK


def run_loop(
    config: AppConfig,
    source: PoolSource,
    interval_seconds: float,
    iterations: Optional[int],
    pretty: bool,
) -> int:
    cycle = 0
    with RefreshCoordinator(source, config) as coordinator:
        while True:
            cycle += 1
            try:
                _emit(coordinator.refresh(force=True), pretty)
            except RunFailedError as exc:
                logger.error("Refresh %d failed: %s", cycle, exc, extra={"cycle": cycle})
            _export_metrics(config)
            if iterations is not None and cycle >= iterations:
                break
            time.sleep(max(interval_seconds, 0.0))
        return EXIT_OK if coordinator.snapshot is not None else EXIT_RUN_FAILED


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = _apply_overrides(get_app_config(), args)
        bootstrap_observability(config=config)
        source = _select_source(config, args)
    except (ValidationError, SettingsError, ConfigurationError, SourceError) as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.loop:
        return run_loop(config, source, args.interval, args.iterations, args.pretty)
    return run_once(config, source, args.pretty)


if __name__ == "__main__":
    sys.exit(main())
