from __future__ import annotations

import json
from pathlib import Path

import pytest

from dex_price_discovery import main as cli
from dex_price_discovery.config import settings
from dex_price_discovery.utils.constants import SBTC_CONTRACT_ID


def _write_inputs(tmp_path: Path, **extra) -> Path:
    payload = {
        "tokens": {SBTC_CONTRACT_ID: {"decimals": 8, "symbol": "sBTC"}, "tkn": {"decimals": 6}},
        "pools": [
            {
                "poolId": "p1",
                "tokenA": SBTC_CONTRACT_ID,
                "tokenB": "tkn",
                "reserveA": 100_000_000,
                "reserveB": 60_000_000 * 10**6,
                "lastUpdated": "2026-01-01T00:00:00Z",
            }
        ],
        **extra,
    }
    path = tmp_path / "inputs.json"
    path.write_text(json.dumps(payload))
    return path


@pytest.fixture(autouse=True)
def _isolated(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv(settings.CONFIG_FILE_ENV_VAR, raising=False)
    monkeypatch.delenv("ANCHORS__BTC_PRICE_USD", raising=False)
    monkeypatch.delenv("ANCHORS__STABLECOINS", raising=False)
    monkeypatch.delenv("ANCHORS", raising=False)
    monkeypatch.setattr(cli, "bootstrap_observability", lambda **_: None)
    settings.get_app_config.cache_clear()
    yield
    settings.get_app_config.cache_clear()


def test_cli_prints_snapshot_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = _write_inputs(tmp_path)

    code = cli.main(["--input", str(path), "--btc-price", "60000", "--decay", "0.8", "--pretty"])

    assert code == cli.EXIT_OK
    payload = json.loads(capsys.readouterr().out)
    assert payload["prices"]["tkn"]["usdPrice"] == pytest.approx(0.001)
    assert payload["prices"]["tkn"]["confidence"] == pytest.approx(0.8)
    assert payload["btcPriceUsd"] == 60_000.0


def test_cli_uses_btc_price_from_inputs(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = _write_inputs(tmp_path, btcPriceUsd=30_000)

    assert cli.main(["--input", str(path)]) == cli.EXIT_OK
    payload = json.loads(capsys.readouterr().out)
    assert payload["prices"]["tkn"]["usdPrice"] == pytest.approx(0.0005)


def test_cli_missing_oracle_price_is_a_config_error(tmp_path: Path) -> None:
    path = _write_inputs(tmp_path)

    assert cli.main(["--input", str(path)]) == cli.EXIT_CONFIG_ERROR


def test_cli_rejects_invalid_decay(tmp_path: Path) -> None:
    path = _write_inputs(tmp_path)

    assert cli.main(["--input", str(path), "--btc-price", "60000", "--decay", "1.5"]) == cli.EXIT_CONFIG_ERROR


def test_cli_reads_stablecoins_from_environment(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    path = _write_inputs(tmp_path, btcPriceUsd=60_000)
    monkeypatch.setenv("ANCHORS__STABLECOINS", "usdc,usdt")

    assert cli.main(["--input", str(path)]) == cli.EXIT_OK
    assert "tkn" in json.loads(capsys.readouterr().out)["prices"]


def test_cli_undecodable_environment_is_a_config_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write_inputs(tmp_path, btcPriceUsd=60_000)
    monkeypatch.setenv("ANCHORS", "{not json")

    assert cli.main(["--input", str(path)]) == cli.EXIT_CONFIG_ERROR


def test_cli_unreadable_input_is_a_run_failure(tmp_path: Path) -> None:
    assert cli.main(["--input", str(tmp_path / "missing.json"), "--btc-price", "60000"]) == cli.EXIT_RUN_FAILED


def test_cli_loop_mode_runs_through_coordinator(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = _write_inputs(tmp_path, btcPriceUsd=60_000)

    code = cli.main(["--input", str(path), "--loop", "--iterations", "2", "--interval", "0"])

    assert code == cli.EXIT_OK
    outputs = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line]
    assert [output["version"] for output in outputs] == [1, 2]


def test_cli_writes_metrics_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = _write_inputs(tmp_path, btcPriceUsd=60_000)
    metrics_path = tmp_path / "metrics" / "pricing.prom"

    assert cli.main(["--input", str(path), "--metrics-file", str(metrics_path)]) == cli.EXIT_OK

    exported = metrics_path.read_text()
    assert "# TYPE pricing_runs counter" in exported
    assert "pricing_priced_tokens" in exported
    capsys.readouterr()


def test_cli_writes_metrics_even_when_the_run_fails(tmp_path: Path) -> None:
    metrics_path = tmp_path / "pricing.json"

    missing = tmp_path / "missing.json"

    code = cli.main(["--input", str(missing), "--btc-price", "60000", "--metrics-file", str(metrics_path)])

    assert code == cli.EXIT_RUN_FAILED
    assert set(json.loads(metrics_path.read_text())) == {"counters", "gauges", "histograms", "mappings"}
