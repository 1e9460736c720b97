import json
from pathlib import Path

import pandas as pd
import pytest

import main as cli
from broker.abstract_broker import BrokerMode
from main import EXIT_CONFIG, EXIT_DATA, EXIT_FATAL, EXIT_OK, apply_cli_overrides, build_live_broker, main, parse_args
from shared.config.schema import ExchangeConfig, MainConfig
from shared.errors import ConfigurationError
from helpers import random_walk_bars


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    # 默认 kill switch 路径是相对路径，切到临时目录避免受本地文件影响
    monkeypatch.chdir(tmp_path)


def _write_csv(data_dir: Path, symbol: str, n: int = 200, seed: int = 3) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)
    rows = [
        {"timestamp": b.timestamp, "open": b.open, "high": b.high, "low": b.low, "close": b.close, "volume": b.volume}
        for b in random_walk_bars(n, seed=seed, symbol=symbol)
    ]
    pd.DataFrame(rows).to_csv(data_dir / f"{symbol}_1h.csv", index=False)


def test_parse_args_merges_symbols():
    args = parse_args(["backtest", "--symbol", "BTCUSDT", "--symbols", "ETHUSDT,BTCUSDT", "--timeframes", "1,4"])
    assert args.symbols == ["BTCUSDT", "ETHUSDT"]
    assert args.timeframes == [1.0, 4.0]
    assert args.output_dir is None


def test_cli_overrides_are_validated():
    cfg = MainConfig()
    args = parse_args(["backtest", "--symbols", "AAA,BBB", "--initial-balance", "500", "--batch-size", "10"])
    out = apply_cli_overrides(cfg, args)
    assert out.backtest.symbol == "AAA"
    assert out.backtest.symbols == ["AAA", "BBB"]
    assert out.backtest.initial_balance == 500.0
    with pytest.raises(ConfigurationError):
        apply_cli_overrides(MainConfig(), parse_args(["backtest", "--initial-balance", "-1"]))


def test_missing_config_exits_with_config_code(tmp_path: Path, capsys):
    code = main(["backtest", "--config", str(tmp_path / "missing.yml"), "--quiet"])
    assert code == EXIT_CONFIG
    record = json.loads(capsys.readouterr().err)
    assert record["error"] == "configuration"
    assert record["exit_code"] == EXIT_CONFIG


def test_missing_data_exits_with_data_code(tmp_path: Path, capsys):
    code = main(["backtest", "--symbol", "NOPE", "--data-dir", str(tmp_path / "empty"), "--quiet"])
    assert code == EXIT_DATA
    assert json.loads(capsys.readouterr().err)["error"] == "data_load"


def test_single_symbol_backtest_writes_artifacts(tmp_path: Path, capsys):
    data_dir = tmp_path / "history"
    _write_csv(data_dir, "TEST")
    out = tmp_path / "out"
    code = main(["backtest", "--symbol", "TEST", "--data-dir", str(data_dir), "--output-dir", str(out)])
    assert code == EXIT_OK
    payload = json.loads((out / "result.json").read_text(encoding="utf-8"))
    assert payload["parameters"]["backtest"]["symbol"] == "TEST"
    assert len(payload["equity"]) == 200
    assert "total_return" in capsys.readouterr().out


def test_multi_symbol_backtest(tmp_path: Path):
    data_dir = tmp_path / "history"
    _write_csv(data_dir, "AAA", seed=1)
    _write_csv(data_dir, "BBB", seed=2)
    out = tmp_path / "out"
    code = main(
        ["backtest", "--symbols", "AAA,BBB", "--data-dir", str(data_dir), "--output-dir", str(out), "--quiet"]
    )
    assert code == EXIT_OK
    payload = json.loads((out / "result.json").read_text(encoding="utf-8"))
    assert payload["symbols"] == ["AAA", "BBB"]
    assert set(payload["weights"]) == {"AAA", "BBB"}


def test_duplicate_symbols_in_config_exit_with_config_code(tmp_path: Path, capsys):
    cfg_path = tmp_path / "config.yml"
    cfg_path.write_text("backtest:\n  symbols: [AAA, AAA]\n", encoding="utf-8")
    code = main(["backtest", "--config", str(cfg_path), "--quiet"])
    assert code == EXIT_CONFIG
    assert "Duplicate symbols" in json.loads(capsys.readouterr().err)["message"]


def test_malformed_csv_exits_with_data_code(tmp_path: Path, capsys):
    data_dir = tmp_path / "history"
    data_dir.mkdir()
    (data_dir / "TEST_1h.csv").write_text("timestamp,open,high,low,close\n1704067200000,abc,101,99,100\n")
    code = main(["backtest", "--symbol", "TEST", "--data-dir", str(data_dir), "--quiet"])
    assert code == EXIT_DATA
    assert json.loads(capsys.readouterr().err)["error"] == "data_load"


def test_unexpected_error_is_reported_as_fatal(monkeypatch: pytest.MonkeyPatch, capsys):
    def boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(cli, "run_backtests", boom)
    code = main(["backtest", "--quiet"])
    assert code == EXIT_FATAL
    record = json.loads(capsys.readouterr().err)
    assert record == {"error": "fatal", "type": "RuntimeError", "message": "boom", "exit_code": EXIT_FATAL}


def test_live_broker_follows_exchange_sandbox():
    cfg = MainConfig()
    assert build_live_broker(cfg, exchange=object()).mode is BrokerMode.LIVE
    cfg.exchange = ExchangeConfig(sandbox=True, retry_attempts=2, retry_delays=[0.5])
    broker = build_live_broker(cfg, exchange=object())
    assert broker.mode is BrokerMode.LIVE_TESTNET
    assert broker.retry_attempts == 2
    assert broker.retry_delays == (0.5,)
