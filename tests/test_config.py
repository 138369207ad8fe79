from pathlib import Path

import pytest
import yaml

from libs.common.config import AppConfig, PairConfig, load_config
from libs.common.errors import InitializationError

SHIPPED = Path(__file__).resolve().parent.parent / "config" / "app.yaml"

ENV = ("BINANCE_MODE", "BINANCE_API_KEY", "BINANCE_API_SECRET",
       "DISCORD_WEBHOOK_URL", "TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV:
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path, data):
    p = tmp_path / "app.yaml"
    p.write_text(yaml.safe_dump(data))
    return str(p)


def test_shipped_config_loads():
    cfg = load_config(str(SHIPPED))
    assert cfg.mode == "testnet"
    assert cfg.pair("BTCUSDT").order_size == 15
    assert cfg.pair("ETHUSDT").tradeable is False
    assert [w.limit for w in cfg.rate_limits] == [20, 1100, 50]


def test_env_overrides(tmp_path, monkeypatch):
    path = _write(tmp_path, {"pairs": [{"symbol": "btcusdt"}], "alerts": {"cooldown_s": 60}})
    monkeypatch.setenv("BINANCE_MODE", "MAINNET")
    monkeypatch.setenv("BINANCE_API_KEY", "k")
    monkeypatch.setenv("BINANCE_API_SECRET", "s")
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "tkn")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "42")
    cfg = load_config(path)
    assert cfg.mode == "mainnet"
    assert (cfg.api_key, cfg.api_secret) == ("k", "s")
    assert cfg.alerts.telegram_chat_id == "42"
    assert cfg.alerts.cooldown_s == 60
    assert cfg.pairs[0].symbol == "BTCUSDT"
    assert cfg.rest_base == "https://api.binance.com"
    assert cfg.ws_base.startswith("wss://stream.binance.com")


def test_testnet_endpoints(tmp_path):
    cfg = load_config(_write(tmp_path, {}))
    assert cfg.rest_base == "https://testnet.binance.vision"
    assert cfg.ws_base == "wss://testnet.binance.vision"
    assert cfg.engine.mode == "parallel"


def test_missing_file(tmp_path):
    with pytest.raises(InitializationError):
        load_config(str(tmp_path / "nope.yaml"))


@pytest.mark.parametrize("data", [
    {"pairs": [{"symbol": "BTCUSDT", "stop_loss_base": -6, "max_stop_loss": -5}]},
    {"pairs": [{"symbol": "BTCUSDT"}, {"symbol": "btcusdt"}]},
    {"timeframes": []},
    {"engine": {"candle_window": 10}},
    {"unknown_key": 1},
])
def test_invalid_config(tmp_path, data):
    with pytest.raises(InitializationError):
        load_config(_write(tmp_path, data))


def test_weights_merge_overrides():
    cfg = AppConfig(timeframe_weights={"1h": 9.0})
    assert cfg.weights()["1h"] == 9.0
    assert PairConfig(symbol=" ethusdt ").symbol == "ETHUSDT"
