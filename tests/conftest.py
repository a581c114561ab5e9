import logging

import pytest

from spreadguard.config import load_config
from spreadguard.exchanges import StaticPriceSource
from spreadguard.models import Opportunity
from spreadguard.service import ArbitrageService
from spreadguard.state import AppState, GlobalState, JsonStateStore


@pytest.fixture
def logger():
    return logging.getLogger("spreadguard.tests")


@pytest.fixture
def config(tmp_path):
    cfg = load_config(None)
    cfg['system']['state_file'] = str(tmp_path / "state.json")
    cfg['system']['seed'] = 7
    cfg['exchanges'] = {
        'binance': {'kind': 'static', 'fee_rate': 0.001, 'volume_weight': 1000000},
        'wazirx': {'kind': 'static', 'fee_rate': 0.002, 'volume_weight': 100000},
    }
    cfg['debate']['provider'] = 'fallback'
    cfg['audit']['trade_log'] = str(tmp_path / "trades.csv")
    return cfg


@pytest.fixture
def state(config, tmp_path, logger):
    store = JsonStateStore(str(tmp_path / "state.json"), logger)
    return AppState(GlobalState.default(config), store, enhanced_capacity=100, logger=logger)


@pytest.fixture
def binance():
    return StaticPriceSource("binance", prices={"BTCUSDT": 50000.0})


@pytest.fixture
def wazirx():
    src = StaticPriceSource("wazirx", prices={"BTCUSDT": 50750.0})
    src.set_order_book("BTCUSDT", asks=[(50750.0, 2.0), (50800.0, 5.0)], bids=[(50700.0, 2.0)])
    return src


@pytest.fixture
def sources(binance, wazirx):
    return {"binance": binance, "wazirx": wazirx}


@pytest.fixture
def service(config, logger, sources, state):
    return ArbitrageService(config, logger, sources=sources, state=state)


def make_opportunity(**overrides) -> Opportunity:
    values = dict(
        id="opp_BTCUSDT_1",
        symbol="BTCUSDT",
        action="buy-binance-sell-wazirx",
        buy_exchange="binance",
        sell_exchange="wazirx",
        spread_pct=1.5,
        estimated_gross_profit_pct=1.2,
        source_price=50000.0,
        target_price=50750.0,
        first_seen_ts=1_000,
        last_seen_ts=2_000,
        persistence_count=2,
    )
    values.update(overrides)
    return Opportunity(**values)


@pytest.fixture
def opportunity():
    return make_opportunity()
