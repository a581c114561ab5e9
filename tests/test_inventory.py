import pytest

from spreadguard.inventory import InventoryEngine
from spreadguard.models import Position


@pytest.fixture
def inventory(state, logger):
    return InventoryEngine(state, logger)


class TestInventory:
    def test_snapshot_is_detached(self, inventory, state):
        inventory.add_position(Position("BTCUSDT", "binance", 0.5, 50000.0))

        snap = inventory.snapshot()
        snap.cash = 1.0
        snap.positions[0].quantity = 99.0

        assert state.portfolio.cash == 100000.0
        assert state.portfolio.positions[0].quantity == 0.5

    def test_apply_pnl_moves_cash_and_value(self, inventory, state):
        inventory.apply_pnl(-250.0)

        assert state.portfolio.cash == 99750.0
        assert state.portfolio.total_value == 99750.0

    def test_exposure_and_liquidity(self, inventory, state):
        assert inventory.exposure_pct() == 0.0
        state.portfolio.cash = 60000.0

        assert inventory.exposure_pct() == pytest.approx(0.4)
        assert inventory.check_liquidity(60000.0) is True
        assert inventory.check_liquidity(60000.01) is False

    def test_exposure_with_empty_portfolio(self, inventory, state):
        state.portfolio.total_value = 0.0
        assert inventory.exposure_pct() == 0.0

    def test_remove_position(self, inventory, state):
        inventory.add_position(Position("BTCUSDT", "binance", 0.5, 50000.0))
        inventory.add_position(Position("ETHUSDT", "wazirx", 2.0, 3000.0))

        removed = inventory.remove_position("BTCUSDT", "binance")

        assert removed.quantity == 0.5
        assert [p.symbol for p in state.portfolio.positions] == ["ETHUSDT"]
        assert inventory.remove_position("BTCUSDT", "binance") is None

    def test_allocation_context(self, inventory):
        ctx = inventory.allocation_context(5000.0)
        assert (ctx.cash, ctx.max_trade_amount) == (100000.0, 5000.0)
