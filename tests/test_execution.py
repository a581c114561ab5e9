import random
from unittest.mock import AsyncMock

import pytest

from spreadguard.exceptions import PersistenceError
from spreadguard.execution import ExecutionService
from spreadguard.inventory import InventoryEngine
from spreadguard.market_engine import MarketEngine
from spreadguard.models import ExecutionStatus
from spreadguard.state import AppState, GlobalState, JsonStateStore


@pytest.fixture
def inventory(state, logger):
    return InventoryEngine(state, logger)


def make_engine(config, logger, sources, state, inventory, hedge=None):
    market = MarketEngine(config, logger, sources)
    return ExecutionService(market, state, inventory, config, logger, rng=random.Random(1), hedge=hedge)


def actions(state, opportunity_id):
    return [e.action for e in state.query_audit(opportunity_id=opportunity_id)]


class FlakyStore(JsonStateStore):
    """Writes succeed until healthy_saves is used up."""
    def __init__(self, path, healthy_saves):
        super().__init__(path)
        self.healthy_saves = healthy_saves

    def save(self, state):
        if self.healthy_saves <= 0:
            raise PersistenceError(f"Failed to save state to {self.path}: disk full")
        self.healthy_saves -= 1
        super().save(state)


class TestFullFill:
    @pytest.mark.asyncio
    async def test_settles_with_fee_model(self, config, logger, sources, state, inventory, opportunity):
        engine = make_engine(config, logger, sources, state, inventory)

        result = await engine.execute(opportunity, 10000.0)

        assert result.success is True
        assert result.buy_qty == pytest.approx(0.2)
        assert 50000.0 * 1.0001 <= result.buy_price <= 50000.0 * 1.001
        assert result.filled_qty == pytest.approx(0.2)
        assert result.avg_sell_price == pytest.approx(50750.0)
        assert result.partial_fill is False
        assert result.rollback_triggered is False

        sell_revenue = 50750.0 * 0.2
        buy_cost = result.buy_price * 0.2
        expected = (sell_revenue - sell_revenue * 0.002) - (buy_cost + buy_cost * 0.001)
        assert result.net_profit == pytest.approx(expected)
        assert result.net_profit > 0

    @pytest.mark.asyncio
    async def test_portfolio_and_record_updated(self, config, logger, sources, state, inventory, opportunity):
        engine = make_engine(config, logger, sources, state, inventory)

        result = await engine.execute(opportunity, 10000.0)

        assert state.portfolio.cash == pytest.approx(100000.0 + result.net_profit)
        assert state.portfolio.total_value == pytest.approx(100000.0 + result.net_profit)
        record = state.get_execution(result.audit_id)
        assert record.status == ExecutionStatus.COMPLETED
        assert record.profit == pytest.approx(result.net_profit)
        assert record.completed_at is not None

    @pytest.mark.asyncio
    async def test_audit_trail_order(self, config, logger, sources, state, inventory, opportunity):
        engine = make_engine(config, logger, sources, state, inventory)

        await engine.execute(opportunity, 10000.0)

        assert actions(state, opportunity.id) == ["buy_order_placed", "sell_simulated", "execution_completed"]


class TestPartialFill:
    @pytest.mark.asyncio
    async def test_rollback_triggered_below_ninety_percent(self, config, logger, sources, wazirx, state,
                                                           inventory, opportunity):
        wazirx.set_order_book("BTCUSDT", asks=[(51000.0, 0.05)])
        engine = make_engine(config, logger, sources, state, inventory)

        result = await engine.execute(opportunity, 10000.0)

        assert result.success is True
        assert result.partial_fill is True
        assert result.rollback_triggered is True
        assert result.filled_qty == pytest.approx(0.05)
        assert result.fill_ratio == pytest.approx(0.25)
        assert actions(state, opportunity.id) == [
            "buy_order_placed", "sell_simulated", "rollback_triggered", "execution_completed"]

        revenue = 51000.0 * 0.05
        expected = revenue * (1 - 0.002) - result.buy_price * 0.2 * 1.001
        assert result.net_profit == pytest.approx(expected)
        assert result.slippage_pct == pytest.approx((51000.0 - 50750.0) / 50750.0 * 100)

    @pytest.mark.asyncio
    async def test_small_shortfall_is_partial_without_rollback(self, config, logger, sources, wazirx, state,
                                                               inventory, opportunity):
        wazirx.set_order_book("BTCUSDT", asks=[(50750.0, 0.19)])
        engine = make_engine(config, logger, sources, state, inventory)

        result = await engine.execute(opportunity, 10000.0)

        assert result.partial_fill is True
        assert result.rollback_triggered is False
        assert "rollback_triggered" not in actions(state, opportunity.id)

    @pytest.mark.asyncio
    async def test_hedge_hook_receives_unfilled_quantity(self, config, logger, sources, wazirx, state,
                                                         inventory, opportunity):
        wazirx.set_order_book("BTCUSDT", asks=[(51000.0, 0.05)])
        hedge = AsyncMock()
        engine = make_engine(config, logger, sources, state, inventory, hedge=hedge)

        await engine.execute(opportunity, 10000.0)

        hedge.assert_awaited_once()
        opp_arg, qty_arg = hedge.await_args.args
        assert opp_arg is opportunity
        assert qty_arg == pytest.approx(0.15)
        rollback = state.query_audit(action="rollback_triggered")[0]
        assert rollback.details["hedge_action"] == "hedge_callback"


class TestFailures:
    @pytest.mark.asyncio
    async def test_book_failure_returns_structured_result(self, config, logger, sources, wazirx, state,
                                                          inventory, opportunity):
        wazirx.outage = True
        engine = make_engine(config, logger, sources, state, inventory)

        result = await engine.execute(opportunity, 10000.0)

        assert result.success is False
        assert result.error
        assert state.get_execution(result.audit_id).status == ExecutionStatus.FAILED
        assert actions(state, opportunity.id)[-1] == "execution_failed"
        assert state.portfolio.cash == 100000.0

    @pytest.mark.asyncio
    async def test_non_positive_amount_fails(self, config, logger, sources, state, inventory, opportunity):
        engine = make_engine(config, logger, sources, state, inventory)

        result = await engine.execute(opportunity, 0.0)

        assert result.success is False
        assert state.get_execution(result.audit_id) is None
        assert actions(state, opportunity.id) == ["execution_failed"]

    @pytest.mark.asyncio
    async def test_store_failure_returns_structured_result(self, config, logger, sources, tmp_path, opportunity):
        store = FlakyStore(str(tmp_path / "state.json"), healthy_saves=2)
        state = AppState(GlobalState.default(config), store, logger=logger)
        engine = make_engine(config, logger, sources, state, InventoryEngine(state, logger))

        result = await engine.execute(opportunity, 10000.0)

        assert result.success is False
        assert "Failed to save state" in result.error
        assert state.get_execution(result.audit_id).status == ExecutionStatus.FAILED
        assert actions(state, opportunity.id)[-1] == "execution_failed"
