import json
import os

import pytest

from spreadguard.exceptions import PersistenceError
from spreadguard.models import EventType, ExecutionRecord, ExecutionStatus, Position
from spreadguard.state import AppState, GlobalState, JsonStateStore


class TestJsonStateStore:
    def test_missing_file_returns_default(self, tmp_path):
        store = JsonStateStore(str(tmp_path / "nope.json"))
        assert store.load({"a": 1}) == {"a": 1}

    def test_corrupt_file_returns_default(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")

        assert JsonStateStore(str(path)).load({"a": 1}) == {"a": 1}

    def test_new_keys_fall_back_to_default(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"a": 5}))

        assert JsonStateStore(str(path)).load({"a": 1, "b": 2}) == {"a": 5, "b": 2}

    def test_failed_save_keeps_previous_document(self, tmp_path):
        path = tmp_path / "state.json"
        store = JsonStateStore(str(path))
        store.save({"version": 1})

        with pytest.raises(PersistenceError):
            store.save({"version": 2, "bad": object()})

        assert json.loads(path.read_text()) == {"version": 1}
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]


class TestAppState:
    def test_portfolio_round_trip(self, config, tmp_path, logger):
        store = JsonStateStore(str(tmp_path / "state.json"), logger)
        state = AppState.load(store, config, logger)
        state.portfolio.cash = 98765.43
        state.portfolio.positions.append(Position("BTCUSDT", "binance", 0.5, 50000.0))
        state.save()

        reloaded = AppState.load(store, config, logger)

        assert reloaded.portfolio.cash == 98765.43
        assert reloaded.portfolio.positions[0].quantity == 0.5
        assert reloaded.portfolio.last_update == state.portfolio.last_update

    def test_execution_log_round_trip(self, config, tmp_path, logger):
        store = JsonStateStore(str(tmp_path / "state.json"), logger)
        state = AppState.load(store, config, logger)
        state.add_execution(ExecutionRecord("exec_1", "BTCUSDT", ExecutionStatus.EXECUTING,
                                            "binance", "wazirx", 50000.0, 0.2, 1))
        state.update_execution("exec_1", status=ExecutionStatus.COMPLETED, profit=12.5)

        reloaded = AppState.load(store, config, logger)
        record = reloaded.get_execution("exec_1")

        assert record.status == ExecutionStatus.COMPLETED
        assert record.profit == 12.5

    def test_default_from_config(self, config):
        data = GlobalState.default(config)

        assert data.portfolio.cash == 100000.0
        assert data.guardian_settings.max_trade_pct_of_portfolio == 0.15
        assert data.runner.current_symbols == ["BTCUSDT", "ETHUSDT", "BNBUSDT"]

    def test_audit_filters(self, state):
        state.add_audit(EventType.EXECUTION, "buy_order_placed", agent_name="execution", opportunity_id="o1")
        state.add_audit(EventType.EXECUTION, "execution_completed", agent_name="execution", opportunity_id="o1")
        state.add_audit(EventType.DEBATE, "debate_concluded", agent_name="debate", opportunity_id="o2")

        assert len(state.query_audit(event_type=EventType.EXECUTION)) == 2
        assert len(state.query_audit(agent_name="debate")) == 1
        assert [e.action for e in state.query_audit(opportunity_id="o1", limit=1)] == ["execution_completed"]

    def test_audit_ids_unique(self, state):
        ids = {state.add_audit(EventType.SYSTEM, "tick").id for _ in range(20)}
        assert len(ids) == 20

    def test_enhanced_audit_is_capped(self, config, logger, tmp_path):
        state = AppState(GlobalState.default(config), JsonStateStore(str(tmp_path / "s.json")),
                         enhanced_capacity=3, logger=logger)
        for i in range(5):
            state.add_enhanced_audit(symbol=f"S{i}", opportunity={}, agents_outputs={},
                                     guardian_decision={}, final_decision={})

        assert [e.symbol for e in state.enhanced_audit(10)] == ["S2", "S3", "S4"]

    def test_save_writes_json_document(self, state, tmp_path):
        state.add_audit(EventType.SYSTEM, "tick")

        document = json.loads((tmp_path / "state.json").read_text())
        assert document["audit_log"][0]["action"] == "tick"
        assert document["audit_log"][0]["event_type"] == "system"
        assert os.path.exists(tmp_path / "state.json")


class CountingStore(JsonStateStore):
    def __init__(self, path):
        super().__init__(path)
        self.saves = 0

    def save(self, state):
        self.saves += 1
        super().save(state)


class TestBatchedSaves:
    @pytest.mark.asyncio
    async def test_writes_collapse_into_one_save(self, config, tmp_path, logger):
        store = CountingStore(str(tmp_path / "state.json"))
        state = AppState(GlobalState.default(config), store, logger=logger)

        async with state.batched():
            for _ in range(5):
                state.add_audit(EventType.SYSTEM, "tick")
            assert store.saves == 0

        assert store.saves == 1
        document = json.loads((tmp_path / "state.json").read_text())
        assert len(document["audit_log"]) == 5

    @pytest.mark.asyncio
    async def test_nested_batches_save_on_outer_exit(self, config, tmp_path, logger):
        store = CountingStore(str(tmp_path / "state.json"))
        state = AppState(GlobalState.default(config), store, logger=logger)

        async with state.batched():
            async with state.batched():
                state.add_audit(EventType.SYSTEM, "inner")
            assert store.saves == 0
            state.add_audit(EventType.SYSTEM, "outer")

        assert store.saves == 1

    @pytest.mark.asyncio
    async def test_clean_batch_does_not_write(self, config, tmp_path, logger):
        store = CountingStore(str(tmp_path / "state.json"))
        state = AppState(GlobalState.default(config), store, logger=logger)

        async with state.batched():
            state.query_audit()

        assert store.saves == 0
        state.add_audit(EventType.SYSTEM, "tick")
        assert store.saves == 1
