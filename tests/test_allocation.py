import pytest

from spreadguard.allocation import CapitalAllocator
from spreadguard.models import (
    AllocationContext,
    LiquidityEstimate,
    OpportunityScore,
    PortfolioState,
    RiskAssessmentResult,
)


def risk_of(score, fillable=1.0, volatility=0.3):
    return RiskAssessmentResult(
        risk_score=score,
        slippage_pct=0.0,
        volatility_pct=volatility,
        liquidity_estimate=LiquidityEstimate(fillable_qty=fillable, expected_avg_price=50750.0),
    )


@pytest.fixture
def allocator(config, logger):
    return CapitalAllocator(config, logger)


class TestSingleAllocation:
    @pytest.mark.parametrize("score,pct", [
        (95.0, 0.02), (80.1, 0.02), (80.0, 0.05), (60.0, 0.05),
        (59.9, 0.10), (30.0, 0.10), (29.9, 0.15), (0.0, 0.15),
    ])
    def test_risk_bands(self, allocator, opportunity, score, pct):
        result = allocator.allocate(opportunity, risk_of(score), AllocationContext(100000.0, 1e9))

        assert result.allocation_pct == pct
        assert result.allocated_amount == pytest.approx(100000.0 * pct)

    def test_capped_at_max_trade_amount(self, allocator, opportunity):
        result = allocator.allocate(opportunity, risk_of(35.0), AllocationContext(100000.0, 5000.0))

        assert result.allocation_pct == 0.10
        assert result.allocated_amount == 5000.0
        assert "Capped" in result.reason

    def test_never_exceeds_cash(self, allocator, opportunity):
        for cash in [0.5, 10.0, 250.0, 100000.0]:
            for cap in [0.0, 100.0, 5000.0, 1e9]:
                result = allocator.allocate(opportunity, risk_of(10.0), AllocationContext(cash, cap))
                assert result.allocated_amount <= cash
                assert result.allocated_amount <= cap

    @pytest.mark.parametrize("cash", [0.0, -100.0, float("nan"), float("inf")])
    def test_invalid_cash_allocates_nothing(self, allocator, opportunity, cash):
        result = allocator.allocate(opportunity, risk_of(35.0), AllocationContext(cash, 5000.0))

        assert result.allocated_amount == 0.0
        assert result.allocation_pct == 0.0

    def test_error_returns_zero(self, allocator, opportunity):
        result = allocator.allocate(opportunity, None, AllocationContext(100000.0, 5000.0))

        assert result.allocated_amount == 0.0
        assert "Error" in result.reason

    def test_reason_mentions_liquidity_and_volatility(self, allocator, opportunity):
        result = allocator.allocate(opportunity, risk_of(35.0, fillable=0.4, volatility=1.5),
                                    AllocationContext(100000.0, 1e9))

        assert "Limited liquidity" in result.reason
        assert "High volatility" in result.reason


class TestPortfolioAllocation:
    @pytest.fixture
    def portfolio(self):
        return PortfolioState(total_capital=100000.0, available_capital=100000.0)

    def scores(self):
        return [
            OpportunityScore(id="a", expected_return=0.05, risk=0.01, sharpe_ratio=2.0, time_horizon=30, spread_size=2.0),
            OpportunityScore(id="b", expected_return=0.03, risk=0.02, sharpe_ratio=1.0, time_horizon=120, spread_size=1.0),
            OpportunityScore(id="c", expected_return=0.02, risk=0.05, sharpe_ratio=0.5, time_horizon=600),
        ]

    def test_priority_formula(self):
        s = OpportunityScore(id="x", expected_return=0.05, risk=0.1, sharpe_ratio=2.0, time_horizon=30, spread_size=1.5)
        # 2 + 15 - 5 + 20
        assert CapitalAllocator.priority(s) == pytest.approx(32.0)

    def test_kelly_fraction_clamped(self):
        assert CapitalAllocator.kelly_fraction(0.05, 0.0) == 0.25
        assert CapitalAllocator.kelly_fraction(0.01, 0.05) == 0.0
        assert CapitalAllocator.kelly_fraction(0.04, 0.03) == pytest.approx(0.25)

    def test_ranked_and_capped(self, allocator, portfolio):
        strategies = allocator.allocate_portfolio(self.scores(), portfolio)

        assert [s.opportunity_id for s in strategies][:2] == ["a", "b"]
        for s in strategies:
            assert s.allocated_capital <= 20000.0
            assert s.allocated_capital >= 100.0
        assert sum(s.allocated_capital for s in strategies) <= 80000.0

    @pytest.mark.parametrize("total,available", [
        (100000.0, 50000.0),
        (100000.0, 10000.0),
        (250000.0, 40000.0),
    ])
    def test_caps_follow_available_capital(self, allocator, total, available):
        partly_deployed = PortfolioState(total_capital=total, available_capital=available,
                                         allocated_capital=total - available)
        strong = [OpportunityScore(id=f"s{i}", expected_return=1.0, risk=0.0, sharpe_ratio=3.0, time_horizon=30)
                  for i in range(10)]

        strategies = allocator.allocate_portfolio(strong, partly_deployed)

        assert strategies
        for s in strategies:
            assert s.allocated_capital <= 0.2 * available + 1e-9
        assert sum(s.allocated_capital for s in strategies) <= 0.8 * available + 1e-9

    def test_single_strong_opportunity_capped_by_available(self, allocator):
        partly_deployed = PortfolioState(total_capital=100000.0, available_capital=50000.0,
                                         allocated_capital=50000.0)
        score = OpportunityScore(id="a", expected_return=1.0, risk=0.0, sharpe_ratio=3.0, time_horizon=30)

        [strategy] = allocator.allocate_portfolio([score], partly_deployed)

        assert strategy.allocated_capital == pytest.approx(10000.0)

    def test_negative_edge_is_skipped(self, allocator, portfolio):
        strategies = allocator.allocate_portfolio(self.scores(), portfolio)

        # c: expected return below risk -> zero Kelly fraction
        assert "c" not in [s.opportunity_id for s in strategies]

    def test_empty_portfolio(self, allocator):
        empty = PortfolioState(total_capital=0.0, available_capital=0.0)
        assert allocator.allocate_portfolio(self.scores(), empty) == []

    def test_rebalance_frees_position_value(self, allocator):
        tight = PortfolioState(total_capital=100000.0, available_capital=0.0,
                               allocated_capital=100000.0, positions=[{"value": 100000.0}])

        assert allocator.allocate_portfolio(self.scores(), tight) == []
        assert allocator.rebalance_portfolio(tight, self.scores()) != []

    def test_diversification_warnings(self, allocator, portfolio):
        strategies = allocator.allocate_portfolio(self.scores(), portfolio)
        ok, warnings = allocator.check_diversification(strategies, portfolio)

        assert ok is False
        assert any("low diversification" in w for w in warnings)

    def test_summary(self, allocator, portfolio):
        strategies = allocator.allocate_portfolio(self.scores(), portfolio)
        summary = allocator.allocation_summary(strategies, portfolio)

        assert summary["count"] == len(strategies)
        assert summary["top_priority"] == "a"
        assert summary["utilization_pct"] == pytest.approx(summary["total_allocated"] / 1000.0)
