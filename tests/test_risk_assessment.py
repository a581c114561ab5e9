import pytest

from spreadguard.market_engine import MarketEngine
from spreadguard.price_discovery import PriceHistory
from spreadguard.risk_assessment import RiskAssessor, walk_levels


@pytest.fixture
def history():
    return PriceHistory()


@pytest.fixture
def assessor(config, logger, sources, history):
    return RiskAssessor(MarketEngine(config, logger, sources), history, config, logger)


class TestWalkLevels:
    def test_partial_book(self):
        filled, avg = walk_levels([(100.0, 1.0), (110.0, 1.0)], 3.0)
        assert filled == pytest.approx(2.0)
        assert avg == pytest.approx(105.0)

    def test_stops_at_target(self):
        filled, avg = walk_levels([(100.0, 1.0), (110.0, 5.0)], 1.5)
        assert filled == pytest.approx(1.5)
        assert avg == pytest.approx((100.0 + 55.0) / 1.5)

    def test_empty_book(self):
        assert walk_levels([], 1.0) == (0.0, 0.0)


class TestScore:
    @pytest.mark.parametrize("spread", [0.3, 0.7, 1.5, 2.5])
    @pytest.mark.parametrize("fill_ratio", [0.2, 0.6, 0.9, 1.0])
    @pytest.mark.parametrize("slippage", [0.0, 0.3, 0.8])
    def test_volatility_never_lowers_risk(self, spread, fill_ratio, slippage):
        vols = [0.0, 0.05, 0.1, 0.3, 0.5, 0.51, 0.9, 1.0, 1.01, 3.0, 10.0]
        scores = [RiskAssessor.score(spread, v, fill_ratio, slippage)[0] for v in vols]

        assert scores == sorted(scores)

    def test_score_clamped(self):
        high, _ = RiskAssessor.score(0.1, 5.0, 0.1, 2.0)
        low, _ = RiskAssessor.score(5.0, 0.0, 1.0, 0.0)
        assert high == 100.0
        assert low == 15.0

    def test_neutral_baseline(self):
        score, _ = RiskAssessor.score(0.8, 0.3, 0.9, 0.1)
        assert score == 50.0


class TestAssessRisk:
    @pytest.mark.asyncio
    async def test_favorable_opportunity(self, assessor, opportunity):
        result = await assessor.assess_risk(opportunity, 1.0)

        # 50 - 10 (spread) + 0 (default volatility) - 5 (full fill) + 0 (slippage)
        assert result.risk_score == 35.0
        assert result.volatility_pct == 0.5
        assert result.liquidity_estimate.fillable_qty == pytest.approx(1.0)
        assert result.liquidity_estimate.expected_avg_price == pytest.approx(50750.0)
        assert result.slippage_pct == pytest.approx(0.0)
        assert any("Insufficient price history" in n for n in result.notes)

    @pytest.mark.asyncio
    async def test_uses_history_when_available(self, assessor, history, opportunity):
        for i in range(10):
            history.add("BTCUSDT", 50000.0, i)

        result = await assessor.assess_risk(opportunity, 1.0)

        assert result.volatility_pct == 0.0
        assert result.risk_score == 25.0
        assert any("LOW RISK" in n for n in result.notes)

    @pytest.mark.asyncio
    async def test_thin_book_raises_score(self, assessor, opportunity):
        result = await assessor.assess_risk(opportunity, 20.0)

        # 7 of 20 fillable: fill ratio 0.35 -> +30
        assert result.liquidity_estimate.fillable_qty == pytest.approx(7.0)
        assert result.risk_score >= 70.0
        assert any("Low liquidity" in n for n in result.notes)

    @pytest.mark.asyncio
    async def test_fail_safe_when_book_unavailable(self, assessor, opportunity, wazirx):
        wazirx.outage = True

        result = await assessor.assess_risk(opportunity, 1.0)

        assert result.risk_score == 80.0
        assert result.slippage_pct == 1.0
        assert result.volatility_pct == 1.0
        assert result.liquidity_estimate.fillable_qty == 0.0

    @pytest.mark.asyncio
    async def test_fail_safe_on_bad_quantity(self, assessor, opportunity):
        result = await assessor.assess_risk(opportunity, 0)
        assert result.risk_score == 80.0

    @pytest.mark.asyncio
    async def test_quick_risk_check(self, assessor):
        ok, _ = await assessor.quick_risk_check("BTCUSDT", 1000.0)
        too_big, reason = await assessor.quick_risk_check("BTCUSDT", 1_000_000.0)

        assert ok is True
        assert too_big is False
        assert "exceeds" in reason
