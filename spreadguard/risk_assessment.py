# spreadguard/risk_assessment.py
import math
from typing import List, Sequence, Tuple

from .market_engine import MarketEngine
from .models import LiquidityEstimate, Opportunity, RiskAssessmentResult
from .price_discovery import PriceHistory

# Float residue below this counts as filled
QTY_EPSILON = 1e-12


def walk_levels(levels: Sequence[Tuple[float, float]], target_qty: float) -> Tuple[float, float]:
    """
    Consumes book levels best-price-first until target_qty is filled or the
    book runs out. Returns (filled_qty, volume_weighted_avg_price).
    """
    remaining = target_qty
    notional = 0.0
    filled = 0.0
    for price, qty in levels:
        if remaining <= QTY_EPSILON:
            break
        take = min(remaining, qty)
        if take <= 0:
            continue
        notional += price * take
        filled += take
        remaining -= take
    avg_price = notional / filled if filled > 0 else 0.0
    return filled, avg_price


class RiskAssessor:
    """
    Scores an opportunity from 0 (safe) to 100 (reckless).
    Never raises: any internal failure returns a conservative high-risk result.
    """
    def __init__(self, market: MarketEngine, history: PriceHistory, config: dict, logger):
        self.market = market
        self.history = history
        self.cfg = config['risk']
        self.logger = logger

    @staticmethod
    def score(spread_pct: float, volatility_pct: float, fill_ratio: float, slippage_pct: float) -> Tuple[float, List[str]]:
        """
        Starts neutral at 50. Wider spread lowers risk; volatility, thin
        books and slippage raise it. Each factor is monotonic on its own.
        """
        notes: List[str] = []
        score = 50.0

        if spread_pct > 2.0:
            score -= 20
            notes.append(f"Large spread ({spread_pct:.2f}%) provides good profit buffer")
        elif spread_pct > 1.0:
            score -= 10
        elif spread_pct < 0.5:
            score += 20
            notes.append(f"Tight spread ({spread_pct:.2f}%) leaves little margin for error")

        if volatility_pct > 1.0:
            score += 25
        elif volatility_pct > 0.5:
            score += 15
        elif volatility_pct < 0.1:
            score -= 10

        if fill_ratio < 0.5:
            score += 30
            notes.append(f"Very low fill ratio ({fill_ratio * 100:.0f}%)")
        elif fill_ratio < 0.8:
            score += 15
        elif fill_ratio >= 1.0:
            score -= 5

        abs_slippage = abs(slippage_pct)
        if abs_slippage > 0.5:
            score += 20
        elif abs_slippage > 0.2:
            score += 10

        return max(0.0, min(100.0, score)), notes

    def _volatility(self, symbol: str, notes: List[str]) -> float:
        ticks = self.history.count(symbol)
        if ticks < 2:
            notes.append(f"Insufficient price history ({ticks} ticks) - volatility unknown")
            return float(self.cfg['default_volatility_pct'])

        volatility_pct = self.history.volatility_pct(symbol)
        if volatility_pct > 1.0:
            notes.append(f"High volatility detected ({volatility_pct:.2f}%) - price may move rapidly")
        elif volatility_pct > 0.5:
            notes.append(f"Moderate volatility ({volatility_pct:.2f}%)")
        return volatility_pct

    async def assess_risk(self, opportunity: Opportunity, target_qty: float = 1.0) -> RiskAssessmentResult:
        try:
            if not target_qty or target_qty <= 0 or not math.isfinite(target_qty):
                raise ValueError(f"target quantity must be positive, got {target_qty}")

            notes: List[str] = []
            volatility_pct = self._volatility(opportunity.symbol, notes)

            # Depth on the side we will sell into
            book = await self.market.fetch_order_book(
                opportunity.sell_exchange, opportunity.symbol, self.cfg['book_depth'])
            fillable_qty, expected_avg = walk_levels(book.asks, target_qty)
            liquidity = LiquidityEstimate(fillable_qty=fillable_qty, expected_avg_price=expected_avg)

            if fillable_qty < target_qty - QTY_EPSILON:
                notes.append(f"Low liquidity: only {fillable_qty:.3f} fillable of {target_qty} requested")
                notes.append("Partial fills likely - may not capture full spread")
            else:
                notes.append("Sufficient liquidity available for target quantity")

            mid_price = opportunity.target_price
            if fillable_qty > 0 and mid_price > 0:
                slippage_pct = (expected_avg - mid_price) / mid_price * 100
            else:
                slippage_pct = 1.0
            if abs(slippage_pct) > 0.5:
                notes.append(f"High slippage expected ({slippage_pct:.2f}%) due to orderbook depth")

            fill_ratio = fillable_qty / target_qty
            risk_score, factor_notes = self.score(opportunity.spread_pct, volatility_pct, fill_ratio, slippage_pct)
            notes.extend(factor_notes)

            if risk_score > 70:
                notes.append("HIGH RISK - consider skipping this opportunity")
            elif risk_score > 50:
                notes.append("MEDIUM RISK - proceed with caution and smaller position")
            elif risk_score < 30:
                notes.append("LOW RISK - favorable conditions for execution")

            return RiskAssessmentResult(
                risk_score=risk_score,
                slippage_pct=abs(slippage_pct),
                volatility_pct=volatility_pct,
                liquidity_estimate=liquidity,
                notes=notes,
            )
        except Exception as e:
            self.logger.error(f"Risk assessment failed for {opportunity.symbol}: {e}")
            return RiskAssessmentResult(
                risk_score=float(self.cfg['failure_risk_score']),
                slippage_pct=1.0,
                volatility_pct=1.0,
                liquidity_estimate=LiquidityEstimate(fillable_qty=0.0, expected_avg_price=0.0),
                notes=["Error assessing risk - proceeding with high risk score for safety"],
            )

    async def quick_risk_check(self, symbol: str, estimated_value: float, max_value: float = 100000.0) -> Tuple[bool, str]:
        """Cheap pre-filter: extreme volatility or oversized trades."""
        if self.history.volatility_pct(symbol) > 2.0:
            return False, "Extreme volatility detected"
        if estimated_value > max_value:
            return False, "Trade value exceeds safe limits"
        return True, "Passed quick risk check"
