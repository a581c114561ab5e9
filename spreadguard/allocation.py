# spreadguard/allocation.py
import math
from typing import Any, Dict, List, Optional, Tuple

from .models import (
    AllocationContext,
    AllocationResult,
    AllocationStrategy,
    Opportunity,
    OpportunityScore,
    PortfolioState,
    RiskAssessmentResult,
)

# (risk score above/at, fraction of cash), checked top-down
RISK_BANDS: List[Tuple[float, float, str]] = [
    (80.0, 0.02, "Very high risk"),
    (60.0, 0.05, "High risk"),
    (30.0, 0.10, "Moderate risk"),
]
LOW_RISK_PCT = 0.15


class CapitalAllocator:
    """
    Sizes trades. allocate() handles the single-opportunity pipeline case;
    allocate_portfolio() ranks and sizes a batch of scored opportunities.
    """
    def __init__(self, config: dict, logger):
        self.cfg = config['allocation']
        self.logger = logger
        self.max_single_pct = self.cfg['max_single_allocation_pct']
        self.max_total_pct = self.cfg['max_total_allocation_pct']
        self.min_ticket = self.cfg['min_ticket']

    @staticmethod
    def band_for(risk_score: float) -> Tuple[float, str]:
        if risk_score > RISK_BANDS[0][0]:
            return RISK_BANDS[0][1], RISK_BANDS[0][2]
        for threshold, pct, label in RISK_BANDS[1:]:
            if risk_score >= threshold:
                return pct, label
        return LOW_RISK_PCT, "Low risk"

    def allocate(self, opportunity: Opportunity, risk: RiskAssessmentResult,
                 ctx: AllocationContext) -> AllocationResult:
        try:
            cash = float(ctx.cash)
            if not math.isfinite(cash) or cash <= 0:
                return AllocationResult(0.0, 0.0, "No available cash")

            pct, label = self.band_for(risk.risk_score)
            reasons = [f"{label} (score: {risk.risk_score:.0f}) - allocating {pct * 100:.0f}% of portfolio"]

            potential = cash * pct
            max_trade = max(0.0, float(ctx.max_trade_amount))
            allocated = min(potential, max_trade, cash)
            if allocated < potential:
                reasons.append(f"Capped at max trade amount (${max_trade:,.0f})")

            target_qty = 1.0
            if risk.liquidity_estimate.fillable_qty < target_qty:
                reasons.append(f"Limited liquidity ({risk.liquidity_estimate.fillable_qty:.3f} units available)")
            if risk.volatility_pct > 1.0:
                reasons.append(f"High volatility ({risk.volatility_pct:.2f}%) - reduced position recommended")

            self.logger.debug(f"[Allocator] {opportunity.symbol}: ${allocated:,.2f} ({pct * 100:.0f}%)")
            return AllocationResult(allocation_pct=pct, allocated_amount=allocated, reason=". ".join(reasons))
        except Exception as e:
            self.logger.error(f"Allocation failed for {opportunity.symbol}: {e}")
            return AllocationResult(0.0, 0.0, "Error in allocation calculation - no capital allocated")

    # --- MULTI-OPPORTUNITY ---

    @staticmethod
    def priority(score: OpportunityScore) -> float:
        value = score.sharpe_ratio
        if score.spread_size is not None:
            value += score.spread_size * 10
        value -= score.risk * 50
        if score.time_horizon < 60:
            value += 20
        elif score.time_horizon < 300:
            value += 10
        return max(0.0, value)

    @staticmethod
    def kelly_fraction(expected_return: float, risk: float) -> float:
        """Simplified Kelly, clamped to a quarter of capital."""
        fraction = (expected_return - risk) / max(expected_return, 0.01)
        return max(0.0, min(fraction, 0.25))

    def allocate_portfolio(self, scores: List[OpportunityScore],
                           portfolio: PortfolioState) -> List[AllocationStrategy]:
        if not scores or portfolio.total_capital <= 0 or portfolio.available_capital <= 0:
            return []

        ranked = sorted(scores, key=self.priority, reverse=True)
        # Both caps are fractions of capital not already deployed
        budget = portfolio.available_capital * self.max_total_pct
        per_opp_cap = portfolio.available_capital * self.max_single_pct

        strategies: List[AllocationStrategy] = []
        remaining = budget
        for rank, score in enumerate(ranked):
            if remaining < self.min_ticket:
                break

            fraction = self.kelly_fraction(score.expected_return, score.risk)
            fraction *= max(1 - rank * 0.1, 0.3)
            if score.spread_size is not None:
                fraction *= min(1 + score.spread_size / 10, 2.0)
            fraction *= max(1 - score.risk * 0.5, 0.2)

            amount = min(portfolio.available_capital * fraction, per_opp_cap, remaining)
            if amount < self.min_ticket:
                continue

            strategies.append(AllocationStrategy(
                opportunity_id=score.id,
                allocated_capital=amount,
                percentage=amount / portfolio.total_capital * 100,
                priority=self.priority(score),
                reasoning=self._reasoning(score, rank, fraction),
            ))
            remaining -= amount

        self.logger.info(f"[Allocator] {len(strategies)} of {len(scores)} opportunities funded, "
                         f"${budget - remaining:,.2f} deployed")
        return strategies

    @staticmethod
    def _reasoning(score: OpportunityScore, rank: int, fraction: float) -> str:
        parts = [f"Rank #{rank + 1}", f"Sharpe {score.sharpe_ratio:.2f}", f"risk {score.risk * 100:.0f}%"]
        if score.spread_size is not None:
            parts.append(f"spread {score.spread_size:.2f}%")
        parts.append(f"size {fraction * 100:.1f}% of available")
        return ", ".join(parts)

    def rebalance_portfolio(self, portfolio: PortfolioState,
                            scores: List[OpportunityScore]) -> List[AllocationStrategy]:
        """Frees 30% of open position value, then allocates as usual."""
        freed = sum(float(p.get('value', 0.0)) for p in portfolio.positions) * 0.3
        adjusted = PortfolioState(
            total_capital=portfolio.total_capital,
            available_capital=portfolio.available_capital + freed,
            allocated_capital=max(0.0, portfolio.allocated_capital - freed),
            positions=list(portfolio.positions),
        )
        return self.allocate_portfolio(scores, adjusted)

    def check_diversification(self, strategies: List[AllocationStrategy],
                              portfolio: PortfolioState) -> Tuple[bool, List[str]]:
        warnings: List[str] = []
        if portfolio.total_capital <= 0:
            return False, ["Portfolio has no capital"]

        for s in strategies:
            if s.allocated_capital / portfolio.total_capital > 0.25:
                warnings.append(f"{s.opportunity_id} takes {s.percentage:.1f}% of capital (>25%)")

        total = sum(s.allocated_capital for s in strategies)
        if total / portfolio.total_capital > 0.85:
            warnings.append(f"Total allocation {total / portfolio.total_capital * 100:.1f}% exceeds 85%")

        if strategies and len(strategies) < 3:
            warnings.append(f"Only {len(strategies)} allocations - low diversification")

        return not warnings, warnings

    def allocation_summary(self, strategies: List[AllocationStrategy],
                           portfolio: Optional[PortfolioState] = None) -> Dict[str, Any]:
        total = sum(s.allocated_capital for s in strategies)
        summary: Dict[str, Any] = {
            "count": len(strategies),
            "total_allocated": total,
            "average_allocation": total / len(strategies) if strategies else 0.0,
            "largest_allocation": max((s.allocated_capital for s in strategies), default=0.0),
            "top_priority": strategies[0].opportunity_id if strategies else None,
        }
        if portfolio is not None and portfolio.total_capital > 0:
            summary["utilization_pct"] = total / portfolio.total_capital * 100
        return summary
