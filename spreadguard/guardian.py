# spreadguard/guardian.py
from datetime import date
from typing import List, Optional

from .models import AllocationResult, GuardianConfig, GuardianResult, Portfolio, RiskAssessmentResult
from .state import AppState

COMPLETED_ACTION = "execution_completed"


class Guardian:
    """
    The final gatekeeper: can this allocation be executed?
    Hard limits short-circuit with their reason; exposure only warns.
    Reads snapshots, mutates nothing.
    """
    def __init__(self, logger):
        self.logger = logger

    def evaluate(
        self,
        allocated_amount: float,
        risk: RiskAssessmentResult,
        portfolio: Portfolio,
        config: GuardianConfig,
        trades_today: int,
    ) -> GuardianResult:
        warnings: List[str] = []

        # 1. Trade size vs portfolio
        if portfolio.total_value <= 0:
            return self._veto("Portfolio value is zero - cannot size trade", warnings)
        trade_pct = allocated_amount / portfolio.total_value
        if trade_pct > config.max_trade_pct_of_portfolio:
            return self._veto(
                f"Trade size {trade_pct * 100:.1f}% exceeds limit {config.max_trade_pct_of_portfolio * 100:.1f}%",
                warnings,
            )

        # 2. Daily trade count
        if trades_today >= config.daily_max_trades:
            return self._veto(f"Daily trade limit reached ({trades_today}/{config.daily_max_trades})", warnings)

        # 3. Exposure, soft
        exposure = (portfolio.total_value - portfolio.cash) / portfolio.total_value
        if exposure > config.global_max_exposure_pct:
            warnings.append(
                f"Portfolio exposure {exposure * 100:.1f}% exceeds {config.global_max_exposure_pct * 100:.1f}%"
            )

        # 4. Volatility
        if config.veto_conditions.high_volatility and risk.volatility_pct > config.max_volatility_pct:
            return self._veto(
                f"High volatility {risk.volatility_pct:.2f}% exceeds {config.max_volatility_pct:.2f}% threshold",
                warnings,
            )

        # 5. Risk score
        if risk.risk_score > config.max_risk_score:
            return self._veto(
                f"Risk score {risk.risk_score:.0f} too high for autonomous execution (max {config.max_risk_score:.0f})",
                warnings,
            )

        return GuardianResult(passed=True, warnings=warnings)

    def check(
        self,
        allocation: AllocationResult,
        risk: RiskAssessmentResult,
        state: AppState,
        config: Optional[GuardianConfig] = None,
        today: Optional[date] = None,
    ) -> GuardianResult:
        config = config or state.guardian_settings
        trades_today = state.count_actions_on(COMPLETED_ACTION, today or date.today())
        return self.evaluate(allocation.allocated_amount, risk, state.portfolio, config, trades_today)

    def _veto(self, reason: str, warnings: List[str]) -> GuardianResult:
        self.logger.warning(f"⛔ REJECTED: {reason}")
        return GuardianResult(passed=False, reason=reason, warnings=warnings)
