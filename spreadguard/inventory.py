# spreadguard/inventory.py
from dataclasses import replace
from typing import Optional

from .models import AllocationContext, Portfolio, Position, now_ms
from .state import AppState


class InventoryEngine:
    """
    Sole writer of the portfolio section.
    Settlement credits realized P&L to cash and total value.
    """
    def __init__(self, state: AppState, logger):
        self.state = state
        self.logger = logger

    def snapshot(self) -> Portfolio:
        p = self.state.portfolio
        return replace(p, positions=[replace(pos) for pos in p.positions])

    def exposure_pct(self) -> float:
        p = self.state.portfolio
        if p.total_value <= 0:
            return 0.0
        return (p.total_value - p.cash) / p.total_value

    def check_liquidity(self, amount_needed: float) -> bool:
        return self.state.portfolio.cash >= amount_needed

    def allocation_context(self, max_trade_amount: float) -> AllocationContext:
        return AllocationContext(cash=self.state.portfolio.cash, max_trade_amount=max_trade_amount)

    def apply_pnl(self, net_profit: float):
        p = self.state.portfolio
        p.cash += net_profit
        p.total_value += net_profit
        p.last_update = now_ms()
        self.state.save()
        self.logger.info(f"💰 Portfolio settled {net_profit:+.2f} | cash ${p.cash:,.2f}")

    def add_position(self, position: Position):
        p = self.state.portfolio
        p.positions.append(position)
        p.last_update = now_ms()
        self.state.save()

    def remove_position(self, symbol: str, exchange: str) -> Optional[Position]:
        p = self.state.portfolio
        for i, pos in enumerate(p.positions):
            if pos.symbol == symbol and pos.exchange == exchange:
                removed = p.positions.pop(i)
                p.last_update = now_ms()
                self.state.save()
                return removed
        return None
