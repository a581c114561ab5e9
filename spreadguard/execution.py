# spreadguard/execution.py
import random
from typing import Awaitable, Callable, Optional

from .exceptions import ExecutionError, PersistenceError
from .inventory import InventoryEngine
from .market_engine import MarketEngine
from .models import EventType, ExecutionRecord, ExecutionResult, ExecutionStatus, Opportunity, now_ms
from .risk_assessment import QTY_EPSILON, walk_levels
from .state import AppState, new_id

# Called with (opportunity, unfilled_qty) when a fill is too thin to keep
HedgeHook = Callable[[Opportunity, float], Awaitable[None]]

AGENT_NAME = "execution"


class ExecutionService:
    """
    Simulated two-leg execution.
    The buy leg fills at the quote plus a small random premium; the sell leg
    walks the target venue's book. Under-fills trigger the rollback hook.
    Never raises: failures come back as ExecutionResult(success=False).
    """
    def __init__(
        self,
        market: MarketEngine,
        state: AppState,
        inventory: InventoryEngine,
        config: dict,
        logger,
        rng: Optional[random.Random] = None,
        hedge: Optional[HedgeHook] = None,
    ):
        self.market = market
        self.state = state
        self.inventory = inventory
        self.cfg = config['execution']
        self.logger = logger
        self.rng = rng or random.Random(config['system'].get('seed'))
        self.hedge = hedge

    def _audit(self, action: str, opportunity: Opportunity, component: Optional[str] = None, **details):
        return self.state.add_audit(
            EventType.EXECUTION,
            action,
            details=details,
            agent_name=AGENT_NAME,
            component=component,
            opportunity_id=opportunity.id,
        )

    async def execute(self, opportunity: Opportunity, allocated_amount: float) -> ExecutionResult:
        execution_id = new_id("exec")
        record_created = False
        buy_price = 0.0
        buy_qty = 0.0

        try:
            if allocated_amount is None or allocated_amount <= 0:
                raise ExecutionError(f"Allocated amount must be positive, got {allocated_amount}")
            if opportunity.source_price <= 0:
                raise ExecutionError(f"Invalid source price {opportunity.source_price}")

            self.logger.info(
                f"⚡ EXECUTION TRIGGERED: {opportunity.symbol} | Buy {opportunity.buy_exchange} -> "
                f"Sell {opportunity.sell_exchange} | ${allocated_amount:,.2f}"
            )

            # 1-2. Buy leg
            buy_qty = allocated_amount / opportunity.source_price
            slippage = self.rng.uniform(self.cfg['buy_slippage_min'], self.cfg['buy_slippage_max'])
            buy_price = opportunity.source_price * (1 + slippage)
            buy_fee = buy_price * buy_qty * self.cfg['buy_fee_rate']
            self._audit(
                "buy_order_placed", opportunity, component=opportunity.buy_exchange,
                execution_id=execution_id, symbol=opportunity.symbol,
                buy_price=buy_price, buy_qty=buy_qty, buy_fee=buy_fee, slippage=slippage,
            )

            # 3. Record
            self.state.add_execution(ExecutionRecord(
                id=execution_id,
                symbol=opportunity.symbol,
                status=ExecutionStatus.EXECUTING,
                buy_exchange=opportunity.buy_exchange,
                sell_exchange=opportunity.sell_exchange,
                buy_price=buy_price,
                buy_qty=buy_qty,
                timestamp=now_ms(),
                opportunity_id=opportunity.id,
            ))
            record_created = True

            # 4. Sell leg against target depth
            book = await self.market.fetch_order_book(
                opportunity.sell_exchange, opportunity.symbol, self.cfg['book_depth'])
            filled_qty, avg_sell_price = walk_levels(book.asks, buy_qty)

            # 5. Fill quality
            fill_ratio = filled_qty / buy_qty
            partial_fill = fill_ratio < 1.0 and (buy_qty - filled_qty) > QTY_EPSILON
            self._audit(
                "sell_simulated", opportunity, component=opportunity.sell_exchange,
                execution_id=execution_id, filled_qty=filled_qty, avg_sell_price=avg_sell_price,
                fill_ratio=fill_ratio, partial_fill=partial_fill,
            )

            # 6. Rollback trigger
            rollback = fill_ratio < self.cfg['rollback_fill_ratio']
            if rollback:
                await self._neutralize_underfill(opportunity, execution_id, buy_qty - filled_qty, fill_ratio)

            # 7. Settlement
            sell_revenue = avg_sell_price * filled_qty
            sell_fee = sell_revenue * self.cfg['sell_fee_rate']
            buy_cost = buy_price * buy_qty + buy_fee
            net_profit = sell_revenue - sell_fee - buy_cost

            reference = opportunity.target_price
            if reference > 0 and filled_qty > 0:
                slippage_pct = (avg_sell_price - reference) / reference * 100
            else:
                slippage_pct = 0.0

            # 8. Terminal state
            self.state.update_execution(
                execution_id,
                status=ExecutionStatus.COMPLETED,
                sell_price=avg_sell_price,
                sell_qty=filled_qty,
                profit=net_profit,
                partial_fill=partial_fill,
                completed_at=now_ms(),
            )
            self.inventory.apply_pnl(net_profit)
            self._audit(
                "execution_completed", opportunity,
                execution_id=execution_id, net_profit=net_profit,
                slippage_pct=slippage_pct, partial_fill=partial_fill,
            )

            icon = "✅" if net_profit >= 0 else "🔻"
            self.logger.info(
                f"{icon} FILLED {opportunity.symbol}: {filled_qty:.6f}/{buy_qty:.6f} @ {avg_sell_price:,.2f} | "
                f"Net ${net_profit:+,.2f}"
            )
            return ExecutionResult(
                success=True,
                buy_price=buy_price,
                buy_qty=buy_qty,
                avg_sell_price=avg_sell_price,
                filled_qty=filled_qty,
                net_profit=net_profit,
                slippage_pct=slippage_pct,
                partial_fill=partial_fill,
                audit_id=execution_id,
                fill_ratio=fill_ratio,
                rollback_triggered=rollback,
            )

        except Exception as e:
            self.logger.error(f"❌ EXECUTION FAILED {opportunity.symbol}: {e}")
            # The store may be what failed; keep the in-memory trail and report
            try:
                if record_created:
                    self.state.update_execution(
                        execution_id, status=ExecutionStatus.FAILED, error=str(e), completed_at=now_ms())
            except PersistenceError as persist_error:
                self.logger.critical(f"💾 Could not persist status of {execution_id}: {persist_error}")
            try:
                self._audit("execution_failed", opportunity, execution_id=execution_id, error=str(e))
            except PersistenceError as persist_error:
                self.logger.critical(f"💾 Could not persist failure audit of {execution_id}: {persist_error}")
            return ExecutionResult(
                success=False,
                buy_price=buy_price,
                buy_qty=buy_qty,
                avg_sell_price=0.0,
                filled_qty=0.0,
                net_profit=0.0,
                slippage_pct=0.0,
                partial_fill=False,
                audit_id=execution_id,
                error=str(e),
            )

    async def _neutralize_underfill(self, opportunity: Opportunity, execution_id: str,
                                    unfilled_qty: float, fill_ratio: float):
        """
        Under-filled sell leg: the unsold remainder is flagged for a hedge.
        Without a hook the hedge is simulated and only audited.
        """
        self.logger.error(
            f"🚨 UNDER-FILL {opportunity.symbol}: {fill_ratio * 100:.1f}% filled, "
            f"{unfilled_qty:.6f} left on {opportunity.buy_exchange}. INITIATING ROLLBACK."
        )
        hedge_action = "hedge_callback" if self.hedge else "simulated_hedge_order"
        self._audit(
            "rollback_triggered", opportunity,
            execution_id=execution_id, fill_ratio=fill_ratio,
            unfilled_qty=unfilled_qty, hedge_action=hedge_action,
        )
        if self.hedge is not None:
            try:
                await self.hedge(opportunity, unfilled_qty)
            except Exception as e:
                self.logger.critical(f"💀 Hedge failed for {opportunity.symbol}: {e}")
