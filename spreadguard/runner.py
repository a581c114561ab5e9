# spreadguard/runner.py
import asyncio
from dataclasses import asdict, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from .allocation import CapitalAllocator
from .debate import DebateEngine
from .detector import OpportunityDetector
from .execution import ExecutionService
from .guardian import Guardian
from .inventory import InventoryEngine
from .logger import AsyncAuditLogger
from .models import Decision, EventType, ExecutionResult, Opportunity, RunnerState, now_ms
from .price_discovery import PriceDiscovery
from .risk_assessment import RiskAssessor
from .state import AppState

AGENT_NAME = "runner"


class Runner:
    """
    Polling orchestrator: discover -> detect -> per opportunity
    risk -> allocate -> debate -> guardian -> execute.

    Opportunities in one poll run sequentially so each sees the portfolio
    and audit effects of the previous one. Polls never overlap: a poll
    that finds another in flight is skipped with a warning.
    """
    def __init__(
        self,
        state: AppState,
        discovery: PriceDiscovery,
        detector: OpportunityDetector,
        risk: RiskAssessor,
        allocator: CapitalAllocator,
        debate: DebateEngine,
        guardian: Guardian,
        execution: ExecutionService,
        inventory: InventoryEngine,
        config: dict,
        logger,
        trade_log: Optional[AsyncAuditLogger] = None,
    ):
        self.state = state
        self.discovery = discovery
        self.detector = detector
        self.risk = risk
        self.allocator = allocator
        self.debate = debate
        self.guardian = guardian
        self.execution = execution
        self.inventory = inventory
        self.config = config
        self.logger = logger
        self.trade_log = trade_log

        self.poll_interval_ms = config['runner']['poll_interval_ms']
        self.target_qty = config['risk']['target_qty']
        self.max_trade_amount = config['allocation']['max_trade_amount']
        self.debate_threshold = config['debate']['threshold']

        self.poll_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

        # A persisted "running" flag from a previous process has no loop behind it
        self.state.runner.is_running = False
        if not self.state.runner.current_symbols:
            self.state.runner.current_symbols = list(config['runner']['symbols'])

    # --- LIFECYCLE ---

    @property
    def is_running(self) -> bool:
        return self.state.runner.is_running

    async def start(self, poll_interval_ms: Optional[int] = None) -> bool:
        if self._task is not None and not self._task.done():
            return False

        if poll_interval_ms:
            self.poll_interval_ms = poll_interval_ms

        runner = self.state.runner
        runner.is_running = True
        runner.start_time = now_ms()
        runner.poll_count = 0
        runner.opportunities_processed = 0
        runner.executions_attempted = 0
        runner.executions_successful = 0
        runner.last_poll_time = None
        self.state.add_audit(
            EventType.SYSTEM, "runner_started",
            details={"symbols": list(runner.current_symbols), "poll_interval_ms": self.poll_interval_ms},
            agent_name=AGENT_NAME,
        )
        self.logger.info(f"🚀 RUNNER STARTED | {', '.join(runner.current_symbols)} every {self.poll_interval_ms}ms")

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        return True

    async def stop(self) -> bool:
        if self._task is None:
            return False

        self._stop_event.set()
        # In-flight poll finishes so no record is left "executing"
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

        self.state.runner.is_running = False
        stats = self.stats()
        self.state.add_audit(EventType.SYSTEM, "runner_stopped", details=stats, agent_name=AGENT_NAME)
        self.logger.info(
            f"🛑 RUNNER STOPPED | polls={stats['poll_count']} processed={stats['opportunities_processed']} "
            f"executed={stats['executions_successful']}/{stats['executions_attempted']}"
        )
        return True

    async def _loop(self):
        interval_s = self.poll_interval_ms / 1000
        # First cycle runs immediately, even if stop was already requested
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                self.logger.error(f"Poll loop error: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval_s)
                break
            except asyncio.TimeoutError:
                continue

    def get_status(self) -> RunnerState:
        return replace(self.state.runner, current_symbols=list(self.state.runner.current_symbols))

    def stats(self) -> Dict[str, Any]:
        return asdict(self.get_status())

    def set_symbols(self, symbols: List[str]):
        self.state.runner.current_symbols = list(symbols)
        self.state.save()

    # --- POLL ---

    async def poll_once(self) -> bool:
        """Runs one cycle. Returns False if a cycle was already in flight."""
        if self.poll_lock.locked():
            self.logger.warning("⏳ Previous poll still running, skipping this tick")
            return False
        async with self.poll_lock:
            await self._poll()
        return True

    async def _poll(self):
        runner = self.state.runner
        runner.poll_count += 1
        runner.last_poll_time = now_ms()
        self.state.save()

        try:
            prices = await self.discovery.discover(runner.current_symbols)
            opportunities = self.detector.detect(prices)
        except Exception as e:
            self.logger.error(f"Poll #{runner.poll_count} failed: {e}")
            self.state.add_audit(EventType.SYSTEM, "runner_poll_error",
                                 details={"error": str(e), "poll_count": runner.poll_count},
                                 agent_name=AGENT_NAME)
            return

        for opportunity in opportunities:
            try:
                async with self.state.batched():
                    await self.process_opportunity(opportunity)
            except Exception as e:
                self.logger.error(f"Opportunity {opportunity.id} failed: {e}")
                try:
                    self.state.add_audit(EventType.SYSTEM, "opportunity_failed",
                                         details={"error": str(e)}, agent_name=AGENT_NAME,
                                         opportunity_id=opportunity.id)
                except Exception as audit_error:
                    self.logger.error(f"Could not record failure for {opportunity.id}: {audit_error}")

    async def process_opportunity(self, opportunity: Opportunity) -> Optional[ExecutionResult]:
        runner = self.state.runner
        runner.opportunities_processed += 1
        self.state.add_audit(EventType.DETECTION, "opportunity_detected",
                             details=opportunity.to_dict(), agent_name="detector",
                             opportunity_id=opportunity.id)

        risk = await self.risk.assess_risk(opportunity, self.target_qty)
        self.state.add_audit(EventType.RISK_ASSESSMENT, "risk_assessed",
                             details=risk.to_dict(), agent_name="risk_assessor",
                             opportunity_id=opportunity.id)

        ctx = self.inventory.allocation_context(self.max_trade_amount)
        allocation = self.allocator.allocate(opportunity, risk, ctx)
        self.state.add_audit(EventType.ALLOCATION, "capital_allocated",
                             details=allocation.to_dict(), agent_name="allocator",
                             opportunity_id=opportunity.id)

        debate = await self.debate.decide(opportunity, risk, allocation, self.debate_threshold)
        self.state.add_audit(EventType.DEBATE, "debate_concluded",
                             details=debate.to_dict(), agent_name="debate",
                             opportunity_id=opportunity.id,
                             decision={"decision": debate.decision.value, "score": debate.final_decision_score})

        guardian = self.guardian.check(allocation, risk, self.state)
        self.state.add_audit(EventType.SYSTEM, "guardian_passed" if guardian.passed else "guardian_veto",
                             details={"reason": guardian.reason, "warnings": guardian.warnings},
                             agent_name="guardian", opportunity_id=opportunity.id)

        result: Optional[ExecutionResult] = None
        should_execute = guardian.passed and debate.decision == Decision.EXECUTE and allocation.allocated_amount > 0
        if should_execute:
            runner.executions_attempted += 1
            self.state.add_audit(EventType.EXECUTION, "autonomous_execution_initiated",
                                 details={"allocated_amount": allocation.allocated_amount},
                                 agent_name=AGENT_NAME, opportunity_id=opportunity.id)
            result = await self.execution.execute(opportunity, allocation.allocated_amount)
            if result.success:
                runner.executions_successful += 1
                await self._tape(opportunity, result)
            self.state.save()
        else:
            why = guardian.reason if not guardian.passed else (
                f"debate {debate.decision.value} ({debate.final_decision_score:.2f})"
                if debate.decision != Decision.EXECUTE else "nothing allocated")
            self.logger.info(f"⏸️ SKIP {opportunity.symbol} {opportunity.action}: {why}")

        final = {
            "executed": should_execute,
            "decision": debate.decision.value,
            "score": debate.final_decision_score,
            "guardian_passed": guardian.passed,
        }
        self.state.record_agent_outputs({
            "risk": risk.to_dict(),
            "allocation": allocation.to_dict(),
            "debate": debate.to_dict(),
            "execution": result.to_dict() if result else None,
        })
        self.state.add_enhanced_audit(
            symbol=opportunity.symbol,
            opportunity=opportunity.to_dict(),
            agents_outputs={
                "risk": risk.to_dict(),
                "allocation": allocation.to_dict(),
                "debate": debate.to_dict(),
            },
            guardian_decision={"passed": guardian.passed, "reason": guardian.reason, "warnings": guardian.warnings},
            final_decision=final,
            execution_result=result.to_dict() if result else None,
        )
        return result

    async def _tape(self, opportunity: Opportunity, result: ExecutionResult):
        if self.trade_log is None or not self.trade_log.is_running:
            return
        await self.trade_log.log_trade([
            datetime.now().isoformat(),
            result.audit_id,
            opportunity.symbol,
            opportunity.buy_exchange,
            opportunity.sell_exchange,
            f"{result.buy_qty:.8f}",
            f"{result.buy_price:.2f}",
            f"{result.filled_qty:.8f}",
            f"{result.avg_sell_price:.2f}",
            f"{result.net_profit:.4f}",
            result.partial_fill,
            "completed",
        ])
