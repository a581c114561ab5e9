# spreadguard/service.py
"""
Control surface for the pipeline.

ArbitrageService wires every component from one config dict and exposes
the operations an API or CLI layer calls. Input problems are rejected
here with ValidationError; everything behind the boundary degrades to
fail-safe results instead of raising.
"""
import math
import random
from dataclasses import MISSING, asdict, fields
from typing import Any, Dict, List, Optional

from .allocation import CapitalAllocator
from .config import load_config
from .debate import DebateEngine, PerspectiveProvider, build_perspective_provider
from .detector import OpportunityDetector
from .exceptions import ValidationError
from .exchanges import PriceSource
from .execution import ExecutionService, HedgeHook
from .guardian import Guardian
from .inventory import InventoryEngine
from .logger import AsyncAuditLogger, setup_console_logger
from .market_engine import MarketEngine
from .models import (
    AllocationContext,
    AllocationResult,
    AllocationStrategy,
    AuditLogEntry,
    DebateResult,
    DiscoveredPrice,
    EnhancedAuditEntry,
    EventType,
    ExecutionRecord,
    ExecutionResult,
    GuardianConfig,
    Opportunity,
    OpportunityScore,
    PortfolioState,
    RiskAssessmentResult,
    RunnerState,
    VetoConditions,
)
from .price_discovery import PriceDiscovery
from .risk_assessment import RiskAssessor
from .runner import Runner
from .state import AppState, JsonStateStore

GUARDIAN_FRACTIONS = ("max_trade_pct_of_portfolio", "global_max_exposure_pct")
GUARDIAN_POSITIVE = ("max_volatility_pct", "max_risk_score")
AUDIT_FILTERS = ("event_type", "agent_name", "opportunity_id", "action", "limit")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _require_number(name: str, value: Any, minimum: Optional[float] = None, allow_equal: bool = True) -> float:
    if not _is_number(value):
        raise ValidationError(f"'{name}' must be a number", {"field": name, "value": value})
    if minimum is not None and (value < minimum or (not allow_equal and value == minimum)):
        bound = ">=" if allow_equal else ">"
        raise ValidationError(f"'{name}' must be {bound} {minimum}", {"field": name, "value": value})
    return float(value)


def _coerce(cls, value: Any, name: str):
    """Accepts the dataclass itself or a dict with every required field."""
    if isinstance(value, cls):
        return value
    if not isinstance(value, dict):
        raise ValidationError(f"'{name}' must be a {cls.__name__} or a mapping", {"field": name})
    if hasattr(cls, "from_dict"):
        required = [f.name for f in fields(cls) if f.default is MISSING and f.default_factory is MISSING]
        missing = [f for f in required if f not in value]
        if missing:
            raise ValidationError(f"'{name}' is missing required fields: {', '.join(missing)}",
                                  {"field": name, "missing": missing})
        try:
            return cls.from_dict(value)
        except (TypeError, ValueError, KeyError) as e:
            raise ValidationError(f"'{name}' is malformed: {e}", {"field": name}) from e
    raise ValidationError(f"'{name}' cannot be built from a mapping", {"field": name})


class ArbitrageService:
    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        logger=None,
        sources: Optional[Dict[str, PriceSource]] = None,
        state: Optional[AppState] = None,
        perspective_provider: Optional[PerspectiveProvider] = None,
        rng: Optional[random.Random] = None,
        hedge: Optional[HedgeHook] = None,
        trade_log: Optional[AsyncAuditLogger] = None,
    ):
        self.config = config or load_config(None)
        self.logger = logger or setup_console_logger("spreadguard", self.config['system']['log_level'])

        if state is None:
            store = JsonStateStore(self.config['system']['state_file'], self.logger)
            state = AppState.load(store, self.config, self.logger)
        self.state = state

        self.market = MarketEngine(self.config, self.logger, sources)
        self.discovery = PriceDiscovery(self.market, self.config, self.logger)
        self.detector = OpportunityDetector(self.config, self.logger)
        self.risk = RiskAssessor(self.market, self.discovery.history, self.config, self.logger)
        self.allocator = CapitalAllocator(self.config, self.logger)
        self.debate_engine = DebateEngine(
            perspective_provider or build_perspective_provider(self.config, self.logger),
            self.config, self.logger)
        self.guardian = Guardian(self.logger)
        self.inventory = InventoryEngine(self.state, self.logger)
        self.execution = ExecutionService(self.market, self.state, self.inventory, self.config,
                                          self.logger, rng=rng, hedge=hedge)
        self.trade_log = trade_log
        self.runner = Runner(
            self.state, self.discovery, self.detector, self.risk, self.allocator,
            self.debate_engine, self.guardian, self.execution, self.inventory,
            self.config, self.logger, trade_log=self.trade_log,
        )

    @classmethod
    def from_config_file(cls, path: str = "config.yaml", **kwargs) -> "ArbitrageService":
        return cls(load_config(path), **kwargs)

    async def initialize(self) -> bool:
        connected = await self.market.initialize()
        if self.trade_log is not None and not self.trade_log.is_running:
            await self.trade_log.start()
        return connected

    async def shutdown(self):
        await self.runner.stop()
        if self.trade_log is not None:
            await self.trade_log.stop()
        await self.debate_engine.close()
        await self.market.shutdown()

    # --- RUNNER ---

    async def start(self, poll_interval_ms: Optional[int] = None) -> Dict[str, bool]:
        if poll_interval_ms is not None:
            _require_number("poll_interval_ms", poll_interval_ms, minimum=0, allow_equal=False)
        return {"started": await self.runner.start(poll_interval_ms)}

    async def stop(self) -> Dict[str, Any]:
        stopped = await self.runner.stop()
        return {"stopped": stopped, "stats": self.runner.stats()}

    def get_status(self) -> RunnerState:
        return self.runner.get_status()

    def set_symbols(self, symbols: List[str]):
        self.runner.set_symbols(self._validate_symbols(symbols))

    # --- GUARDIAN CONFIG ---

    def get_guardian_config(self) -> GuardianConfig:
        return GuardianConfig.from_dict(self.state.guardian_settings.to_dict())

    def update_guardian_config(self, partial: Dict[str, Any]) -> GuardianConfig:
        if not isinstance(partial, dict) or not partial:
            raise ValidationError("Guardian update must be a non-empty mapping")

        known = {f.name for f in fields(GuardianConfig)}
        unknown = sorted(set(partial) - known)
        if unknown:
            raise ValidationError(f"Unknown guardian settings: {', '.join(unknown)}", {"unknown": unknown})

        merged = self.state.guardian_settings.to_dict()
        for key, value in partial.items():
            if key in GUARDIAN_FRACTIONS:
                value = _require_number(key, value, minimum=0)
                if value > 1:
                    raise ValidationError(f"'{key}' is a fraction and must be <= 1", {"field": key, "value": value})
            elif key in GUARDIAN_POSITIVE:
                value = _require_number(key, value, minimum=0)
            elif key == "daily_max_trades":
                if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                    raise ValidationError("'daily_max_trades' must be a non-negative integer", {"value": value})
            elif key == "veto_conditions":
                value = self._validate_veto(value, merged["veto_conditions"])
            merged[key] = value

        updated = GuardianConfig.from_dict(merged)
        self.state.set_guardian_settings(updated)
        self.state.add_audit(EventType.SYSTEM, "guardian_config_updated", details=dict(partial),
                             agent_name="guardian")
        self.logger.info(f"🛡️ Guardian config updated: {partial}")
        return self.get_guardian_config()

    @staticmethod
    def _validate_veto(value: Any, current: Dict[str, bool]) -> Dict[str, bool]:
        if not isinstance(value, dict):
            raise ValidationError("'veto_conditions' must be a mapping")
        known = {f.name for f in fields(VetoConditions)}
        merged = dict(current)
        for key, flag in value.items():
            if key not in known:
                raise ValidationError(f"Unknown veto condition '{key}'", {"field": key})
            if not isinstance(flag, bool):
                raise ValidationError(f"Veto condition '{key}' must be true or false", {"field": key})
            merged[key] = flag
        return merged

    # --- PIPELINE STAGES ---

    def _validate_symbols(self, symbols: Any) -> List[str]:
        if isinstance(symbols, str) or not isinstance(symbols, (list, tuple)) or not symbols:
            raise ValidationError("'symbols' must be a non-empty list of strings")
        if not all(isinstance(s, str) and s.strip() for s in symbols):
            raise ValidationError("'symbols' must only contain non-empty strings")
        return [s.strip().upper() for s in symbols]

    async def discover(self, symbols: List[str]) -> List[DiscoveredPrice]:
        return await self.discovery.discover(self._validate_symbols(symbols))

    async def detect(
        self,
        symbols: List[str],
        min_spread_pct: Optional[float] = None,
        persistence_ms: Optional[int] = None,
        min_persistence_count: Optional[int] = None,
    ) -> List[Opportunity]:
        symbols = self._validate_symbols(symbols)
        if min_spread_pct is not None:
            _require_number("min_spread_pct", min_spread_pct, minimum=0)
        if persistence_ms is not None:
            _require_number("persistence_ms", persistence_ms, minimum=0)
        if min_persistence_count is not None:
            _require_number("min_persistence_count", min_persistence_count, minimum=1)

        # Shares the buffer with the runner, so serialize with its polls
        async with self.runner.poll_lock:
            prices = await self.discovery.discover(symbols)
            return self.detector.detect(prices, min_spread_pct, persistence_ms, min_persistence_count)

    async def assess_risk(self, opportunity: Any, qty: Optional[float] = None) -> RiskAssessmentResult:
        opportunity = _coerce(Opportunity, opportunity, "opportunity")
        if qty is None:
            qty = self.config['risk']['target_qty']
        qty = _require_number("qty", qty, minimum=0, allow_equal=False)
        return await self.risk.assess_risk(opportunity, qty)

    def allocate(self, opportunity: Any, risk: Any, portfolio_ctx: Optional[Any] = None) -> AllocationResult:
        opportunity = _coerce(Opportunity, opportunity, "opportunity")
        risk = _coerce(RiskAssessmentResult, risk, "risk")
        if portfolio_ctx is None:
            ctx = self.inventory.allocation_context(self.config['allocation']['max_trade_amount'])
        elif isinstance(portfolio_ctx, AllocationContext):
            ctx = portfolio_ctx
        elif isinstance(portfolio_ctx, dict):
            if "cash" not in portfolio_ctx:
                raise ValidationError("'portfolio_ctx' is missing required field: cash")
            ctx = AllocationContext(
                cash=_require_number("cash", portfolio_ctx["cash"]),
                max_trade_amount=_require_number(
                    "max_trade_amount",
                    portfolio_ctx.get("max_trade_amount", self.config['allocation']['max_trade_amount'])),
            )
        else:
            raise ValidationError("'portfolio_ctx' must be an AllocationContext or a mapping")
        return self.allocator.allocate(opportunity, risk, ctx)

    def allocate_many(self, scores: List[OpportunityScore],
                      portfolio: Optional[PortfolioState] = None) -> List[AllocationStrategy]:
        if not isinstance(scores, list) or not all(isinstance(s, OpportunityScore) for s in scores):
            raise ValidationError("'scores' must be a list of OpportunityScore")
        if portfolio is None:
            p = self.inventory.snapshot()
            portfolio = PortfolioState(total_capital=p.total_value, available_capital=p.cash,
                                       allocated_capital=p.total_value - p.cash)
        return self.allocator.allocate_portfolio(scores, portfolio)

    async def debate(self, opportunity: Any, risk: Any, allocation: Any,
                     threshold: Optional[float] = None) -> DebateResult:
        opportunity = _coerce(Opportunity, opportunity, "opportunity")
        risk = _coerce(RiskAssessmentResult, risk, "risk")
        allocation = _coerce(AllocationResult, allocation, "allocation")
        if threshold is not None:
            threshold = _require_number("threshold", threshold, minimum=0)
            if threshold > 1:
                raise ValidationError("'threshold' must be within [0, 1]", {"value": threshold})
        return await self.debate_engine.decide(opportunity, risk, allocation, threshold)

    async def execute(self, opportunity: Any, allocated_amount: Any) -> ExecutionResult:
        opportunity = _coerce(Opportunity, opportunity, "opportunity")
        amount = _require_number("allocated_amount", allocated_amount, minimum=0, allow_equal=False)
        # Portfolio writes stay serialized with the runner
        async with self.runner.poll_lock:
            return await self.execution.execute(opportunity, amount)

    # --- AUDIT & LOGS ---

    def query_audit_log(self, filters: Optional[Dict[str, Any]] = None, **kwargs) -> List[AuditLogEntry]:
        criteria = dict(filters or {}, **kwargs)
        unknown = sorted(set(criteria) - set(AUDIT_FILTERS))
        if unknown:
            raise ValidationError(f"Unknown audit filters: {', '.join(unknown)}", {"unknown": unknown})
        limit = criteria.get("limit")
        if limit is not None and (not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0):
            raise ValidationError("'limit' must be a positive integer", {"value": limit})
        event_type = criteria.get("event_type")
        if event_type is not None:
            try:
                event_type = EventType(event_type)
            except ValueError as e:
                raise ValidationError(f"Unknown event type '{event_type}'") from e
        return self.state.query_audit(
            event_type=event_type,
            agent_name=criteria.get("agent_name"),
            opportunity_id=criteria.get("opportunity_id"),
            action=criteria.get("action"),
            limit=limit,
        )

    def enhanced_audit_log(self, limit: int = 20) -> List[EnhancedAuditEntry]:
        return self.state.enhanced_audit(limit)

    def executions(self, limit: Optional[int] = None) -> List[ExecutionRecord]:
        return self.state.executions(limit)

    def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        return self.state.get_execution(execution_id)

    def portfolio(self) -> Dict[str, Any]:
        return asdict(self.inventory.snapshot())
