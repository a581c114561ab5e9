# spreadguard/models.py
from dataclasses import dataclass, field, fields, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import time


def now_ms() -> int:
    return int(time.time() * 1000)


def _pick(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    """Keeps only the keys the dataclass knows, so older state files still load."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


class ExecutionStatus(str, Enum):
    """
    Lifecycle states of an execution record.
    """
    PENDING = "pending"
    EXECUTING = "executing"
    FILLED = "filled"
    PARTIAL = "partial"
    COMPLETED = "completed"
    FAILED = "failed"


class Decision(str, Enum):
    EXECUTE = "execute"
    WAIT = "wait"


class EventType(str, Enum):
    DETECTION = "detection"
    DEBATE = "debate"
    RISK_ASSESSMENT = "risk_assessment"
    ALLOCATION = "allocation"
    EXECUTION = "execution"
    SYSTEM = "system"


# --- MARKET DATA ---

@dataclass(slots=True)
class PriceSample:
    """
    One quote from one source, produced each discovery cycle.
    """
    symbol: str
    exchange: str
    price: float
    timestamp: int
    volume: Optional[float] = None


@dataclass(slots=True)
class PriceTick:
    price: float
    timestamp: int


@dataclass(slots=True)
class OrderBook:
    """
    Bid/ask ladders as (price, quantity) pairs, best price first.
    """
    bids: List[Tuple[float, float]]
    asks: List[Tuple[float, float]]
    timestamp: int = field(default_factory=now_ms)

    @property
    def mid_price(self) -> float:
        if not self.bids or not self.asks:
            return 0.0
        return (self.bids[0][0] + self.asks[0][0]) / 2


@dataclass(slots=True)
class DiscoveredPrice:
    """
    Per-symbol snapshot across every source. A source that failed reports 0.0.
    """
    symbol: str
    prices: Dict[str, float]
    spreads: Dict[str, float]
    volatility_pct: float
    tick_count: int
    timestamp: int

    def price(self, exchange: str) -> float:
        return self.prices.get(exchange, 0.0)


@dataclass(slots=True)
class FairPrice:
    """
    Volume-weighted price across sources. confidence is in [0, 1].
    """
    symbol: str
    fair_price: float
    confidence: float
    sources: List[PriceSample]
    timestamp: int


# --- PIPELINE RECORDS ---

@dataclass(slots=True)
class Opportunity:
    """
    A persisted spread, keyed in the detector buffer by (symbol, action).
    source_price is the buy-side quote, target_price the sell-side quote.
    """
    id: str
    symbol: str
    action: str
    buy_exchange: str
    sell_exchange: str
    spread_pct: float
    estimated_gross_profit_pct: float
    source_price: float
    target_price: float
    first_seen_ts: int
    last_seen_ts: int
    persistence_count: int

    @property
    def key(self) -> Tuple[str, str]:
        return (self.symbol, self.action)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Opportunity":
        return cls(**_pick(cls, data))


@dataclass(slots=True)
class LiquidityEstimate:
    fillable_qty: float
    expected_avg_price: float


@dataclass(slots=True)
class RiskAssessmentResult:
    risk_score: float
    slippage_pct: float
    volatility_pct: float
    liquidity_estimate: LiquidityEstimate
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RiskAssessmentResult":
        values = _pick(cls, data)
        liq = values.get("liquidity_estimate") or {}
        if isinstance(liq, dict):
            values["liquidity_estimate"] = LiquidityEstimate(**_pick(LiquidityEstimate, liq))
        return cls(**values)


@dataclass(slots=True)
class AllocationContext:
    """
    Portfolio snapshot handed to the single-opportunity allocator.
    """
    cash: float
    max_trade_amount: float


@dataclass(slots=True)
class AllocationResult:
    allocation_pct: float
    allocated_amount: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AllocationResult":
        return cls(**_pick(cls, data))


@dataclass(slots=True)
class OpportunityScore:
    """
    Input row for the multi-opportunity allocator. risk is in [0, 1].
    """
    id: str
    expected_return: float
    risk: float
    sharpe_ratio: float
    time_horizon: float
    symbol: Optional[str] = None
    spread_size: Optional[float] = None
    estimated_value: Optional[float] = None


@dataclass(slots=True)
class PortfolioState:
    total_capital: float
    available_capital: float
    allocated_capital: float = 0.0
    positions: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class AllocationStrategy:
    opportunity_id: str
    allocated_capital: float
    percentage: float
    priority: float
    reasoning: str


@dataclass(slots=True)
class Perspective:
    score: float
    reasons: List[str] = field(default_factory=list)


@dataclass(slots=True)
class DebateResult:
    bullish: Perspective
    bearish: Perspective
    neutral: Perspective
    final_decision_score: float
    decision: Decision
    raw: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["decision"] = self.decision.value
        return data


# --- GUARDIAN ---

@dataclass(slots=True)
class VetoConditions:
    exchange_outage: bool = True
    high_volatility: bool = True


@dataclass(slots=True)
class GuardianConfig:
    max_trade_pct_of_portfolio: float = 0.15
    daily_max_trades: int = 30
    global_max_exposure_pct: float = 0.5
    veto_conditions: VetoConditions = field(default_factory=VetoConditions)
    max_volatility_pct: float = 2.0
    max_risk_score: float = 75.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GuardianConfig":
        values = _pick(cls, data)
        veto = values.get("veto_conditions")
        if isinstance(veto, dict):
            values["veto_conditions"] = VetoConditions(**_pick(VetoConditions, veto))
        return cls(**values)


@dataclass(slots=True)
class GuardianResult:
    passed: bool
    reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


# --- EXECUTION ---

@dataclass(slots=True)
class ExecutionRecord:
    id: str
    symbol: str
    status: ExecutionStatus
    buy_exchange: str
    sell_exchange: str
    buy_price: float
    buy_qty: float
    timestamp: int
    opportunity_id: Optional[str] = None
    sell_price: Optional[float] = None
    sell_qty: Optional[float] = None
    profit: Optional[float] = None
    partial_fill: Optional[bool] = None
    completed_at: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionRecord":
        values = _pick(cls, data)
        values["status"] = ExecutionStatus(values["status"])
        return cls(**values)


@dataclass(slots=True)
class ExecutionResult:
    success: bool
    buy_price: float
    buy_qty: float
    avg_sell_price: float
    filled_qty: float
    net_profit: float
    slippage_pct: float
    partial_fill: bool
    audit_id: str
    fill_ratio: float = 0.0
    rollback_triggered: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# --- PORTFOLIO & RUNNER ---

@dataclass(slots=True)
class Position:
    symbol: str
    exchange: str
    quantity: float
    average_price: float
    current_price: Optional[float] = None
    unrealized_pnl: Optional[float] = None


@dataclass(slots=True)
class Portfolio:
    cash: float
    total_value: float
    positions: List[Position] = field(default_factory=list)
    last_update: int = field(default_factory=now_ms)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Portfolio":
        values = _pick(cls, data)
        values["positions"] = [
            p if isinstance(p, Position) else Position(**_pick(Position, p))
            for p in values.get("positions", [])
        ]
        return cls(**values)


@dataclass(slots=True)
class RunnerState:
    is_running: bool = False
    start_time: Optional[int] = None
    poll_count: int = 0
    opportunities_processed: int = 0
    executions_attempted: int = 0
    executions_successful: int = 0
    last_poll_time: Optional[int] = None
    current_symbols: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunnerState":
        return cls(**_pick(cls, data))


# --- AUDIT ---

@dataclass(slots=True)
class AuditLogEntry:
    id: str
    timestamp: int
    event_type: EventType
    action: str
    details: Dict[str, Any] = field(default_factory=dict)
    agent_name: Optional[str] = None
    component: Optional[str] = None
    opportunity_id: Optional[str] = None
    decision: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditLogEntry":
        values = _pick(cls, data)
        values["event_type"] = EventType(values["event_type"])
        return cls(**values)


@dataclass(slots=True)
class EnhancedAuditEntry:
    """
    One record per processed opportunity with every stage's output.
    """
    id: str
    timestamp: int
    symbol: str
    opportunity: Dict[str, Any]
    agents_outputs: Dict[str, Any]
    guardian_decision: Dict[str, Any]
    final_decision: Dict[str, Any]
    execution_result: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnhancedAuditEntry":
        return cls(**_pick(cls, data))
