# spreadguard/state.py
"""
Durable process state.

JsonStateStore is the key-value document with atomic replace; AppState is
the context object every component receives. Each section has one writer:
portfolio -> InventoryEngine, runner -> Runner, guardian settings -> the
control surface. Audit and execution logs are append-only.
"""
import asyncio
import copy
import json
import logging
import os
import tempfile
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from .exceptions import PersistenceError
from .models import (
    AuditLogEntry,
    EnhancedAuditEntry,
    EventType,
    ExecutionRecord,
    GuardianConfig,
    Portfolio,
    RunnerState,
    now_ms,
)


def new_id(prefix: str) -> str:
    return f"{prefix}_{now_ms()}_{uuid.uuid4().hex[:8]}"


class JsonStateStore:
    """
    One JSON document on disk. Writes go to a temp file in the same
    directory and are swapped in with os.replace, so a failed write
    leaves the previous document intact.
    """
    def __init__(self, path: str, logger: Optional[logging.Logger] = None):
        self.path = path
        self.logger = logger or logging.getLogger(__name__)

    def load(self, default: Dict[str, Any]) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return copy.deepcopy(default)
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                parsed = json.load(f)
        except (OSError, ValueError) as e:
            self.logger.error(f"[Store] Failed to load {self.path}, using defaults: {e}")
            return copy.deepcopy(default)
        if not isinstance(parsed, dict):
            self.logger.error(f"[Store] {self.path} is not a JSON object, using defaults")
            return copy.deepcopy(default)
        # Keys added since the file was written fall back to defaults
        return {**copy.deepcopy(default), **parsed}

    def save(self, state: Dict[str, Any]):
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            with tempfile.NamedTemporaryFile("w", dir=directory, suffix=".tmp", delete=False, encoding="utf-8") as tmp:
                tmp_path = tmp.name
                json.dump(state, tmp, indent=2)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise PersistenceError(f"Failed to save state to {self.path}: {e}") from e


@dataclass
class GlobalState:
    portfolio: Portfolio
    runner: RunnerState
    guardian_settings: GuardianConfig
    execution_log: List[ExecutionRecord] = field(default_factory=list)
    audit_log: List[AuditLogEntry] = field(default_factory=list)
    enhanced_audit_log: List[EnhancedAuditEntry] = field(default_factory=list)
    agents: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GlobalState":
        return cls(
            portfolio=Portfolio.from_dict(data["portfolio"]),
            runner=RunnerState.from_dict(data["runner"]),
            guardian_settings=GuardianConfig.from_dict(data["guardian_settings"]),
            execution_log=[ExecutionRecord.from_dict(r) for r in data.get("execution_log", [])],
            audit_log=[AuditLogEntry.from_dict(e) for e in data.get("audit_log", [])],
            enhanced_audit_log=[EnhancedAuditEntry.from_dict(e) for e in data.get("enhanced_audit_log", [])],
            agents=dict(data.get("agents", {})),
        )

    @classmethod
    def default(cls, config: dict) -> "GlobalState":
        cash = float(config['portfolio']['initial_cash'])
        return cls(
            portfolio=Portfolio(cash=cash, total_value=cash),
            runner=RunnerState(current_symbols=list(config['runner']['symbols'])),
            guardian_settings=GuardianConfig.from_dict(config['guardian']),
        )


class AppState:
    """
    The shared context passed by reference into every component.
    Every mutation is persisted through the store. Inside batched() the
    writes collapse into one save, made in a worker thread on exit.
    """
    def __init__(self, data: GlobalState, store: Optional[JsonStateStore] = None,
                 enhanced_capacity: int = 100, logger: Optional[logging.Logger] = None):
        self.data = data
        self.store = store
        self.enhanced_capacity = enhanced_capacity
        self.logger = logger or logging.getLogger(__name__)
        self._batch_depth = 0
        self._dirty = False

    @classmethod
    def load(cls, store: JsonStateStore, config: dict, logger: Optional[logging.Logger] = None) -> "AppState":
        default = GlobalState.default(config).to_dict()
        data = GlobalState.from_dict(store.load(default))
        logger = logger or logging.getLogger(__name__)
        logger.info(f"[GlobalState] Initialized from {store.path}")
        return cls(data, store, config['audit'].get('enhanced_capacity', 100), logger)

    def save(self):
        if self.store is None:
            return
        if self._batch_depth:
            self._dirty = True
            return
        self.store.save(self.data.to_dict())

    async def flush(self):
        self._dirty = False
        if self.store is not None:
            # Serialise on the loop, write off it
            document = self.data.to_dict()
            await asyncio.to_thread(self.store.save, document)

    @asynccontextmanager
    async def batched(self):
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._dirty:
                await self.flush()

    # --- SECTIONS ---

    @property
    def portfolio(self) -> Portfolio:
        return self.data.portfolio

    @property
    def runner(self) -> RunnerState:
        return self.data.runner

    @property
    def guardian_settings(self) -> GuardianConfig:
        return self.data.guardian_settings

    def set_guardian_settings(self, config: GuardianConfig):
        self.data.guardian_settings = config
        self.save()

    def record_agent_outputs(self, outputs: Dict[str, Any]):
        self.data.agents.update(outputs)
        self.save()

    # --- AUDIT LOG ---

    def add_audit(
        self,
        event_type: EventType,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        agent_name: Optional[str] = None,
        component: Optional[str] = None,
        opportunity_id: Optional[str] = None,
        decision: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            id=new_id("audit"),
            timestamp=now_ms(),
            event_type=event_type,
            action=action,
            details=details or {},
            agent_name=agent_name,
            component=component,
            opportunity_id=opportunity_id,
            decision=decision,
            metadata=metadata,
        )
        self.data.audit_log.append(entry)
        self.save()
        return entry

    def query_audit(
        self,
        event_type: Optional[str] = None,
        agent_name: Optional[str] = None,
        opportunity_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AuditLogEntry]:
        entries = list(self.data.audit_log)
        if event_type:
            entries = [e for e in entries if e.event_type == event_type]
        if agent_name:
            entries = [e for e in entries if e.agent_name == agent_name]
        if opportunity_id:
            entries = [e for e in entries if e.opportunity_id == opportunity_id]
        if action:
            entries = [e for e in entries if e.action == action]
        if limit:
            entries = entries[-limit:]
        return entries

    def count_actions_on(self, action: str, day: date) -> int:
        return sum(
            1 for e in self.data.audit_log
            if e.action == action and datetime.fromtimestamp(e.timestamp / 1000).date() == day
        )

    def add_enhanced_audit(self, **parts) -> EnhancedAuditEntry:
        entry = EnhancedAuditEntry(id=new_id("enhanced_audit"), timestamp=now_ms(), **parts)
        log = self.data.enhanced_audit_log
        log.append(entry)
        while len(log) > self.enhanced_capacity:
            log.pop(0)
        self.save()
        return entry

    def enhanced_audit(self, limit: int = 20) -> List[EnhancedAuditEntry]:
        return self.data.enhanced_audit_log[-limit:]

    # --- EXECUTION LOG ---

    def add_execution(self, record: ExecutionRecord):
        self.data.execution_log.append(record)
        self.save()

    def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        for record in self.data.execution_log:
            if record.id == execution_id:
                return record
        return None

    def update_execution(self, execution_id: str, **changes) -> Optional[ExecutionRecord]:
        record = self.get_execution(execution_id)
        if record is None:
            return None
        for key, value in changes.items():
            setattr(record, key, value)
        self.save()
        return record

    def executions(self, limit: Optional[int] = None) -> List[ExecutionRecord]:
        if limit:
            return self.data.execution_log[-limit:]
        return list(self.data.execution_log)
