# spreadguard/detector.py
import uuid
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .models import DiscoveredPrice, Opportunity, now_ms

BufferKey = Tuple[str, str]


class OpportunityDetector:
    """
    Turns instantaneous spreads into confirmed opportunities.

    Each (symbol, action) key lives in a persistence buffer. A key is only
    emitted once it has been seen min_persistence_count times or has
    persisted for persistence_ms; keys not re-observed for stale_timeout_ms
    are dropped.
    """
    def __init__(self, config: dict, logger, clock: Callable[[], int] = now_ms):
        self.cfg = config['detector']
        self.logger = logger
        self.clock = clock
        self.pairs: List[Tuple[str, str]] = [tuple(p) for p in self.cfg['pairs']]
        self.stale_timeout_ms = self.cfg['stale_timeout_ms']
        self.fee_buffer_pct = self.cfg['fee_buffer_pct']
        self.max_buffer_size: Optional[int] = self.cfg.get('max_buffer_size')
        self.buffer: Dict[BufferKey, Opportunity] = {}

    @staticmethod
    def action_for(spread_pct: float, a: str, b: str) -> Tuple[str, str, str]:
        """Positive spread: b is pricier, so buy on a and sell on b."""
        buy, sell = (a, b) if spread_pct > 0 else (b, a)
        return f"buy-{buy}-sell-{sell}", buy, sell

    def detect(
        self,
        prices: Sequence[DiscoveredPrice],
        min_spread_pct: Optional[float] = None,
        persistence_ms: Optional[int] = None,
        min_persistence_count: Optional[int] = None,
        now: Optional[int] = None,
    ) -> List[Opportunity]:
        min_spread_pct = self.cfg['min_spread_pct'] if min_spread_pct is None else min_spread_pct
        persistence_ms = self.cfg['persistence_ms'] if persistence_ms is None else persistence_ms
        min_count = self.cfg['min_persistence_count'] if min_persistence_count is None else min_persistence_count
        now = self.clock() if now is None else now

        confirmed: List[Opportunity] = []
        seen = set()

        for snapshot in prices:
            for a, b in self.pairs:
                price_a = snapshot.price(a)
                price_b = snapshot.price(b)
                # Missing or zero quote: nothing to compare this poll
                if not price_a or not price_b or price_a <= 0 or price_b <= 0:
                    continue

                spread_pct = (price_b - price_a) / price_a * 100
                if abs(spread_pct) < min_spread_pct:
                    continue

                action, buy_ex, sell_ex = self.action_for(spread_pct, a, b)
                source_price = price_a if buy_ex == a else price_b
                target_price = price_b if sell_ex == b else price_a
                key = (snapshot.symbol, action)
                # Both orderings of a pair fold into one key; count it once per poll
                if key in seen:
                    continue
                seen.add(key)

                entry = self.buffer.get(key)
                if entry is not None:
                    entry.last_seen_ts = now
                    entry.persistence_count += 1
                    entry.spread_pct = abs(spread_pct)
                    entry.estimated_gross_profit_pct = abs(spread_pct) - self.fee_buffer_pct
                    entry.source_price = source_price
                    entry.target_price = target_price
                else:
                    entry = Opportunity(
                        id=f"opp_{snapshot.symbol}_{now}_{uuid.uuid4().hex[:6]}",
                        symbol=snapshot.symbol,
                        action=action,
                        buy_exchange=buy_ex,
                        sell_exchange=sell_ex,
                        spread_pct=abs(spread_pct),
                        estimated_gross_profit_pct=abs(spread_pct) - self.fee_buffer_pct,
                        source_price=source_price,
                        target_price=target_price,
                        first_seen_ts=now,
                        last_seen_ts=now,
                        persistence_count=1,
                    )
                    self.buffer[key] = entry

                persisted_long_enough = (now - entry.first_seen_ts) >= persistence_ms
                seen_often_enough = entry.persistence_count >= min_count
                if persisted_long_enough or seen_often_enough:
                    confirmed.append(replace(entry))

        self._collect_garbage(seen, now)

        confirmed.sort(key=lambda o: o.estimated_gross_profit_pct, reverse=True)
        if confirmed:
            self.logger.debug(f"Detector confirmed {len(confirmed)} of {len(self.buffer)} buffered spreads")
        return confirmed

    def _collect_garbage(self, seen: set, now: int):
        stale = [
            key for key, entry in self.buffer.items()
            if key not in seen and now - entry.last_seen_ts > self.stale_timeout_ms
        ]
        for key in stale:
            del self.buffer[key]

        if self.max_buffer_size and len(self.buffer) > self.max_buffer_size:
            # Unseen keys go first, then the least recently seen
            overflow = len(self.buffer) - self.max_buffer_size
            victims = sorted(self.buffer.items(), key=lambda kv: (kv[0] in seen, kv[1].last_seen_ts))
            for key, _ in victims[:overflow]:
                del self.buffer[key]

    def buffer_snapshot(self) -> List[Opportunity]:
        return [replace(entry) for entry in self.buffer.values()]

    def reset(self):
        self.buffer.clear()
