# spreadguard/price_discovery.py
import asyncio
import math
from collections import deque
from itertools import combinations
from typing import Deque, Dict, List, Optional

from .market_engine import MarketEngine
from .models import DiscoveredPrice, FairPrice, PriceSample, PriceTick, now_ms


class PriceHistory:
    """
    Rolling window of primary-source ticks per symbol, oldest evicted first.
    Only used to derive volatility; never persisted.
    """
    def __init__(self, capacity: int = 100):
        self.capacity = capacity
        self._ticks: Dict[str, Deque[PriceTick]] = {}

    def add(self, symbol: str, price: float, timestamp: Optional[int] = None):
        if symbol not in self._ticks:
            self._ticks[symbol] = deque(maxlen=self.capacity)
        self._ticks[symbol].append(PriceTick(price=price, timestamp=timestamp or now_ms()))

    def get(self, symbol: str) -> List[PriceTick]:
        return list(self._ticks.get(symbol, ()))

    def count(self, symbol: str) -> int:
        return len(self._ticks.get(symbol, ()))

    def volatility_pct(self, symbol: str) -> float:
        """Coefficient of variation (population stddev / mean) in percent. 0 below 2 ticks."""
        ticks = self._ticks.get(symbol)
        if not ticks or len(ticks) < 2:
            return 0.0
        prices = [t.price for t in ticks]
        mean = sum(prices) / len(prices)
        if mean <= 0:
            return 0.0
        variance = sum((p - mean) ** 2 for p in prices) / len(prices)
        return math.sqrt(variance) / mean * 100

    def clear(self, symbol: Optional[str] = None):
        if symbol is None:
            self._ticks.clear()
        else:
            self._ticks.pop(symbol, None)


class PriceDiscovery:
    """
    Aggregates per-symbol prices from every source.
    Sources are queried concurrently; one failing source only blanks its own price.
    """
    def __init__(self, market: MarketEngine, config: dict, logger, history: Optional[PriceHistory] = None):
        self.market = market
        self.cfg = config['discovery']
        self.ex_cfg = config['exchanges']
        self.logger = logger
        self.primary = self.cfg['primary_source']
        self.history = history or PriceHistory(self.cfg.get('history_capacity', 100))

    async def _quote_all(self, symbol: str) -> Dict[str, Optional[float]]:
        names = self.market.names
        results = await asyncio.gather(
            *(self.market.fetch_price(name, symbol) for name in names),
            return_exceptions=True
        )
        quotes: Dict[str, Optional[float]] = {}
        for name, res in zip(names, results):
            if isinstance(res, Exception):
                self.logger.debug(f"{name} quote failed for {symbol}: {res}")
                quotes[name] = None
            else:
                quotes[name] = res
        return quotes

    @staticmethod
    def pairwise_spreads(quotes: Dict[str, Optional[float]]) -> Dict[str, float]:
        """spread(a, b) = (b - a) / a * 100 for every pair that both quoted."""
        spreads = {}
        for a, b in combinations(quotes.keys(), 2):
            pa, pb = quotes[a], quotes[b]
            if pa and pb:
                spreads[f"{a}_vs_{b}"] = (pb - pa) / pa * 100
        return spreads

    async def discover(self, symbols: List[str]) -> List[DiscoveredPrice]:
        results: List[DiscoveredPrice] = []
        for symbol in symbols:
            try:
                quotes = await self._quote_all(symbol)

                primary_price = quotes.get(self.primary)
                if primary_price:
                    self.history.add(symbol, primary_price)

                results.append(DiscoveredPrice(
                    symbol=symbol,
                    prices={name: (price or 0.0) for name, price in quotes.items()},
                    spreads=self.pairwise_spreads(quotes),
                    volatility_pct=self.history.volatility_pct(symbol),
                    tick_count=self.history.count(symbol),
                    timestamp=now_ms(),
                ))
            except Exception as e:
                self.logger.error(f"Error discovering prices for {symbol}: {e}")
        return results

    def get_price_history(self, symbol: str) -> List[PriceTick]:
        return self.history.get(symbol)

    async def fair_price(self, symbol: str) -> Optional[FairPrice]:
        """
        Volume-weighted fair price. Confidence blends source coverage (40%)
        with price consistency (60%).
        """
        quotes = await self._quote_all(symbol)
        ts = now_ms()
        samples = [
            PriceSample(symbol=symbol, exchange=name, price=price, timestamp=ts,
                        volume=float(self.ex_cfg.get(name, {}).get('volume_weight', 1.0)))
            for name, price in quotes.items() if price
        ]
        if not samples:
            return None

        total_volume = sum(s.volume for s in samples)
        if total_volume > 0:
            fair = sum(s.price * s.volume / total_volume for s in samples)
        else:
            fair = sum(s.price for s in samples) / len(samples)

        prices = [s.price for s in samples]
        avg = sum(prices) / len(prices)
        cv = math.sqrt(sum((p - avg) ** 2 for p in prices) / len(prices)) / avg
        source_score = min(len(samples) / max(len(quotes), 1), 1.0)
        consistency_score = max(0.0, 1 - cv * 10)

        return FairPrice(
            symbol=symbol,
            fair_price=fair,
            confidence=source_score * 0.4 + consistency_score * 0.6,
            sources=samples,
            timestamp=ts,
        )

    async def best_prices(self, symbol: str) -> Dict[str, object]:
        """Cheapest source to buy on, richest to sell on."""
        quotes = {n: p for n, p in (await self._quote_all(symbol)).items() if p}
        if len(quotes) < 2:
            return {"best_bid": None, "best_ask": None, "spread": 0.0}
        bid_name = max(quotes, key=quotes.get)
        ask_name = min(quotes, key=quotes.get)
        return {
            "best_bid": (bid_name, quotes[bid_name]),
            "best_ask": (ask_name, quotes[ask_name]),
            "spread": quotes[bid_name] - quotes[ask_name],
        }
