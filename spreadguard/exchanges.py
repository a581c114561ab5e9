# spreadguard/exchanges.py
import logging
import random
from typing import Dict, Iterable, List, Optional, Tuple

import ccxt.async_support as ccxt

from .exceptions import OrderBookUnavailable, PriceUnavailable
from .models import OrderBook

QUOTE_ASSETS = ("USDT", "USDC", "BUSD", "FDUSD", "USD", "INR", "BTC", "ETH")


def to_ccxt_symbol(symbol: str) -> str:
    """'BTCUSDT' -> 'BTC/USDT'. Symbols already in ccxt form pass through."""
    if '/' in symbol:
        return symbol.upper()
    raw = symbol.upper()
    for quote in QUOTE_ASSETS:
        if raw.endswith(quote) and len(raw) > len(quote):
            return f"{raw[:-len(quote)]}/{quote}"
    return raw


class PriceSource:
    """
    Capability every exchange exposes to the pipeline: a price and an order book.
    Failures surface as PriceUnavailable / OrderBookUnavailable.
    """
    def __init__(self, name: str):
        self.name = name

    async def initialize(self) -> bool:
        return True

    async def get_price(self, symbol: str) -> float:
        raise NotImplementedError

    async def get_order_book(self, symbol: str, depth: int = 20) -> OrderBook:
        raise NotImplementedError

    async def close(self):
        pass


class CcxtPriceSource(PriceSource):
    """
    Reference market through ccxt's public REST endpoints.
    No credentials: only tickers and depth are read.
    """
    def __init__(self, name: str, ccxt_id: str, logger: logging.Logger, timeout_ms: int = 5000, client=None):
        super().__init__(name)
        self.ccxt_id = ccxt_id
        self.logger = logger
        self.timeout_ms = timeout_ms
        self.client = client

    def _ensure_client(self):
        if self.client is None:
            ex_class = getattr(ccxt, self.ccxt_id)
            self.client = ex_class({
                'timeout': self.timeout_ms,
                'enableRateLimit': True,
                'options': {'defaultType': 'spot'}
            })
        return self.client

    async def initialize(self) -> bool:
        client = self._ensure_client()
        try:
            await client.load_markets()
            self.logger.info(f"   ✅ {self.name.upper():<10} | Markets loaded")
            return True
        except ccxt.RequestTimeout:
            self.logger.error(f"   ❌ {self.name.upper():<10} | TIMEOUT: Exchange API is slow or down.")
        except ccxt.ExchangeNotAvailable:
            self.logger.error(f"   ❌ {self.name.upper():<10} | MAINTENANCE: Exchange is currently offline.")
        except ccxt.BaseError as e:
            self.logger.error(f"   ❌ {self.name.upper():<10} | ERROR: {e}")
        return False

    async def get_price(self, symbol: str) -> float:
        client = self._ensure_client()
        try:
            ticker = await client.fetch_ticker(to_ccxt_symbol(symbol))
        except ccxt.BaseError as e:
            raise PriceUnavailable(f"{self.name} ticker failed for {symbol}: {e}", exchange=self.name, symbol=symbol) from e

        price = ticker.get('last') or ticker.get('close')
        if not price or price <= 0:
            raise PriceUnavailable(f"{self.name} returned no price for {symbol}", exchange=self.name, symbol=symbol)
        return float(price)

    async def get_order_book(self, symbol: str, depth: int = 20) -> OrderBook:
        client = self._ensure_client()
        try:
            book = await client.fetch_order_book(to_ccxt_symbol(symbol), depth)
        except ccxt.BaseError as e:
            raise OrderBookUnavailable(f"{self.name} depth failed for {symbol}: {e}", exchange=self.name, symbol=symbol) from e

        return OrderBook(
            bids=[(float(p), float(q)) for p, q, *_ in book.get('bids', [])],
            asks=[(float(p), float(q)) for p, q, *_ in book.get('asks', [])],
        )

    async def close(self):
        if self.client is not None:
            await self.client.close()


class SimulatedPriceSource(PriceSource):
    """
    Secondary market quoted off a reference source with a random premium.
    The RNG is injected so runs can be replayed with a seed.
    """
    def __init__(self, name: str, reference: PriceSource, cfg: dict, rng: Optional[random.Random] = None):
        super().__init__(name)
        self.reference = reference
        self.cfg = cfg
        self.rng = rng or random.Random()
        self.outage = bool(cfg.get('outage', False))

    def _drift(self) -> float:
        override = self.cfg.get('drift_override')
        if isinstance(override, (int, float)):
            return float(override)
        return self.rng.uniform(self.cfg.get('drift_min', 0.005), self.cfg.get('drift_max', 0.025))

    async def get_price(self, symbol: str) -> float:
        if self.outage:
            raise PriceUnavailable(f"{self.name} outage (simulated)", exchange=self.name, symbol=symbol)
        try:
            base = await self.reference.get_price(symbol)
        except PriceUnavailable as e:
            raise PriceUnavailable(f"{self.name} has no base price for {symbol}", exchange=self.name, symbol=symbol) from e
        return base * (1 + self._drift())

    async def get_order_book(self, symbol: str, depth: int = 20) -> OrderBook:
        try:
            mid = await self.get_price(symbol)
        except PriceUnavailable as e:
            raise OrderBookUnavailable(str(e), exchange=self.name, symbol=symbol) from e

        spread = self.rng.uniform(self.cfg.get('book_spread_min', 0.001), self.cfg.get('book_spread_max', 0.005))
        qty_min = self.cfg.get('level_qty_min', 0.1)
        qty_max = self.cfg.get('level_qty_max', 5.0)

        bids: List[Tuple[float, float]] = []
        asks: List[Tuple[float, float]] = []
        for i in range(depth):
            offset = spread * (i + 1)
            bids.append((mid * (1 - offset), self.rng.uniform(qty_min, qty_max)))
            asks.append((mid * (1 + offset), self.rng.uniform(qty_min, qty_max)))
        return OrderBook(bids=bids, asks=asks)


class StaticPriceSource(PriceSource):
    """
    Fixed quotes and books. Used for paper replays and deterministic runs.
    """
    def __init__(
        self,
        name: str,
        prices: Optional[Dict[str, float]] = None,
        books: Optional[Dict[str, OrderBook]] = None,
        down: Iterable[str] = (),
    ):
        super().__init__(name)
        self.prices: Dict[str, float] = dict(prices or {})
        self.books: Dict[str, OrderBook] = dict(books or {})
        self.down = set(down)
        self.outage = False

    def set_price(self, symbol: str, price: float):
        self.prices[symbol] = price

    def set_order_book(self, symbol: str, asks: List[Tuple[float, float]], bids: Optional[List[Tuple[float, float]]] = None):
        self.books[symbol] = OrderBook(bids=list(bids or []), asks=list(asks))

    async def get_price(self, symbol: str) -> float:
        if self.outage or symbol in self.down or symbol not in self.prices:
            raise PriceUnavailable(f"{self.name} has no quote for {symbol}", exchange=self.name, symbol=symbol)
        return self.prices[symbol]

    async def get_order_book(self, symbol: str, depth: int = 20) -> OrderBook:
        if self.outage or symbol in self.down or symbol not in self.books:
            raise OrderBookUnavailable(f"{self.name} has no book for {symbol}", exchange=self.name, symbol=symbol)
        book = self.books[symbol]
        return OrderBook(bids=book.bids[:depth], asks=book.asks[:depth], timestamp=book.timestamp)
