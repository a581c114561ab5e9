# spreadguard/market_engine.py
import asyncio
import random
from typing import Dict, List, Optional

from .exceptions import OrderBookUnavailable, PriceUnavailable
from .exchanges import CcxtPriceSource, PriceSource, SimulatedPriceSource, StaticPriceSource
from .models import OrderBook


class MarketEngine:
    """
    Owns the named price sources.
    Builds them from config, runs connectivity diagnostics and bounds
    every call with the network timeout.
    """
    def __init__(self, config: dict, logger, sources: Optional[Dict[str, PriceSource]] = None):
        self.cfg = config
        self.logger = logger
        self.timeout_s = config['performance']['network_timeout_ms'] / 1000
        self.sources: Dict[str, PriceSource] = sources if sources is not None else self._build_sources()

    def _build_sources(self) -> Dict[str, PriceSource]:
        seed = self.cfg['system'].get('seed')
        rng = random.Random(seed)
        timeout_ms = self.cfg['performance']['network_timeout_ms']
        ex_cfgs = self.cfg['exchanges']
        sources: Dict[str, PriceSource] = {}

        # References first, so simulated markets can quote off them
        ordered = sorted(ex_cfgs.items(), key=lambda kv: kv[1].get('kind') == 'simulated')
        for name, ex_cfg in ordered:
            kind = ex_cfg.get('kind', 'simulated')
            if kind == 'ccxt':
                sources[name] = CcxtPriceSource(name, ex_cfg.get('ccxt_id', name), self.logger, timeout_ms)
            elif kind == 'static':
                src = StaticPriceSource(name, prices=ex_cfg.get('prices', {}))
                for symbol, book in ex_cfg.get('books', {}).items():
                    src.set_order_book(symbol, [tuple(l) for l in book.get('asks', [])],
                                       [tuple(l) for l in book.get('bids', [])])
                sources[name] = src
            elif kind == 'simulated':
                ref_name = ex_cfg.get('reference')
                if ref_name not in sources:
                    raise ValueError(f"Simulated exchange '{name}' references unknown source '{ref_name}'")
                sources[name] = SimulatedPriceSource(name, sources[ref_name], ex_cfg, random.Random(rng.getrandbits(32)))
            else:
                raise ValueError(f"Unknown exchange kind '{kind}' for '{name}'")

        # Keep the config's declared order for display and pair iteration
        return {name: sources[name] for name in ex_cfgs if name in sources}

    @property
    def names(self) -> List[str]:
        return list(self.sources.keys())

    def get(self, name: str) -> PriceSource:
        return self.sources[name]

    def fee_rate(self, name: str, default: float = 0.001) -> float:
        return self.cfg['exchanges'].get(name, {}).get('fee_rate', default)

    async def initialize(self) -> bool:
        """
        Runs each source's diagnostic. Returns False if ANY source fails;
        the pipeline still runs with the ones that answer.
        """
        self.logger.info("📡 TESTING EXCHANGE CONNECTIONS...")
        all_connected = True
        for name, source in self.sources.items():
            try:
                ok = await asyncio.wait_for(source.initialize(), timeout=self.timeout_s)
            except asyncio.TimeoutError:
                self.logger.error(f"   ❌ {name.upper():<10} | TIMEOUT during initialization")
                ok = False
            all_connected = all_connected and ok
        return all_connected

    async def fetch_price(self, name: str, symbol: str) -> float:
        try:
            return await asyncio.wait_for(self.sources[name].get_price(symbol), timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            raise PriceUnavailable(f"{name} timed out quoting {symbol}", exchange=name, symbol=symbol) from e

    async def fetch_order_book(self, name: str, symbol: str, depth: int = 20) -> OrderBook:
        try:
            return await asyncio.wait_for(self.sources[name].get_order_book(symbol, depth), timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            raise OrderBookUnavailable(f"{name} timed out on depth for {symbol}", exchange=name, symbol=symbol) from e

    async def shutdown(self):
        """
        Gracefully closes all exchange sessions.
        """
        for source in self.sources.values():
            await source.close()
