# routekeeper/price_source.py
import asyncio
import logging
import math
import time
from typing import Dict, Iterable, Optional, Protocol, Set, Tuple

import ccxt.async_support as ccxt

from .errors import ConfigurationError, PriceSourceError
from .models import Quote

logger = logging.getLogger(__name__)


class PriceSource(Protocol):
    """
    Anything that can quote a directed pair. Implementations raise
    PriceSourceError (or time out) when the pair cannot be quoted.
    """

    async def fetch_quote(self, base: str, quote: str) -> Quote:
        ...

    async def close(self) -> None:
        ...


class ExchangePriceSource:
    """
    Quotes pairs from a ccxt exchange's public ticker endpoint.

    A pair A->B is served from market "A/B" (sell A at the bid) or, if only
    the inverse market exists, from "B/A" (buy A with B at the ask).
    The taker fee of the market becomes the edge fee.
    """
    def __init__(self, exchange_id: str, url: Optional[str] = None, timeout_ms: int = 10_000):
        try:
            ex_class = getattr(ccxt, exchange_id)
        except AttributeError:
            raise ConfigurationError(f"Unknown ccxt exchange '{exchange_id}'") from None

        options = {
            'timeout': timeout_ms,
            'enableRateLimit': True,
            'options': {'defaultType': 'spot'},
        }
        if url:
            # Deep-merged by ccxt over the exchange's own url table
            options['urls'] = {'api': {'public': url}}

        self.exchange_id = exchange_id
        self.client = ex_class(options)
        self._markets_loaded = False
        self._load_lock = asyncio.Lock()

    async def _ensure_markets(self):
        async with self._load_lock:
            if not self._markets_loaded:
                await self.client.load_markets()
                self._markets_loaded = True

    def _resolve(self, base: str, quote: str) -> Tuple[str, bool]:
        direct = f"{base}/{quote}"
        if direct in self.client.markets:
            return direct, False
        inverse = f"{quote}/{base}"
        if inverse in self.client.markets:
            return inverse, True
        raise PriceSourceError(f"{self.exchange_id} lists no market for {base}/{quote}")

    async def fetch_quote(self, base: str, quote: str) -> Quote:
        try:
            await self._ensure_markets()
            symbol, inverted = self._resolve(base, quote)
            ticker = await self.client.fetch_ticker(symbol)
        except PriceSourceError:
            raise
        except ccxt.RequestTimeout as e:
            raise PriceSourceError(f"{self.exchange_id} timed out quoting {base}/{quote}") from e
        except ccxt.ExchangeNotAvailable as e:
            raise PriceSourceError(f"{self.exchange_id} is unavailable: {e}") from e
        except ccxt.BaseError as e:
            raise PriceSourceError(f"{self.exchange_id} rejected {base}/{quote}: {e}") from e

        # Selling base at the bid, or buying base with quote at the ask
        if inverted:
            ask = ticker.get('ask')
            rate = 1.0 / ask if ask else 0.0
        else:
            rate = ticker.get('bid') or 0.0

        taker = self.client.markets[symbol].get('taker') or 0.0
        observed = (ticker.get('timestamp') or time.time() * 1000) / 1000
        return Quote(rate=float(rate), fee_bps=float(taker) * 10_000, observed_at=observed)

    async def ping(self) -> bool:
        """Loads markets once; used to log connectivity at startup."""
        try:
            await self._ensure_markets()
            return True
        except ccxt.BaseError as e:
            logger.error(f"❌ {self.exchange_id.upper()} | unreachable: {e}")
            return False

    async def close(self):
        await self.client.close()


class SyntheticPriceSource:
    """
    Deterministic rates for test mode and tests.

    Rates are given per directed pair; a pair listed once is served in
    reverse as 1/rate. `fail_pairs` and `available` let tests inject failures.
    """
    def __init__(self, rates: Dict[Tuple[str, str], float], fee_bps: float = 0.0, latency: float = 0.0):
        self.rates: Dict[Tuple[str, str], float] = {}
        for (a, b), rate in rates.items():
            self.rates[(a, b)] = float(rate)
            if (b, a) not in rates and rate:
                self.rates[(b, a)] = 1.0 / float(rate)
        self.fee_bps = fee_bps
        self.latency = latency
        self.available = True
        self.fail_pairs: Set[Tuple[str, str]] = set()
        self.calls = 0

    @classmethod
    def from_config(cls, section: dict) -> "SyntheticPriceSource":
        rates = {}
        for entry in section.get('rates', []):
            rates[(entry['from'], entry['to'])] = float(entry['rate'])
        return cls(rates, fee_bps=float(section.get('fee_bps', 0.0)))

    def set_rates(self, rates: Iterable[Tuple[str, str, float]]):
        for a, b, rate in rates:
            self.rates[(a, b)] = rate

    async def fetch_quote(self, base: str, quote: str) -> Quote:
        self.calls += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self.available or (base, quote) in self.fail_pairs:
            raise PriceSourceError(f"synthetic source refused {base}/{quote}")
        rate = self.rates.get((base, quote))
        if rate is None or not math.isfinite(rate):
            raise PriceSourceError(f"no synthetic rate for {base}/{quote}")
        return Quote(rate=rate, fee_bps=self.fee_bps)

    async def close(self):
        pass
