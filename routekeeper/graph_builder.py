# routekeeper/graph_builder.py
import asyncio
import logging
import math
import time
from typing import Iterable, List, Optional, Sequence, Tuple

from .errors import PartialSourceFailure, PriceSourceError, SourceUnavailable
from .models import Asset, Edge, Graph
from .price_source import PriceSource

logger = logging.getLogger(__name__)


class GraphBuilder:
    """
    Assembles a fresh Graph from PriceSource quotes.

    Every configured pair is quoted in both directions. Failed quotes are
    dropped; if nothing at all comes back the build fails with
    SourceUnavailable and the caller keeps whatever graph it already has.
    """
    def __init__(self, source: PriceSource, assets: Iterable[Asset], pairs: Iterable[Tuple[str, str]],
                 quote_timeout: Optional[float] = None):
        self.source = source
        self.assets = {a.symbol: a for a in assets}
        self.quote_timeout = quote_timeout

        directed: List[Tuple[str, str]] = []
        for a, b in pairs:
            for pair in ((a, b), (b, a)):
                if pair not in directed:
                    directed.append(pair)
        self.directed_pairs: Sequence[Tuple[str, str]] = tuple(directed)
        # Failed pairs of the latest build, None when it was complete
        self.last_partial: Optional[PartialSourceFailure] = None

    async def _quote(self, base: str, quote: str):
        if self.quote_timeout:
            return await asyncio.wait_for(self.source.fetch_quote(base, quote), self.quote_timeout)
        return await self.source.fetch_quote(base, quote)

    async def build_graph(self, previous_generation: int) -> Graph:
        self.last_partial = None
        tasks = [self._quote(a, b) for a, b in self.directed_pairs]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        edges: List[Edge] = []
        failed: List[Tuple[str, str]] = []
        for (a, b), res in zip(self.directed_pairs, results):
            if isinstance(res, asyncio.CancelledError):
                raise res
            if isinstance(res, (PriceSourceError, asyncio.TimeoutError, OSError)):
                logger.debug(f"Quote {a}->{b} failed: {res}")
                failed.append((a, b))
                continue
            if isinstance(res, BaseException):
                # Anything else is a bug in the source, not an outage
                raise res

            edge = Edge.from_quote(self.assets[a], self.assets[b], res)
            if not (edge.rate > 0 and math.isfinite(edge.rate)):
                logger.debug(f"Quote {a}->{b} rejected: rate {edge.rate}")
                failed.append((a, b))
                continue
            edges.append(edge)

        if not edges:
            raise SourceUnavailable(f"all {len(self.directed_pairs)} quotes failed")

        partial = bool(failed)
        self.last_partial = PartialSourceFailure(failed, len(self.directed_pairs)) if partial else None
        if partial:
            logger.warning(f"⚠️ PARTIAL BUILD: {self.last_partial}")

        return Graph(
            assets=self.assets.values(),
            edges=edges,
            generation=previous_generation + 1,
            built_at=time.time(),
            partial=partial,
        )
