# routekeeper/models.py
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple


class CheckStatus(Enum):
    """
    Outcome of a single readiness check.
    """
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True, order=True)
class Asset:
    """
    A tradable token. Ordered by symbol so paths compare deterministically.
    """
    symbol: str
    decimals: int = field(default=18, compare=False)

    def __str__(self) -> str:
        return self.symbol


@dataclass(frozen=True, slots=True)
class Quote:
    """
    Raw answer from a PriceSource: gross rate of `to` per unit of `from`.
    """
    rate: float
    fee_bps: float = 0.0
    observed_at: float = field(default_factory=time.time)


@dataclass(frozen=True, slots=True)
class Edge:
    """
    Directed conversion from `source` to `target`.
    `rate` is already net of `fee_bps`.
    """
    source: Asset
    target: Asset
    rate: float
    fee_bps: float
    observed_at: float

    @classmethod
    def from_quote(cls, source: Asset, target: Asset, quote: Quote) -> "Edge":
        net = quote.rate * (1 - quote.fee_bps / 10_000)
        return cls(source, target, net, quote.fee_bps, quote.observed_at)

    @property
    def weight(self) -> float:
        """Additive weight for path search: maximising product == minimising sum."""
        return -math.log(self.rate)

    def to_dict(self) -> dict:
        return {
            "from": self.source.symbol,
            "to": self.target.symbol,
            "rate": self.rate,
            "fee_bps": self.fee_bps,
            "observed_at": self.observed_at,
        }


class Graph:
    """
    Immutable weighted exchange graph tagged with a generation number.

    Every edge must reference assets of this same graph and each directed
    pair carries at most one edge. Refresh builds a new Graph; a published
    one is never touched again.
    """
    __slots__ = ("_assets", "_edges", "_adjacency", "generation", "built_at", "partial")

    def __init__(self, assets, edges, generation: int, built_at: Optional[float] = None, partial: bool = False):
        by_symbol: Dict[str, Asset] = {}
        for asset in assets:
            by_symbol[asset.symbol] = asset

        adjacency: Dict[str, Dict[str, Edge]] = {s: {} for s in by_symbol}
        for edge in edges:
            for end in (edge.source, edge.target):
                if by_symbol.get(end.symbol) != end:
                    raise ValueError(f"Edge {edge.source}->{edge.target} references asset {end} outside the graph")
            if edge.target.symbol in adjacency[edge.source.symbol]:
                raise ValueError(f"Duplicate edge {edge.source}->{edge.target}")
            adjacency[edge.source.symbol][edge.target.symbol] = edge

        self._assets: Tuple[Asset, ...] = tuple(sorted(by_symbol.values()))
        self._adjacency: Mapping[str, Tuple[Edge, ...]] = MappingProxyType({
            s: tuple(out[t] for t in sorted(out)) for s, out in adjacency.items()
        })
        self._edges: Tuple[Edge, ...] = tuple(e for s in sorted(self._adjacency) for e in self._adjacency[s])
        self.generation = generation
        self.built_at = time.time() if built_at is None else built_at
        self.partial = partial

    @property
    def assets(self) -> Tuple[Asset, ...]:
        return self._assets

    @property
    def edges(self) -> Tuple[Edge, ...]:
        return self._edges

    def outgoing(self, symbol: str) -> Tuple[Edge, ...]:
        """Edges leaving `symbol`, sorted by target symbol."""
        return self._adjacency.get(symbol, ())

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._adjacency

    def __repr__(self) -> str:
        return f"Graph(gen={self.generation}, assets={len(self._assets)}, edges={len(self._edges)}, partial={self.partial})"


@dataclass(frozen=True, slots=True)
class Route:
    """
    Concrete multi-hop path with its net output multiplier.
    """
    assets: Tuple[Asset, ...]
    edges: Tuple[Edge, ...]
    output: float
    hops: int
    source_generation: int

    @property
    def source(self) -> Asset:
        return self.assets[0]

    @property
    def target(self) -> Asset:
        return self.assets[-1]

    def to_dict(self) -> dict:
        return {
            "from": self.source.symbol,
            "to": self.target.symbol,
            "path": [a.symbol for a in self.assets],
            "output": self.output,
            "hops": self.hops,
            "generation": self.source_generation,
            "edges": [e.to_dict() for e in self.edges],
        }


RouteKey = Tuple[str, str]


@dataclass(frozen=True, slots=True)
class Snapshot:
    """
    The unit of atomic publication: a graph plus the routes computed from it.
    """
    graph: Graph
    routes: Mapping[RouteKey, Route]
    generation: int
    published_at: float = field(default_factory=time.time)

    @classmethod
    def build(cls, graph: Graph, routes: Mapping[RouteKey, Route]) -> "Snapshot":
        for key, route in routes.items():
            if route.source_generation != graph.generation:
                raise ValueError(f"Route {key} was computed from generation {route.source_generation}, not {graph.generation}")
        return cls(graph=graph, routes=MappingProxyType(dict(routes)), generation=graph.generation)

    @property
    def partial(self) -> bool:
        return self.graph.partial

    def age(self, now: Optional[float] = None) -> float:
        """Returns the age of the snapshot in seconds."""
        return (time.time() if now is None else now) - self.published_at

    def route(self, source: str, target: str) -> Optional[Route]:
        return self.routes.get((source, target))

    def to_dict(self) -> dict:
        return {
            "generation": self.generation,
            "published_at": self.published_at,
            "built_at": self.graph.built_at,
            "partial": self.partial,
            "assets": [{"symbol": a.symbol, "decimals": a.decimals} for a in self.graph.assets],
            "routes": [self.routes[k].to_dict() for k in sorted(self.routes)],
        }


@dataclass(frozen=True, slots=True)
class HeartbeatRecord:
    timestamp: float


@dataclass(frozen=True, slots=True)
class CheckResult:
    status: CheckStatus
    reason: str

    @property
    def passed(self) -> bool:
        return self.status is CheckStatus.PASS

    def to_dict(self) -> dict:
        return {"status": self.status.value, "message": self.reason}


@dataclass(frozen=True, slots=True)
class ReadinessState:
    """
    Result of one readiness evaluation. Replaced wholesale on each evaluation.
    """
    checks: Mapping[str, CheckResult]
    ready: bool
    evaluated_at: float

    @classmethod
    def initial(cls) -> "ReadinessState":
        return cls(checks=MappingProxyType({}), ready=False, evaluated_at=time.time())
