# routekeeper/path_optimizer.py
from typing import Dict, List, Optional, Tuple

from .models import Edge, Graph, Route, RouteKey

# Weights closer than this are treated as equal so tie-breaks can apply
WEIGHT_TOLERANCE = 1e-12

# (weight, hops, path symbols, edges)
_Label = Tuple[float, int, Tuple[str, ...], Tuple[Edge, ...]]


def _better(a: _Label, b: _Label) -> bool:
    """
    Strict ordering of labels: lower weight, then fewer hops, then the
    lexicographically smaller symbol path.
    """
    if abs(a[0] - b[0]) > WEIGHT_TOLERANCE:
        return a[0] < b[0]
    if a[1] != b[1]:
        return a[1] < b[1]
    return a[2] < b[2]


class PathOptimizer:
    """
    Finds the rate-maximising route between every pair of assets.

    Rates become additive weights via -log(rate), so the best product of
    rates is the lightest path. Rates above 1 yield negative weights, which
    rules out Dijkstra and any pruning to one label per asset. Instead every
    simple path (no asset repeats) of at most `max_hops` edges is walked and
    the best one per destination is kept. That is exact, finite even when the
    graph holds a profitable cycle, and cheap for a handful of assets.
    """
    def __init__(self, max_hops: Optional[int] = 4):
        self.max_hops = max_hops

    def compute_routes(self, graph: Graph) -> Dict[RouteKey, Route]:
        routes: Dict[RouteKey, Route] = {}
        by_symbol = {a.symbol: a for a in graph.assets}

        for origin in graph.assets:
            best = self._search(graph, origin.symbol)
            for target, (weight, hops, path, edges) in best.items():
                output = 1.0
                for edge in edges:
                    output *= edge.rate
                routes[(origin.symbol, target)] = Route(
                    assets=tuple(by_symbol[s] for s in path),
                    edges=edges,
                    output=output,
                    hops=hops,
                    source_generation=graph.generation,
                )
        return routes

    def _search(self, graph: Graph, origin: str) -> Dict[str, _Label]:
        """Best label per reachable asset, origin itself excluded."""
        best: Dict[str, _Label] = {}
        stack: List[_Label] = [(0.0, 0, (origin,), ())]

        while stack:
            weight, hops, path, edges = stack.pop()
            if self.max_hops is not None and hops >= self.max_hops:
                continue

            for edge in graph.outgoing(path[-1]):
                nxt = edge.target.symbol
                if nxt in path:
                    continue
                cand: _Label = (weight + edge.weight, hops + 1, path + (nxt,), edges + (edge,))
                current = best.get(nxt)
                if current is None or _better(cand, current):
                    best[nxt] = cand
                # Every prefix is extended, not only the best one
                stack.append(cand)

        return best
