import pytest

from routekeeper.models import Asset, Edge, Graph


def build_graph(rates, generation=1, extra_assets=(), partial=False):
    """rates: iterable of (from, to, net_rate)."""
    symbols = {s for a, b, _ in rates for s in (a, b)} | set(extra_assets)
    assets = {s: Asset(s) for s in symbols}
    edges = [Edge(assets[a], assets[b], r, 0.0, 0.0) for a, b, r in rates]
    return Graph(list(assets.values()), edges, generation, partial=partial)


@pytest.fixture
def make_graph():
    return build_graph
