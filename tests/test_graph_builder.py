import asyncio

import pytest

from routekeeper.errors import SourceUnavailable
from routekeeper.graph_builder import GraphBuilder
from routekeeper.models import Asset
from routekeeper.price_source import SyntheticPriceSource

ASSETS = [Asset("ETH", 18), Asset("USDT", 6), Asset("BTC", 8)]
PAIRS = [("ETH", "USDT"), ("BTC", "USDT")]


def make_source(**kwargs):
    return SyntheticPriceSource({("ETH", "USDT"): 3200.0, ("BTC", "USDT"): 64000.0}, **kwargs)


def test_builds_both_directions_of_every_pair():
    builder = GraphBuilder(make_source(), ASSETS, PAIRS)
    graph = asyncio.run(builder.build_graph(previous_generation=4))

    assert graph.generation == 5
    assert not graph.partial
    assert len(graph.edges) == 4
    targets = {(e.source.symbol, e.target.symbol) for e in graph.edges}
    assert ("USDT", "ETH") in targets and ("ETH", "USDT") in targets
    assert {a.symbol for a in graph.assets} == {"ETH", "USDT", "BTC"}


def test_fee_is_applied_to_edge_rate():
    builder = GraphBuilder(make_source(fee_bps=10), ASSETS, PAIRS)
    graph = asyncio.run(builder.build_graph(0))

    edge = next(e for e in graph.edges if e.source.symbol == "ETH" and e.target.symbol == "USDT")
    assert edge.rate == pytest.approx(3200.0 * 0.999)
    assert edge.fee_bps == 10


def test_partial_failure_builds_from_successful_subset(caplog):
    source = make_source()
    source.fail_pairs = {("BTC", "USDT"), ("USDT", "BTC")}
    builder = GraphBuilder(source, ASSETS, PAIRS)

    graph = asyncio.run(builder.build_graph(1))

    assert graph.partial
    assert len(graph.edges) == 2
    assert "PARTIAL BUILD" in caplog.text
    assert sorted(builder.last_partial.failed) == [("BTC", "USDT"), ("USDT", "BTC")]
    assert builder.last_partial.total == 4

    source.fail_pairs = set()
    assert not asyncio.run(builder.build_graph(2)).partial
    assert builder.last_partial is None


def test_zero_successes_raise_source_unavailable():
    source = make_source()
    source.available = False
    builder = GraphBuilder(source, ASSETS, PAIRS)

    with pytest.raises(SourceUnavailable):
        asyncio.run(builder.build_graph(1))


def test_non_positive_rates_count_as_failures():
    source = SyntheticPriceSource({("ETH", "USDT"): 0.0})
    builder = GraphBuilder(source, ASSETS, [("ETH", "USDT")])

    with pytest.raises(SourceUnavailable):
        asyncio.run(builder.build_graph(1))


def test_slow_quotes_time_out():
    builder = GraphBuilder(make_source(latency=0.5), ASSETS, PAIRS, quote_timeout=0.01)

    with pytest.raises(SourceUnavailable):
        asyncio.run(builder.build_graph(1))
