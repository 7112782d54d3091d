import asyncio

import pytest

from routekeeper.errors import PublishRaceDetected
from routekeeper.graph_builder import GraphBuilder
from routekeeper.heartbeat import HeartbeatMonitor
from routekeeper.models import Asset
from routekeeper.path_optimizer import PathOptimizer
from routekeeper.price_source import SyntheticPriceSource
from routekeeper.readiness import ReadinessController
from routekeeper.route_cache import RouteCache
from routekeeper.scheduler import PeriodicTask, Scheduler

ASSETS = [Asset("ETH"), Asset("USDT"), Asset("BTC")]
PAIRS = [("ETH", "USDT"), ("BTC", "USDT"), ("ETH", "BTC")]


class CountingSink:
    """Heartbeat sink that can request a stop after `stop_after` good writes
    and can fail every other write."""
    filepath = "memory://heartbeat"

    def __init__(self, stop_after=None, fail_odd_calls=False):
        self.stop_after = stop_after
        self.fail_odd_calls = fail_odd_calls
        self.on_limit = None
        self.calls = 0
        self.written = 0

    async def append(self, record):
        self.calls += 1
        if self.fail_odd_calls and self.calls % 2 == 1:
            raise OSError(5, "Input/output error")
        self.written += 1
        if self.written == self.stop_after and self.on_limit is not None:
            self.on_limit()


class LyingCache(RouteCache):
    """Always reports generation 0, so every build reuses generation 1."""

    @property
    def generation(self):
        return 0


def make_scheduler(tmp_path, source=None, sink=None, cache=None, **intervals):
    source = source or SyntheticPriceSource({("ETH", "USDT"): 3200.0, ("BTC", "USDT"): 64000.0,
                                             ("ETH", "BTC"): 0.05})
    monitor = HeartbeatMonitor(sink or CountingSink(), interval=intervals.get("heartbeat_interval", 3600))
    readiness = ReadinessController("https://api.example.com", str(tmp_path), heartbeat=monitor)
    settings = dict(refresh_interval=3600, heartbeat_interval=3600, uptime_interval=3600,
                    backoff_initial=5, backoff_max=60)
    settings.update(intervals)
    scheduler = Scheduler(GraphBuilder(source, ASSETS, PAIRS), PathOptimizer(), cache or RouteCache(),
                          readiness, monitor, **settings)
    return scheduler, source


def test_heartbeat_never_stops_on_its_own(tmp_path):
    sink = CountingSink(stop_after=1000)

    async def scenario():
        scheduler, _ = make_scheduler(tmp_path, sink=sink, heartbeat_interval=0.0)
        sink.on_limit = scheduler.request_stop
        scheduler.start()
        await asyncio.wait_for(scheduler.heartbeat_timer.join(), timeout=60)
        await scheduler.stop(grace=1)
        return scheduler

    scheduler = asyncio.run(scenario())

    assert scheduler.heartbeat.count == 1000
    assert scheduler.heartbeat_timer.ticks == 1000


def test_heartbeat_write_failures_do_not_stop_ticks(tmp_path):
    sink = CountingSink(stop_after=10, fail_odd_calls=True)

    async def scenario():
        scheduler, _ = make_scheduler(tmp_path, sink=sink, heartbeat_interval=0.0)
        sink.on_limit = scheduler.request_stop
        scheduler.start()
        await asyncio.wait_for(scheduler.heartbeat_timer.join(), timeout=30)
        await scheduler.stop(grace=1)
        return scheduler

    scheduler = asyncio.run(scenario())

    assert scheduler.heartbeat.count == 10
    assert scheduler.heartbeat.write_failures == 10
    assert scheduler.heartbeat_timer.errors == 0


def test_refresh_publishes_snapshot_and_marks_ready(tmp_path):
    scheduler, _ = make_scheduler(tmp_path)

    assert asyncio.run(scheduler.refresh_once())

    snap = scheduler.cache.current()
    assert snap.generation == 1
    assert ("ETH", "BTC") in snap.routes
    assert scheduler.readiness.ready


def test_readiness_flips_after_three_failed_refreshes(tmp_path):
    scheduler, source = make_scheduler(tmp_path)

    async def scenario():
        verdicts = [await scheduler.refresh_once() and scheduler.readiness.ready]
        source.available = False
        for _ in range(3):
            await scheduler.refresh_once()
            verdicts.append(scheduler.readiness.ready)
        source.available = True
        await scheduler.refresh_once()
        verdicts.append(scheduler.readiness.ready)
        return verdicts

    assert asyncio.run(scenario()) == [True, True, True, False, True]
    assert scheduler.cache.generation == 2
    assert scheduler.consecutive_failures == 0


def test_failed_refresh_keeps_last_good_snapshot(tmp_path):
    scheduler, source = make_scheduler(tmp_path, staleness_threshold=0.01)

    async def scenario():
        await scheduler.refresh_once()
        first = scheduler.cache.current()
        source.available = False
        await asyncio.sleep(0.05)
        published = await scheduler.refresh_once()
        return first, published

    first, published = asyncio.run(scenario())

    assert not published
    assert scheduler.cache.current() is first
    assert scheduler.is_stale()


def test_backoff_doubles_is_capped_and_resets(tmp_path):
    scheduler, _ = make_scheduler(tmp_path, refresh_interval=60, backoff_initial=5, backoff_max=60)

    delays = []
    for failures in (0, 1, 2, 3, 4, 5, 9):
        scheduler.consecutive_failures = failures
        delays.append(scheduler.refresh_delay())
    assert delays == [60, 5, 10, 20, 40, 60, 60]

    asyncio.run(scheduler.refresh_once())
    assert scheduler.refresh_delay() == 60


def test_backoff_stays_capped_after_a_very_long_outage(tmp_path):
    scheduler, _ = make_scheduler(tmp_path, refresh_interval=60, backoff_initial=5, backoff_max=60)

    for failures in (1024, 1025, 100_000):
        scheduler.consecutive_failures = failures
        assert scheduler.refresh_delay() == 60


def test_refresh_resumes_when_upstream_returns_after_a_long_outage(tmp_path):
    async def scenario():
        scheduler, source = make_scheduler(tmp_path, refresh_interval=0.01, backoff_initial=0.01, backoff_max=0.02)
        scheduler.consecutive_failures = 1024
        source.available = False
        scheduler.start()
        await asyncio.sleep(0.1)
        source.available = True
        for _ in range(200):
            if scheduler.cache.generation:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop(grace=1)
        return scheduler

    scheduler = asyncio.run(scenario())

    assert scheduler.cache.generation >= 1
    assert scheduler.consecutive_failures == 0
    assert scheduler.readiness.ready
    assert scheduler.refresh_timer.errors == 0


def test_slow_refresh_skips_ticks_instead_of_queueing(tmp_path):
    source = SyntheticPriceSource({("ETH", "USDT"): 3200.0, ("BTC", "USDT"): 64000.0, ("ETH", "BTC"): 0.05},
                                  latency=0.6)

    async def scenario():
        scheduler, _ = make_scheduler(tmp_path, source=source, refresh_interval=0.05)
        scheduler.start()
        await asyncio.sleep(0.3)
        in_flight_generation = scheduler.cache.generation
        skipped = scheduler.skipped_ticks
        await scheduler.stop(grace=5)
        return scheduler, in_flight_generation, skipped

    scheduler, in_flight_generation, skipped = asyncio.run(scenario())

    assert in_flight_generation == 0
    assert skipped >= 2
    # Exactly one refresh ran: each directed pair quoted once
    assert source.calls == 6
    assert scheduler.cache.generation == 1


def test_heartbeat_is_not_blocked_by_a_hanging_refresh(tmp_path):
    source = SyntheticPriceSource({("ETH", "USDT"): 3200.0}, latency=30)

    async def scenario():
        scheduler, _ = make_scheduler(tmp_path, source=source, heartbeat_interval=0.01)
        scheduler.start()
        await asyncio.sleep(0.3)
        beats = scheduler.heartbeat.count
        await scheduler.stop(grace=0.05)
        return scheduler, beats

    scheduler, beats = asyncio.run(scenario())

    assert beats >= 5
    assert scheduler.cache.current() is None


def test_publish_race_is_fatal(tmp_path):
    async def scenario():
        scheduler, _ = make_scheduler(tmp_path, cache=LyingCache(), refresh_interval=0.01)
        scheduler.start()
        await asyncio.wait_for(scheduler.fatal.wait(), timeout=10)
        await scheduler.stop(grace=1)
        return scheduler

    scheduler = asyncio.run(scenario())

    assert isinstance(scheduler.fatal_error, PublishRaceDetected)
    assert all(t.stopping for t in scheduler.tasks)


def test_uptime_tick_reports_elapsed_seconds(tmp_path):
    seen = []

    async def scenario():
        scheduler, _ = make_scheduler(tmp_path, uptime_interval=0.01)
        scheduler.on_uptime = seen.append
        scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop(grace=1)

    asyncio.run(scenario())

    assert len(seen) >= 3
    assert seen[:3] == pytest.approx([0.01, 0.02, 0.03])


def test_periodic_task_survives_exceptions():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) == 5:
            task.request_stop()
        raise RuntimeError("tick failed")

    async def scenario():
        task.start()
        await asyncio.wait_for(task.join(), timeout=10)

    task = PeriodicTask("flaky", 0.0, flaky, run_immediately=True)
    asyncio.run(scenario())

    assert task.ticks == 5
    assert task.errors == 5


def test_periodic_task_survives_a_failing_delay_function():
    calls = []

    async def tick():
        calls.append(1)
        if len(calls) == 3:
            task.request_stop()

    def broken_delay():
        raise OverflowError("int too large to convert to float")

    async def scenario():
        task.start()
        await asyncio.wait_for(task.join(), timeout=10)

    task = PeriodicTask("broken-delay", 0.0, tick, run_immediately=True, next_delay=broken_delay)
    asyncio.run(scenario())

    assert task.ticks == 3


class RecordingActivity:
    def __init__(self):
        self.rows = []

    def record(self, row):
        self.rows.append(row)


def test_partial_build_lists_failed_pairs_in_activity(tmp_path):
    scheduler, source = make_scheduler(tmp_path)
    scheduler.activity = RecordingActivity()
    source.fail_pairs = {("ETH", "BTC")}

    assert asyncio.run(scheduler.refresh_once())

    _, generation, outcome, edges, _, _, detail = scheduler.activity.rows[-1]
    assert (generation, outcome, edges) == (1, "partial", 5)
    assert "1/6 quotes failed" in detail
    assert "ETH->BTC" in detail
