# routekeeper/scheduler.py
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from .errors import HeartbeatWriteError, PublishRaceDetected, SourceUnavailable
from .graph_builder import GraphBuilder
from .heartbeat import HeartbeatMonitor
from .logger import ActivityLog
from .models import Snapshot
from .path_optimizer import PathOptimizer
from .readiness import ReadinessController
from .route_cache import RouteCache, SnapshotWriter

logger = logging.getLogger(__name__)

MAX_BACKOFF_EXPONENT = 32


class PeriodicTask:
    """
    Runs `fn` forever at a cadence until `request_stop()` is called.

    The only exit is the stop event: no tick counter, no self-termination.
    An exception raised by `fn` is logged and the next tick still happens.
    """
    def __init__(self, name: str, interval: float, fn: Callable[[], Awaitable[None]],
                 run_immediately: bool = False, next_delay: Optional[Callable[[], float]] = None):
        self.name = name
        self.interval = interval
        self.fn = fn
        self.run_immediately = run_immediately
        self.next_delay = next_delay or (lambda: self.interval)
        self.ticks = 0
        self.errors = 0
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def start(self):
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")

    def request_stop(self):
        self._stopping.set()

    async def join(self):
        if self._task is not None:
            await self._task

    async def _loop(self):
        if not self.run_immediately and await self.sleep(self.interval):
            return
        while not self._stopping.is_set():
            self.ticks += 1
            try:
                await self.fn()
            except Exception:
                self.errors += 1
                logger.exception(f"{self.name} tick failed")
            try:
                delay = self.next_delay()
            except Exception:
                logger.exception(f"{self.name} next delay failed, using {self.interval}s")
                delay = self.interval
            if await self.sleep(delay):
                return

    async def sleep(self, delay: float) -> bool:
        """Waits `delay` seconds. Returns True as soon as stop is requested."""
        if self._stopping.is_set():
            return True
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=max(0.0, delay))
        except asyncio.TimeoutError:
            return False
        return True

    async def wait_or_stop(self, fut: asyncio.Future, timeout: float):
        """Waits for `fut` (without cancelling it), the timeout, or stop."""
        stop_waiter = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({fut, stop_waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_waiter.cancel()


class Scheduler:
    """
    Owns the three periodic tasks: route refresh, heartbeat and uptime.

    Each runs as its own asyncio task so a slow refresh never delays a
    heartbeat. The refresh is single-flight: a tick that finds the previous
    refresh still running is skipped, never queued. After a failed refresh the
    next tick backs off exponentially up to `backoff_max`.
    """
    def __init__(self, builder: GraphBuilder, optimizer: PathOptimizer, cache: RouteCache,
                 readiness: ReadinessController, heartbeat: HeartbeatMonitor,
                 refresh_interval: float = 60.0, heartbeat_interval: float = 5.0, uptime_interval: float = 1.0,
                 backoff_initial: float = 5.0, backoff_max: float = 60.0,
                 staleness_threshold: Optional[float] = None,
                 snapshot_writer: Optional[SnapshotWriter] = None, activity: Optional[ActivityLog] = None,
                 on_uptime: Optional[Callable[[float], None]] = None):
        self.builder = builder
        self.optimizer = optimizer
        self.cache = cache
        self.readiness = readiness
        self.heartbeat = heartbeat
        self.snapshot_writer = snapshot_writer
        self.activity = activity
        self.on_uptime = on_uptime

        self.refresh_interval = refresh_interval
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.staleness_threshold = staleness_threshold or refresh_interval * 2

        self.consecutive_failures = 0
        self.skipped_ticks = 0
        self.uptime_ticks = 0
        self.fatal_error: Optional[BaseException] = None
        self.fatal = asyncio.Event()

        self._refresh_task: Optional[asyncio.Task] = None
        self._tick_started = 0.0

        self.refresh_timer = PeriodicTask("refresh", refresh_interval, self._refresh_tick,
                                          run_immediately=True, next_delay=self._after_refresh_tick)
        self.heartbeat_timer = PeriodicTask("heartbeat", heartbeat_interval, self._heartbeat_tick)
        self.uptime_timer = PeriodicTask("uptime", uptime_interval, self._uptime_tick)
        self.tasks = (self.refresh_timer, self.heartbeat_timer, self.uptime_timer)

    # --- lifecycle ---

    def start(self):
        logger.info(f"⏱️ SCHEDULER START | refresh {self.refresh_interval}s, "
                    f"heartbeat {self.heartbeat_timer.interval}s, uptime {self.uptime_timer.interval}s")
        for t in self.tasks:
            t.start()

    def request_stop(self):
        for t in self.tasks:
            t.request_stop()

    async def stop(self, grace: float = 10.0):
        """
        Stops issuing ticks, gives an in-flight refresh `grace` seconds to
        finish, then abandons it.
        """
        self.request_stop()
        await asyncio.gather(*(t.join() for t in self.tasks))

        task = self._refresh_task
        if task is not None and not task.done():
            logger.info(f"Waiting up to {grace}s for in-flight refresh")
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("⚠️ In-flight refresh abandoned at shutdown")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        logger.info("⏱️ SCHEDULER STOPPED")

    # --- refresh ---

    def refresh_delay(self) -> float:
        if self.consecutive_failures == 0:
            return self.refresh_interval
        # Exponent capped so a long outage cannot overflow the float
        exponent = min(self.consecutive_failures - 1, MAX_BACKOFF_EXPONENT)
        return min(self.backoff_initial * 2 ** exponent, self.backoff_max)

    def _after_refresh_tick(self) -> float:
        elapsed = time.monotonic() - self._tick_started
        return max(0.0, self.refresh_delay() - elapsed)

    def refresh_in_flight(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    async def _refresh_tick(self):
        self._tick_started = time.monotonic()
        if self.refresh_in_flight():
            self.skipped_ticks += 1
            logger.warning(f"⏭️ REFRESH TICK SKIPPED: previous refresh still running ({self.skipped_ticks} skipped)")
        else:
            self._refresh_task = asyncio.create_task(self._guarded_refresh(), name="refresh-cycle")
        # Settle before computing the next delay so a failure backs off at once
        await self.refresh_timer.wait_or_stop(self._refresh_task, timeout=self.refresh_interval)

    async def _guarded_refresh(self):
        try:
            await self.refresh_once()
        except PublishRaceDetected as e:
            logger.critical(f"💀 PUBLISH RACE: {e}. Snapshot ordering invariant violated, stopping.")
            self.fatal_error = e
            self.fatal.set()
            self.request_stop()
        except Exception as e:
            # Unexpected failure; counts against the upstream like an outage
            logger.exception("Refresh cycle crashed")
            self._record_failure(f"refresh crashed: {e}")
            await self.readiness.evaluate()

    def _record_failure(self, reason: str):
        self.consecutive_failures += 1
        self.readiness.record_refresh(False, reason)

    async def refresh_once(self) -> bool:
        """
        One full cycle: build -> compute -> publish -> persist -> readiness.
        Returns True when a new snapshot was published.
        """
        started = time.monotonic()
        try:
            graph = await self.builder.build_graph(self.cache.generation)
        except SourceUnavailable as e:
            self._record_failure(str(e))
            retry_in = self.refresh_delay()
            logger.error(f"❌ SOURCE UNAVAILABLE: {e} | retry in {retry_in:.0f}s "
                         f"(failure #{self.consecutive_failures})")
            if self.cache.current() is not None and self.cache.is_stale(self.staleness_threshold):
                logger.warning(f"⚠️ STALE: serving gen {self.cache.generation}, "
                               f"age {self.cache.current().age():.0f}s > {self.staleness_threshold:.0f}s")
            self._record_activity(self.cache.generation, "unavailable", 0, 0, started, str(e))
            await self.readiness.evaluate()
            return False

        routes = self.optimizer.compute_routes(graph)
        snapshot = Snapshot.build(graph, routes)
        self.cache.publish(snapshot)

        self.consecutive_failures = 0
        self.readiness.record_refresh(True)
        outcome = "partial" if graph.partial else "ok"
        detail = str(self.builder.last_partial) if self.builder.last_partial is not None else ""
        self._record_activity(graph.generation, outcome, len(graph.edges), len(routes), started, detail)

        if self.snapshot_writer is not None:
            try:
                await self.snapshot_writer.write(snapshot)
            except OSError as e:
                logger.error(f"Snapshot file write failed: {e}")

        await self.readiness.evaluate()
        return True

    def is_stale(self) -> bool:
        return self.cache.is_stale(self.staleness_threshold)

    def _record_activity(self, generation, outcome, edges, routes, started, detail):
        if self.activity is None:
            return
        duration_ms = round((time.monotonic() - started) * 1000, 1)
        self.activity.record([time.time(), generation, outcome, edges, routes, duration_ms, detail])

    # --- heartbeat & uptime ---

    async def _heartbeat_tick(self):
        try:
            await self.heartbeat.beat()
        except HeartbeatWriteError as e:
            logger.error(f"💔 {e} (failure #{self.heartbeat.write_failures}, retrying next tick)")

    async def _uptime_tick(self):
        self.uptime_ticks += 1
        if self.on_uptime is not None:
            self.on_uptime(self.uptime_ticks * self.uptime_timer.interval)
