# main.py
import asyncio
import os
import signal
import sys
from contextlib import nullcontext

from aiohttp import web
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from routekeeper.api import RouteApi
from routekeeper.config import load_config, parse_assets, parse_pairs, require_upstream, storage_path
from routekeeper.errors import ConfigurationError
from routekeeper.graph_builder import GraphBuilder
from routekeeper.health import PROCESS_STARTED_AT, ServiceCollector, build_registry, format_uptime
from routekeeper.heartbeat import HeartbeatLog, HeartbeatMonitor
from routekeeper.logger import ActivityLog, setup_console_logger
from routekeeper.path_optimizer import PathOptimizer
from routekeeper.price_source import ExchangePriceSource, SyntheticPriceSource
from routekeeper.readiness import ReadinessController
from routekeeper.route_cache import RouteCache, SnapshotWriter
from routekeeper.scheduler import Scheduler

# --- UI HELPER FUNCTIONS ---

def generate_status(uptime: float, cache: RouteCache, heartbeat: HeartbeatMonitor, readiness: ReadinessController):
    """
    Rich status panel: uptime, published generation, heartbeat and readiness.
    """
    table = Table(title="🛰️ Route Keeper", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    snap = cache.current()
    table.add_row("Uptime", format_uptime(int(uptime)))
    table.add_row("Generation", str(snap.generation) if snap else "-")
    table.add_row("Routes", str(len(snap.routes)) if snap else "-")
    table.add_row("Heartbeats", str(heartbeat.count))

    since = heartbeat.seconds_since_last()
    table.add_row("Last heartbeat", f"{since:.0f}s ago" if since is not None else "-")
    ready = "[green]READY[/green]" if readiness.ready else "[red]NOT READY[/red]"
    table.add_row("Readiness", ready)
    return Panel(table)

# --- MAIN CONTROLLER ---

class RouteKeeperService:
    def __init__(self, config: dict):
        self.config = config
        self.logger = setup_console_logger("routekeeper", config['logging']['level'])
        self.test_mode = config['system']['test_mode']
        self.upstream_url = require_upstream(config)

        if self.test_mode:
            self.source = SyntheticPriceSource.from_config(config['synthetic'])
        else:
            up = config['upstream']
            self.source = ExchangePriceSource(up['exchange'], self.upstream_url, up['timeout_ms'])

        sched = config['schedule']
        self.cache = RouteCache()
        self.heartbeat_log = HeartbeatLog(storage_path(config, 'heartbeat_log'))
        self.heartbeat = HeartbeatMonitor(self.heartbeat_log, sched['heartbeat_interval_s'])
        self.readiness = ReadinessController(
            upstream_url=self.upstream_url,
            log_dir=config['storage']['log_dir'],
            heartbeat=self.heartbeat,
            failure_threshold=int(config['readiness']['failure_threshold']),
            test_mode=self.test_mode,
        )
        self.activity = ActivityLog(storage_path(config, 'activity_log'))
        self.builder = GraphBuilder(self.source, parse_assets(config), parse_pairs(config),
                                    quote_timeout=config['upstream']['quote_timeout_s'])
        self.live = None

        self.scheduler = Scheduler(
            self.builder, PathOptimizer(config['optimizer']['max_hops']), self.cache, self.readiness, self.heartbeat,
            refresh_interval=sched['refresh_interval_s'],
            heartbeat_interval=sched['heartbeat_interval_s'],
            uptime_interval=sched['uptime_interval_s'],
            backoff_initial=sched['backoff_initial_s'],
            backoff_max=sched['backoff_max_s'],
            staleness_threshold=sched['staleness_threshold_s'],
            snapshot_writer=SnapshotWriter(storage_path(config, 'snapshot_file')),
            activity=self.activity,
            on_uptime=self._show_status,
        )

        registry = build_registry(ServiceCollector(self.heartbeat, self.cache, self.readiness))
        self.api = RouteApi(self.cache, self.readiness, registry,
                            staleness_threshold=sched['staleness_threshold_s'], started_at=PROCESS_STARTED_AT)

    def _show_status(self, uptime: float):
        if self.live is not None:
            self.live.update(generate_status(uptime, self.cache, self.heartbeat, self.readiness))

    async def run(self):
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass  # Windows

        runner = web.AppRunner(self.api.build_app())
        try:
            print("[INIT] Initializing health check readiness...")
            await self.activity.start()
            state = await self.readiness.evaluate()
            if state.ready:
                self.logger.info("[READY] All health checks passed - application is ready")
            else:
                self.logger.warning("[WARNING] Some health checks failed - application may not be fully ready")

            if isinstance(self.source, ExchangePriceSource) and await self.source.ping():
                self.logger.info(f"📡 Connected to {self.source.exchange_id.upper()}")

            await runner.setup()
            port = self.config['server']['port']
            site = web.TCPSite(runner, self.config['server']['host'], port)
            await site.start()
            self.logger.info(f"Server listening on port {port}")
            self.logger.info(f"Health check (liveness): http://localhost:{port}/healthz")
            self.logger.info(f"Readiness check: http://localhost:{port}/readyz")

            console = Console()
            live_ctx = Live(console=console, refresh_per_second=2) if console.is_terminal else nullcontext()
            async with self.heartbeat_log:
                with live_ctx as live:
                    self.live = live
                    self.scheduler.start()
                    fatal = asyncio.create_task(self.scheduler.fatal.wait())
                    stopped = asyncio.create_task(stop.wait())
                    await asyncio.wait({fatal, stopped}, return_when=asyncio.FIRST_COMPLETED)
                    fatal.cancel()
                    stopped.cancel()
                    self.live = None
                    await self.scheduler.stop(self.config['schedule']['shutdown_grace_s'])
        finally:
            print("Shutting down resources...")
            await runner.cleanup()
            await self.activity.stop()
            await self.source.close()

        if self.scheduler.fatal_error is not None:
            raise self.scheduler.fatal_error


if __name__ == "__main__":
    try:
        conf = load_config(os.environ.get("ROUTEKEEPER_CONFIG", "config.yaml"))
        service = RouteKeeperService(conf)
    except ConfigurationError as e:
        print(f"❌ CONFIGURATION ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        print("\n🛑 Stopped by user.")
    except Exception:
        service.logger.exception("💀 Fatal error")
        sys.exit(1)
