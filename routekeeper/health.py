# routekeeper/health.py
import os
import platform
import time
from datetime import datetime, timezone
from typing import Optional

import psutil
from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

from .heartbeat import HeartbeatMonitor
from .readiness import ReadinessController
from .route_cache import RouteCache

PROCESS_STARTED_AT = time.time()


def format_uptime(seconds: int) -> str:
    """Human readable uptime, e.g. '1d 2h 3m 4s'."""
    days, rem = divmod(int(seconds), 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)

    parts = []
    if days > 0: parts.append(f"{days}d")
    if hours > 0: parts.append(f"{hours}h")
    if minutes > 0: parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


def _heap_bytes(mem) -> int:
    # Linux reports the data segment separately; elsewhere fall back to VMS
    return getattr(mem, 'data', None) or mem.vms


def liveness_info(started_at: float = PROCESS_STARTED_AT) -> dict:
    """
    Process-only facts. Never looks at dependencies.
    """
    uptime = int(time.time() - started_at)
    mem = psutil.Process(os.getpid()).memory_info()
    return {
        "success": True,
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime_seconds": uptime,
        "uptime_formatted": format_uptime(uptime),
        "pid": os.getpid(),
        "memory": {
            "rss_mb": round(mem.rss / 1024 / 1024),
            "heap_mb": round(_heap_bytes(mem) / 1024 / 1024),
        },
        "python_version": platform.python_version(),
    }


class ServiceCollector:
    """
    Custom prometheus_client collector. Every scrape reads the monitor,
    cache and readiness objects directly instead of mirroring them into gauges.
    """
    def __init__(self, heartbeat: HeartbeatMonitor, cache: Optional[RouteCache] = None,
                 readiness: Optional[ReadinessController] = None, prefix: str = "routekeeper"):
        self.heartbeat = heartbeat
        self.cache = cache
        self.readiness = readiness
        self.prefix = prefix
        self._process = psutil.Process(os.getpid())

    def collect(self):
        p = self.prefix
        now = time.time()

        beats = CounterMetricFamily(f"{p}_heartbeats", "Total number of heartbeats recorded")
        beats.add_metric([], self.heartbeat.count)
        yield beats

        since = self.heartbeat.seconds_since_last(now)
        if since is None:
            since = now - self.heartbeat.started_at
        yield GaugeMetricFamily(f"{p}_seconds_since_last_heartbeat", "Seconds since last heartbeat", value=since)

        with self._process.oneshot():
            mem = self._process.memory_info()
            cpu = self._process.cpu_times()
        yield GaugeMetricFamily(f"{p}_resident_memory_bytes", "Resident set size in bytes", value=mem.rss)
        yield GaugeMetricFamily(f"{p}_heap_bytes", "Process heap (data segment) in bytes", value=_heap_bytes(mem))

        user = CounterMetricFamily(f"{p}_cpu_user_seconds", "User-space CPU time in seconds")
        user.add_metric([], cpu.user)
        yield user
        system = CounterMetricFamily(f"{p}_cpu_system_seconds", "Kernel-space CPU time in seconds")
        system.add_metric([], cpu.system)
        yield system

        if self.cache is not None:
            snap = self.cache.current()
            yield GaugeMetricFamily(f"{p}_snapshot_generation", "Generation of the published snapshot",
                                    value=snap.generation if snap else 0)
            yield GaugeMetricFamily(f"{p}_snapshot_age_seconds", "Age of the published snapshot",
                                    value=snap.age(now) if snap else -1)
        if self.readiness is not None:
            yield GaugeMetricFamily(f"{p}_ready", "1 when all required readiness checks pass",
                                    value=1 if self.readiness.ready else 0)


def build_registry(collector: ServiceCollector) -> CollectorRegistry:
    registry = CollectorRegistry(auto_describe=False)
    registry.register(collector)
    return registry


def render_metrics(registry: CollectorRegistry) -> bytes:
    return generate_latest(registry)
