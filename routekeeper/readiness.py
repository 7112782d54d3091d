# routekeeper/readiness.py
import asyncio
import logging
import os
import time
import uuid
from types import MappingProxyType
from typing import Dict, Optional

import aiofiles

from .heartbeat import HeartbeatMonitor
from .models import CheckResult, CheckStatus, ReadinessState

logger = logging.getLogger(__name__)

REQUIRED_CHECKS = ("environment", "filesystem", "upstream")


class ReadinessController:
    """
    Aggregates dependency checks into one ready/not-ready verdict.

    Only this object replaces `state`; probes read it freely. The upstream
    check works like a circuit breaker: `failure_threshold` consecutive failed
    refreshes open it, the first success closes it again.
    The heartbeat age is reported next to the checks but never gates readiness.
    """
    def __init__(self, upstream_url: Optional[str], log_dir: str,
                 heartbeat: Optional[HeartbeatMonitor] = None,
                 failure_threshold: int = 3, test_mode: bool = False):
        self.upstream_url = upstream_url
        self.log_dir = log_dir
        self.heartbeat = heartbeat
        self.failure_threshold = failure_threshold
        self.test_mode = test_mode

        self.consecutive_failures = 0
        self.has_succeeded = False
        self.last_error: Optional[str] = None
        self.state = ReadinessState.initial()
        self._lock = asyncio.Lock()

    @property
    def ready(self) -> bool:
        return self.state.ready

    def record_refresh(self, success: bool, error: Optional[str] = None):
        """Called by the scheduler after every refresh attempt."""
        if success:
            self.consecutive_failures = 0
            self.has_succeeded = True
            self.last_error = None
        else:
            self.consecutive_failures += 1
            self.last_error = error

    # --- checks ---

    def _check_environment(self) -> CheckResult:
        if self.upstream_url:
            return CheckResult(CheckStatus.PASS, "Environment variables configured")
        return CheckResult(CheckStatus.FAIL, "Missing required setting: upstream url (UPSTREAM_URL)")

    async def _check_filesystem(self) -> CheckResult:
        probe = os.path.join(self.log_dir, f".readyz-{uuid.uuid4().hex}")
        token = uuid.uuid4().hex
        try:
            os.makedirs(self.log_dir, exist_ok=True)
            async with aiofiles.open(probe, mode='w') as f:
                await f.write(token)
            async with aiofiles.open(probe, mode='r') as f:
                echoed = await f.read()
        except OSError as e:
            return CheckResult(CheckStatus.FAIL, f"Logs directory not writable: {e}")
        finally:
            try:
                os.remove(probe)
            except OSError:
                pass  # never created
        if echoed != token:
            return CheckResult(CheckStatus.FAIL, "Logs directory returned corrupted data")
        return CheckResult(CheckStatus.PASS, "Logs directory accessible")

    def _check_upstream(self) -> CheckResult:
        if self.test_mode:
            return CheckResult(CheckStatus.PASS, "Test mode - upstream check relaxed")
        if not self.has_succeeded:
            reason = self.last_error or "no successful refresh yet"
            return CheckResult(CheckStatus.FAIL, f"Upstream not confirmed: {reason}")
        if self.consecutive_failures >= self.failure_threshold:
            return CheckResult(
                CheckStatus.FAIL,
                f"Upstream unreachable for {self.consecutive_failures} refresh cycles: {self.last_error}",
            )
        if self.consecutive_failures:
            return CheckResult(CheckStatus.PASS, f"Upstream reachable ({self.consecutive_failures} recent failures)")
        return CheckResult(CheckStatus.PASS, "Upstream reachable")

    def heartbeat_observation(self, now: Optional[float] = None) -> CheckResult:
        if self.heartbeat is None:
            return CheckResult(CheckStatus.UNKNOWN, "Heartbeat not monitored")
        age = self.heartbeat.seconds_since_last(now)
        if age is None:
            return CheckResult(CheckStatus.UNKNOWN, "No heartbeat recorded yet")
        status = CheckStatus.PASS if age < self.heartbeat.staleness_limit() else CheckStatus.WARN
        return CheckResult(status, f"Last heartbeat {int(age)}s ago")

    # --- evaluation ---

    async def evaluate(self) -> ReadinessState:
        async with self._lock:
            checks: Dict[str, CheckResult] = {
                "environment": self._check_environment(),
                "filesystem": await self._check_filesystem(),
                "upstream": self._check_upstream(),
            }
            ready = all(checks[name].passed for name in REQUIRED_CHECKS)
            previous = self.state
            self.state = ReadinessState(checks=MappingProxyType(checks), ready=ready, evaluated_at=time.time())

        if previous.ready and not ready:
            failing = [f"{n}: {c.reason}" for n, c in checks.items() if not c.passed]
            logger.warning(f"🔴 NOT READY | {'; '.join(failing)}")
        elif ready and not previous.ready:
            logger.info("🟢 READY | all required checks pass")
        return self.state

    def report(self, now: Optional[float] = None, state: Optional[ReadinessState] = None) -> dict:
        """Per-check breakdown for the readiness probe, from `state` or the current one."""
        state = state or self.state
        checks = {name: result.to_dict() for name, result in state.checks.items()}
        heartbeat = self.heartbeat_observation(now)
        checks["heartbeat"] = heartbeat.to_dict()
        if self.heartbeat is not None and self.heartbeat.last_beat is not None:
            checks["heartbeat"]["last_heartbeat"] = self.heartbeat.last_beat
        return {
            "success": state.ready,
            "status": "ready" if state.ready else "not_ready",
            "evaluated_at": state.evaluated_at,
            "checks": checks,
        }
