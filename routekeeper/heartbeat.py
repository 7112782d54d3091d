# routekeeper/heartbeat.py
import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional

import aiofiles

from .errors import HeartbeatWriteError
from .models import HeartbeatRecord

logger = logging.getLogger(__name__)

HEARTBEAT_TAG = "[heartbeat]"


class HeartbeatLog:
    """
    Append-only heartbeat file. The handle is opened on `async with` entry and
    closed on every exit path. After a failed write the handle is dropped and
    reopened by the next append.
    """
    def __init__(self, filepath: str):
        self.filepath = filepath
        self._handle = None

    async def open(self):
        directory = os.path.dirname(self.filepath)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)
        self._handle = await aiofiles.open(self.filepath, mode='a')

    async def close(self):
        handle, self._handle = self._handle, None
        if handle is not None:
            await handle.close()

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def append(self, record: HeartbeatRecord):
        stamp = datetime.fromtimestamp(record.timestamp, tz=timezone.utc).isoformat()
        try:
            if self._handle is None:
                await self.open()
            await self._handle.write(f"{HEARTBEAT_TAG} {stamp}\n")
            await self._handle.flush()
        except OSError:
            try:
                await self.close()
            except OSError:
                logger.debug("Heartbeat handle close failed after write error")
            raise


class HeartbeatMonitor:
    """
    Emits liveness records and answers "how long since the last one?".

    There is no internal limit on emissions; the scheduler stops calling
    `beat` only at shutdown.
    """
    def __init__(self, sink: HeartbeatLog, interval: float = 5.0):
        self.sink = sink
        self.interval = interval
        self.started_at = time.time()
        self.count = 0
        self.write_failures = 0
        self.last_beat: Optional[float] = None

    async def beat(self, now: Optional[float] = None) -> HeartbeatRecord:
        record = HeartbeatRecord(timestamp=time.time() if now is None else now)
        try:
            await self.sink.append(record)
        except OSError as e:
            self.write_failures += 1
            raise HeartbeatWriteError(f"heartbeat write to {self.sink.filepath} failed: {e}", e) from e
        self.count += 1
        self.last_beat = record.timestamp
        return record

    def seconds_since_last(self, now: Optional[float] = None) -> Optional[float]:
        if self.last_beat is None:
            return None
        return max(0.0, (time.time() if now is None else now) - self.last_beat)

    def staleness_limit(self) -> float:
        """Age beyond which the heartbeat is reported as lagging."""
        return self.interval * 2
