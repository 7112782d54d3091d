# routekeeper/logger.py
import asyncio
import logging
import os
import sys
from typing import Any, List, Optional

import aiofiles
from aiocsv import AsyncWriter

ACTIVITY_HEADER = ["timestamp", "generation", "outcome", "edges", "routes", "duration_ms", "detail"]


class ActivityLog:
    """
    Append-only CSV record of refresh cycles.
    Rows are queued by the scheduler and written by a background worker so a
    slow disk never holds up the refresh loop.
    """
    def __init__(self, filepath: str):
        self.filepath = filepath
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None
        self.logger = logging.getLogger("routekeeper.activity")

    async def start(self):
        directory = os.path.dirname(self.filepath)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)

        if not os.path.exists(self.filepath) or os.path.getsize(self.filepath) == 0:
            async with aiofiles.open(self.filepath, mode='a', newline='') as f:
                await AsyncWriter(f, dialect='unix').writerow(ACTIVITY_HEADER)
        self._worker_task = asyncio.create_task(self._writer_worker())

    def record(self, row: List[Any]):
        """Non-blocking; the row is written by the worker."""
        self._queue.put_nowait(row)

    async def _writer_worker(self):
        while True:
            row = await self._queue.get()
            try:
                async with aiofiles.open(self.filepath, mode='a', newline='') as f:
                    writer = AsyncWriter(f, dialect='unix')
                    await writer.writerow(row)
            except OSError as e:
                # Activity rows are best effort; readiness covers the disk
                self.logger.error(f"Activity log write failed: {e}")
            finally:
                self._queue.task_done()

    async def stop(self):
        """Drains queued rows, then stops the worker."""
        if self._worker_task is None:
            return
        await self._queue.join()
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None


def setup_console_logger(name: str, level: str):
    """
    Sets up the standard Python logger for console output.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(module)s | %(message)s')
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
