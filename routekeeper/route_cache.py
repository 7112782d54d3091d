# routekeeper/route_cache.py
import json
import logging
import os
import threading
import time
from typing import Optional

import aiofiles

from .errors import PublishRaceDetected
from .models import Snapshot

logger = logging.getLogger(__name__)


class RouteCache:
    """
    Holds the one current Snapshot.

    Readers get whatever reference is installed, without locking. The single
    writer swaps in a fully built Snapshot in one assignment, so a reader sees
    either the old or the new snapshot and never a mix. Generations only move
    forward.
    """
    def __init__(self):
        self._current: Optional[Snapshot] = None
        self._write_lock = threading.Lock()

    def current(self) -> Optional[Snapshot]:
        return self._current

    def publish(self, snapshot: Snapshot):
        with self._write_lock:
            installed = self._current
            if installed is not None and snapshot.generation <= installed.generation:
                raise PublishRaceDetected(
                    f"generation {snapshot.generation} published over {installed.generation}"
                )
            self._current = snapshot
        logger.info(f"📦 PUBLISHED gen {snapshot.generation} | {len(snapshot.routes)} routes"
                    f"{' (partial)' if snapshot.partial else ''}")

    @property
    def generation(self) -> int:
        snap = self._current
        return snap.generation if snap is not None else 0

    def is_stale(self, threshold: float, now: Optional[float] = None) -> bool:
        """True when nothing is published yet or the snapshot is older than `threshold`."""
        snap = self._current
        if snap is None:
            return True
        return snap.age(now) > threshold


class SnapshotWriter:
    """
    Overwrites the route snapshot file. Writes go to a sibling temp file
    first so the target is always a complete JSON document.
    """
    def __init__(self, filepath: str):
        self.filepath = filepath

    async def write(self, snapshot: Snapshot):
        directory = os.path.dirname(self.filepath)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)

        payload = snapshot.to_dict()
        payload["written_at"] = time.time()
        tmp_path = f"{self.filepath}.tmp"
        async with aiofiles.open(tmp_path, mode='w') as f:
            await f.write(json.dumps(payload, indent=2))
        os.replace(tmp_path, self.filepath)
