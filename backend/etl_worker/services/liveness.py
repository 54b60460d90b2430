import json
import logging
import os
import socket
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

HEARTBEAT_KEY = "etl:worker:heartbeat"
STATUS_KEY = "etl:worker:status"


@dataclass(frozen=True)
class LivenessStatus:
    is_alive: bool
    last_heartbeat: Optional[str]
    message: str


class LivenessReporter:
    """Publishes and reads the worker heartbeat.

    The heartbeat reflects process liveness only. It is written on a timer
    whether or not a job is running, and the keys carry no expiry so a
    stopped worker reads as "stale" rather than "never reported".
    """

    def __init__(
        self,
        redis: Redis,
        clock: Callable[[], float] = time.time,
        key: str = HEARTBEAT_KEY,
        status_key: str = STATUS_KEY,
    ) -> None:
        self._redis = redis
        self._clock = clock
        self.key = key
        self.status_key = status_key
        self._started_at = clock()

    async def beat(self) -> None:
        now = self._clock()
        status = json.dumps({
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "started_at": datetime.fromtimestamp(self._started_at, timezone.utc).isoformat(),
            "uptime_seconds": int(now - self._started_at),
        })
        try:
            await self._redis.set(self.key, str(int(now * 1000)))
            await self._redis.set(self.status_key, status)
        except Exception as e:
            logger.error("Heartbeat failed: %s", e)

    async def is_alive(self, stale_threshold_sec: int = 60) -> LivenessStatus:
        try:
            raw = await self._redis.get(self.key)
        except Exception as e:
            return LivenessStatus(is_alive=False, last_heartbeat=None, message=f"Heartbeat store unavailable: {e}")

        if raw is None:
            return LivenessStatus(is_alive=False, last_heartbeat=None, message="Worker has never reported a heartbeat")

        try:
            beat_ms = int(json.loads(raw))
        except (TypeError, ValueError):
            return LivenessStatus(is_alive=False, last_heartbeat=None, message=f"Unreadable heartbeat value: {raw!r}")

        last = datetime.fromtimestamp(beat_ms / 1000, timezone.utc).isoformat()
        age = self._clock() - beat_ms / 1000
        if age > stale_threshold_sec:
            minutes = int(age // 60)
            return LivenessStatus(
                is_alive=False,
                last_heartbeat=last,
                message=f"Worker stopped reporting {minutes} minutes ago",
            )
        return LivenessStatus(is_alive=True, last_heartbeat=last, message="Worker is alive")
