import json
import logging
import os
import socket
from datetime import datetime, timezone
from typing import Optional

from redis.asyncio import Redis

from etl_worker.exceptions import LockStoreUnavailable

logger = logging.getLogger(__name__)

LOCK_PREFIX = "etl:lock:"
CANCEL_PREFIX = "etl:cancel:"

# delete the lock only while it still holds the value this manager wrote
_RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


class DatasetLockManager:
    """Per-dataset exclusive lock plus per-job cancel flags, both in Redis.

    The lock TTL is a ceiling for crashed holders, not an estimate of job
    length; it is never extended. A holder whose lock expired and was taken
    by another job cannot release the newer lock.
    """

    def __init__(self, redis: Redis, ttl_seconds: int = 3600, cancel_ttl_seconds: int = 3600) -> None:
        self._redis = redis
        self.ttl_seconds = ttl_seconds
        self.cancel_ttl_seconds = cancel_ttl_seconds
        self._held: dict[str, str] = {}

    async def acquire(self, dataset_id: str, job_id: Optional[int] = None) -> bool:
        """Take the dataset lock without waiting.

        Returns False when another job holds it; raises LockStoreUnavailable
        when Redis cannot be reached, so the two cases stay distinguishable.
        """
        key = f"{LOCK_PREFIX}{dataset_id}"
        holder = json.dumps({
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "job_id": job_id,
            "started_at": datetime.now(timezone.utc).isoformat(),
        })
        try:
            acquired = await self._redis.set(key, holder, nx=True, ex=self.ttl_seconds)
        except Exception as e:
            logger.error("Failed to acquire lock for dataset %s: %s", dataset_id, e)
            raise LockStoreUnavailable(f"Lock store unavailable for dataset {dataset_id}: {e}") from e
        if acquired:
            self._held[dataset_id] = holder
            logger.info("Dataset lock acquired: %s (job %s)", dataset_id, job_id)
            return True
        logger.warning("Dataset %s already locked by %s", dataset_id, await self.holder(dataset_id))
        return False

    async def release(self, dataset_id: str) -> None:
        holder = self._held.pop(dataset_id, None)
        if holder is None:
            logger.warning("Dataset lock %s was not acquired here, leaving it alone", dataset_id)
            return
        try:
            released = await self._redis.eval(_RELEASE_SCRIPT, 1, f"{LOCK_PREFIX}{dataset_id}", holder)
        except Exception as e:
            logger.error("Failed to release lock for dataset %s: %s", dataset_id, e)
            return
        if released:
            logger.info("Dataset lock released: %s", dataset_id)
        else:
            logger.warning("Dataset lock %s expired or was taken over before release", dataset_id)

    async def holder(self, dataset_id: str) -> Optional[dict]:
        try:
            raw = await self._redis.get(f"{LOCK_PREFIX}{dataset_id}")
        except Exception as e:
            logger.warning("Could not read lock holder for dataset %s: %s", dataset_id, e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return {"raw": raw}

    async def request_cancel(self, job_id: int) -> None:
        await self._redis.set(f"{CANCEL_PREFIX}{job_id}", "true", ex=self.cancel_ttl_seconds)
        logger.info("Cancel signal sent for job %s", job_id)

    async def is_cancelled(self, job_id: int) -> bool:
        try:
            return await self._redis.get(f"{CANCEL_PREFIX}{job_id}") == "true"
        except Exception as e:
            logger.warning("Could not read cancel flag for job %s: %s", job_id, e)
            return False

    async def clear_cancel(self, job_id: int) -> None:
        try:
            await self._redis.delete(f"{CANCEL_PREFIX}{job_id}")
        except Exception as e:
            logger.warning("Could not clear cancel flag for job %s: %s", job_id, e)
