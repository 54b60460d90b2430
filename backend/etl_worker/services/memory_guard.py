import gc
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import psutil

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


@dataclass(frozen=True)
class MemoryStatus:
    used_mb: int
    ok: bool


def _process_rss() -> int:
    return psutil.Process().memory_info().rss


class MemoryGuard:
    """Resident-memory budget for the worker process.

    `probe` returns bytes in use and `reclaimer` performs a collection pass;
    both default to the real process and are swapped out in tests.
    """

    def __init__(
        self,
        max_memory_mb: int = 1024,
        probe: Optional[Callable[[], int]] = None,
        reclaimer: Optional[Callable[[], object]] = None,
    ) -> None:
        self.max_memory_mb = max_memory_mb
        self._probe = probe or _process_rss
        self._reclaimer = reclaimer or gc.collect

    def check_memory(self) -> MemoryStatus:
        try:
            used_mb = round(self._probe() / _MB)
        except Exception as e:
            logger.warning("Memory probe failed, assuming within budget: %s", e)
            return MemoryStatus(used_mb=0, ok=True)
        ok = used_mb < self.max_memory_mb
        if not ok:
            logger.warning("High memory usage detected: %d MB (limit %d MB)", used_mb, self.max_memory_mb)
        return MemoryStatus(used_mb=used_mb, ok=ok)

    def force_reclaim(self) -> None:
        try:
            collected = self._reclaimer()
            logger.debug("Manual garbage collection triggered (%s objects)", collected)
        except Exception as e:
            logger.warning("Garbage collection request failed: %s", e)
