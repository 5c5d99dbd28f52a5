import time
from typing import Callable, Dict, Optional
from streamrelay.errors import Throttled


class WriteThrottle:
    """
    Per-partition write limit using a fixed one-second window.
    Exceeding the limit raises Throttled; callers are expected to back off.
    """

    def __init__(self, limit_per_second: Optional[int], clock: Callable[[], float] = time.monotonic):
        self.limit = limit_per_second
        self._clock = clock
        self._windows: Dict[int, float] = {}
        self._counts: Dict[int, int] = {}

    def acquire(self, partition_id: int) -> None:
        if not self.limit:
            return
        now = self._clock()
        start = self._windows.get(partition_id)
        if start is None or now - start >= 1.0:
            self._windows[partition_id] = now
            self._counts[partition_id] = 0
        if self._counts[partition_id] >= self.limit:
            raise Throttled(f"Partition {partition_id} exceeded {self.limit} writes/second")
        self._counts[partition_id] += 1
