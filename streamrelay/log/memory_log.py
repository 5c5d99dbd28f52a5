import asyncio
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, List, Optional

from streamrelay.errors import DataExpired
from streamrelay.log.interfaces import Log
from streamrelay.log.throttle import WriteThrottle
from streamrelay.models import Record, utcnow
from streamrelay.utils.logging import get_logger
from streamrelay.utils.metrics import MetricsManager

logger = get_logger("InMemoryLog")


class _Partition:
    def __init__(self) -> None:
        self.records: List[Record] = []
        # Sequence id of records[0]; everything below it has been purged.
        self.base = 0
        self.lock = asyncio.Lock()

    @property
    def next_sequence_id(self) -> int:
        return self.base + len(self.records)


class InMemoryLog(Log):
    """
    Process-local implementation of the Log interface.

    Retention:
    - `retention_seconds`: records older than this are purged.
    - `max_records_per_partition`: size cap, oldest records go first.
    Retention runs after every append and on `enforce_retention()`.
    """

    def __init__(self,
                 num_partitions: int = 4,
                 retention_seconds: Optional[float] = None,
                 max_records_per_partition: Optional[int] = None,
                 write_limit_per_second: Optional[int] = None,
                 clock: Callable[[], datetime] = utcnow):
        self._num_partitions = num_partitions
        self._partitions = [_Partition() for _ in range(num_partitions)]
        self._retention = timedelta(seconds=retention_seconds) if retention_seconds else None
        self._max_records = max_records_per_partition
        self._throttle = WriteThrottle(write_limit_per_second)
        self._clock = clock
        self._metrics = MetricsManager()

    def partitions(self) -> int:
        return self._num_partitions

    async def append(self, partition_id: int, payload: bytes, partition_key: str = "") -> Record:
        self._check_partition(partition_id)
        self._check_payload(payload)
        part = self._partitions[partition_id]

        async with part.lock:
            self._throttle.acquire(partition_id)
            record = Record(
                partition_key=partition_key,
                payload=bytes(payload),
                sequence_id=part.next_sequence_id,
                enqueue_time=self._clock(),
                partition_id=partition_id,
            )
            part.records.append(record)
            self._purge(partition_id, part)

        self._metrics.records_appended.labels(partition=str(partition_id)).inc()
        return record

    async def read(self, partition_id: int, from_sequence_id: int, max_count: int) -> AsyncIterator[Record]:
        self._check_partition(partition_id)
        self._check_read_args(from_sequence_id, max_count)
        part = self._partitions[partition_id]

        end = min(part.next_sequence_id, from_sequence_id + max_count)
        seq = from_sequence_id
        while seq < end:
            # Re-check on every step: retention may have run while the caller held us.
            if seq < part.base:
                raise DataExpired(partition_id, seq, part.base)
            yield part.records[seq - part.base]
            seq += 1

    async def get_high_watermark(self, partition_id: int) -> int:
        self._check_partition(partition_id)
        return self._partitions[partition_id].next_sequence_id

    async def get_low_watermark(self, partition_id: int) -> int:
        self._check_partition(partition_id)
        return self._partitions[partition_id].base

    async def enforce_retention(self) -> int:
        purged = 0
        for p, part in enumerate(self._partitions):
            async with part.lock:
                purged += self._purge(p, part)
        return purged

    def _purge(self, partition_id: int, part: _Partition) -> int:
        drop = 0
        if self._max_records is not None and len(part.records) > self._max_records:
            drop = len(part.records) - self._max_records
        if self._retention is not None:
            cutoff = self._clock() - self._retention
            while drop < len(part.records) and part.records[drop].enqueue_time < cutoff:
                drop += 1
        if drop:
            del part.records[:drop]
            part.base += drop
            logger.debug(f"Partition {partition_id}: purged {drop} records, horizon now {part.base}")
        return drop
