import asyncio
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from opentelemetry import trace

from streamrelay.errors import DeliveryFailed, InvalidArgument, RelayError, Throttled
from streamrelay.log.interfaces import Log
from streamrelay.models import EntryLike, ProducerEntry, RecordStatus, SendResult
from streamrelay.partitioner import Partitioner
from streamrelay.utils.logging import get_logger
from streamrelay.utils.metrics import MetricsManager
from streamrelay.utils.retry import backoff_delay
from streamrelay.utils.tracing import get_tracer

logger = get_logger("Producer")

MAX_KEY_LENGTH = 256
MAX_BATCH_ENTRIES = 500


class ProducerClient:
    """
    Submits records to a Log.

    Throttled appends are retried with exponential backoff and jitter, up to
    `max_attempts` attempts in total. Running out of attempts raises
    DeliveryFailed; a record is never dropped without the caller knowing.

    Attributes:
        log (Log): The log to append to.
        partitioner (Callable[[str], int]): Maps a partition key to a partition id.
    """

    def __init__(self,
                 log: Log,
                 partitioner: Optional[Callable[[str], int]] = None,
                 max_attempts: int = 5,
                 base_delay_s: float = 0.1,
                 max_delay_s: float = 5.0,
                 backoff_factor: float = 2.0,
                 jitter: bool = True,
                 max_payload_bytes: int = 1024 * 1024):
        if max_attempts <= 0:
            raise InvalidArgument(f"max_attempts must be > 0, got {max_attempts}")
        self.log = log
        self.partitioner = partitioner or Partitioner(log.partitions())
        self.max_attempts = max_attempts
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.backoff_factor = backoff_factor
        self.jitter = jitter
        self.max_payload_bytes = max_payload_bytes
        self.metrics = MetricsManager()
        self.tracer = get_tracer("producer")

    def _validate(self, partition_key: str, payload: bytes) -> None:
        if not isinstance(partition_key, str) or not partition_key:
            raise InvalidArgument("Partition key must be a non-empty string")
        if len(partition_key) > MAX_KEY_LENGTH:
            raise InvalidArgument(f"Partition key longer than {MAX_KEY_LENGTH} characters")
        if not isinstance(payload, (bytes, bytearray)):
            raise InvalidArgument(f"Payload must be bytes, got {type(payload).__name__}")
        if len(payload) > self.max_payload_bytes:
            raise InvalidArgument(f"Payload of {len(payload)} bytes exceeds {self.max_payload_bytes}")

    async def send(self, partition_key: str, payload: bytes) -> SendResult:
        """
        Append one record.

        Raises:
            InvalidArgument: bad key or payload (not retried).
            InvalidState: the resolved partition does not exist (not retried).
            DeliveryFailed: the log kept throttling until attempts ran out.
        """
        self._validate(partition_key, payload)
        partition_id = self.partitioner(partition_key)
        return await self._append_with_retry(partition_id, partition_key, payload)

    async def _append_with_retry(self, partition_id: int, partition_key: str, payload: bytes) -> SendResult:
        with self.tracer.start_as_current_span(
            "producer.send",
            attributes={"messaging.destination.partition.id": partition_id},
        ) as span:
            attempt = 0
            while True:
                attempt += 1
                try:
                    record = await self.log.append(partition_id, payload, partition_key)
                    span.set_attribute("messaging.message.id", record.sequence_id)
                    return SendResult(partition_id=partition_id, sequence_id=record.sequence_id)
                except Throttled as e:
                    if attempt >= self.max_attempts:
                        self.metrics.producer_failures.labels(code=DeliveryFailed.code).inc()
                        span.set_status(trace.Status(trace.StatusCode.ERROR))
                        logger.error(f"Giving up on partition {partition_id} after {attempt} attempts: {e}")
                        raise DeliveryFailed(
                            f"Record for partition {partition_id} not delivered after {attempt} attempts: {e}",
                            attempts=attempt,
                        ) from e
                    delay = backoff_delay(attempt, self.base_delay_s, self.max_delay_s,
                                          self.backoff_factor, self.jitter)
                    self.metrics.producer_retries.inc()
                    logger.warning(
                        f"Append to partition {partition_id} throttled "
                        f"(attempt {attempt}/{self.max_attempts}). Retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)

    async def send_batch(self, entries: Sequence[EntryLike]) -> List[RecordStatus]:
        """
        Submit several records, possibly for different partitions, in one call.

        Each partition's sub-batch is appended in input order, independently of
        (and concurrently with) the other partitions. Once a record fails, the
        rest of its partition's sub-batch is not attempted so that partition
        order is preserved. Returns one status per entry, in input order.
        """
        if len(entries) > MAX_BATCH_ENTRIES:
            raise InvalidArgument(f"A batch holds at most {MAX_BATCH_ENTRIES} records, got {len(entries)}")

        statuses: List[Optional[RecordStatus]] = [None] * len(entries)
        by_partition: Dict[int, List[int]] = OrderedDict()
        normalized: List[Tuple[str, bytes]] = []

        for i, entry in enumerate(entries):
            if isinstance(entry, ProducerEntry):
                key, payload = entry.partition_key, entry.payload
            else:
                key, payload = entry
            normalized.append((key, payload))
            try:
                self._validate(key, payload)
                partition_id = self.partitioner(key)
            except InvalidArgument as e:
                statuses[i] = RecordStatus(index=i, partition_key=str(key), error_code=e.code, error_message=str(e))
                continue
            by_partition.setdefault(partition_id, []).append(i)

        async def _send_partition(partition_id: int, indices: List[int]) -> None:
            failed: Optional[Exception] = None
            for i in indices:
                key, payload = normalized[i]
                if failed is not None:
                    statuses[i] = RecordStatus(
                        index=i, partition_key=key, partition_id=partition_id,
                        error_code=DeliveryFailed.code,
                        error_message=f"Not attempted after earlier failure: {failed}",
                    )
                    continue
                try:
                    result = await self._append_with_retry(partition_id, key, payload)
                    statuses[i] = RecordStatus(
                        index=i, partition_key=key,
                        partition_id=partition_id, sequence_id=result.sequence_id,
                    )
                except RelayError as e:
                    failed = e
                    statuses[i] = RecordStatus(
                        index=i, partition_key=key, partition_id=partition_id,
                        error_code=e.code, error_message=str(e),
                    )
                except Exception as e:
                    logger.exception(f"Unexpected error appending to partition {partition_id}")
                    failed = e
                    statuses[i] = RecordStatus(
                        index=i, partition_key=key, partition_id=partition_id,
                        error_code=type(e).__name__, error_message=str(e),
                    )

        await asyncio.gather(*(_send_partition(p, idx) for p, idx in by_partition.items()))

        failed_count = sum(1 for s in statuses if s is not None and not s.ok)
        if failed_count:
            logger.warning(f"Batch send: {failed_count}/{len(entries)} records failed")
        return statuses
