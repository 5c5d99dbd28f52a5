import asyncio
from typing import Callable, List, Optional

from streamrelay.checkpoints import InMemoryCheckpointStore
from streamrelay.errors import Throttled
from streamrelay.hooks import ObservabilityHook
from streamrelay.log.memory_log import InMemoryLog
from streamrelay.models import BatchOutcome, Record


class RecordingHook(ObservabilityHook):
    def __init__(self):
        self.outcomes: List[BatchOutcome] = []

    def on_outcome(self, outcome: BatchOutcome) -> None:
        self.outcomes.append(outcome)

    def kinds(self) -> List[str]:
        return [o.kind.value for o in self.outcomes]


class CountingCheckpointStore(InMemoryCheckpointStore):
    def __init__(self):
        super().__init__()
        self.commits: List[tuple] = []

    async def commit(self, consumer_group: str, partition_id: int, sequence_id: int) -> bool:
        self.commits.append((consumer_group, partition_id, sequence_id))
        return await super().commit(consumer_group, partition_id, sequence_id)


class ThrottlingLog(InMemoryLog):
    """Throttles the first `throttle_count` appends."""

    def __init__(self, throttle_count: int, num_partitions: int = 1, throttle_partitions: Optional[set] = None):
        super().__init__(num_partitions=num_partitions)
        self.remaining = throttle_count
        self.throttle_partitions = throttle_partitions
        self.attempts = 0

    async def append(self, partition_id: int, payload: bytes, partition_key: str = "") -> Record:
        self.attempts += 1
        if self.throttle_partitions is None or partition_id in self.throttle_partitions:
            if self.remaining != 0:
                self.remaining -= 1
                raise Throttled(f"partition {partition_id} throttled")
        return await super().append(partition_id, payload, partition_key)


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
