from abc import ABC, abstractmethod
from typing import AsyncIterator
from streamrelay.errors import InvalidArgument, InvalidState
from streamrelay.models import Record


class Log(ABC):
    """
    Abstract interface for a partitioned, append-only record log.

    Sequence ids start at 0 in every partition and increase by one per
    append. They are never reused, not even after retention purged the
    records that carried them.
    """

    @abstractmethod
    def partitions(self) -> int:
        """Return the number of partitions."""
        pass

    @abstractmethod
    async def append(self, partition_id: int, payload: bytes, partition_key: str = "") -> Record:
        """
        Append a payload to a partition and return the stored record.

        Raises:
            InvalidState: the partition does not exist.
            InvalidArgument: the payload is not bytes.
            Throttled: the partition's write limit is currently exceeded.
        """
        pass

    @abstractmethod
    def read(self, partition_id: int, from_sequence_id: int, max_count: int) -> AsyncIterator[Record]:
        """
        Lazily yield up to `max_count` records starting at `from_sequence_id`.

        Yields nothing when `from_sequence_id` is at or past the tail.
        Raises DataExpired (on iteration) when `from_sequence_id` is below
        the purge horizon.
        """
        pass

    @abstractmethod
    async def get_high_watermark(self, partition_id: int) -> int:
        """The sequence id the next append to this partition will receive."""
        pass

    @abstractmethod
    async def get_low_watermark(self, partition_id: int) -> int:
        """The lowest sequence id that can still be read (the purge horizon)."""
        pass

    @abstractmethod
    async def enforce_retention(self) -> int:
        """Purge records outside the retention policy. Returns the number purged."""
        pass

    async def close(self) -> None:
        pass

    async def __aenter__(self) -> "Log":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _check_partition(self, partition_id: int) -> None:
        if isinstance(partition_id, bool) or not isinstance(partition_id, int) \
                or not 0 <= partition_id < self.partitions():
            raise InvalidState(f"Partition {partition_id!r} does not exist (partitions: {self.partitions()})")

    @staticmethod
    def _check_payload(payload: bytes) -> None:
        if not isinstance(payload, (bytes, bytearray)):
            raise InvalidArgument(f"Payload must be bytes, got {type(payload).__name__}")

    @staticmethod
    def _check_read_args(from_sequence_id: int, max_count: int) -> None:
        if from_sequence_id < 0:
            raise InvalidArgument(f"from_sequence_id must be >= 0, got {from_sequence_id}")
        if max_count <= 0:
            raise InvalidArgument(f"max_count must be > 0, got {max_count}")
