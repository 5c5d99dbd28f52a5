import base64
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Record(BaseModel):
    """
    A record as stored in the log. Immutable once appended.
    """
    model_config = ConfigDict(frozen=True)

    partition_key: str
    payload: bytes
    sequence_id: int
    enqueue_time: datetime
    partition_id: int

    def text(self, encoding: str = "utf-8") -> str:
        return self.payload.decode(encoding)


class Batch(BaseModel):
    """
    An ordered, non-empty slice of records from a single partition.
    Handed to a handler as a unit and acknowledged all-or-nothing.
    """
    model_config = ConfigDict(frozen=True)

    partition_id: int
    records: Tuple[Record, ...] = Field(min_length=1)

    @property
    def first_sequence_id(self) -> int:
        return self.records[0].sequence_id

    @property
    def last_sequence_id(self) -> int:
        return self.records[-1].sequence_id

    def __len__(self) -> int:
        return len(self.records)


class Checkpoint(BaseModel):
    consumer_group: str
    partition_id: int
    sequence_id: Optional[int] = None


class SendResult(BaseModel):
    partition_id: int
    sequence_id: int


class ProducerEntry(BaseModel):
    partition_key: str
    payload: bytes


EntryLike = Union[ProducerEntry, Tuple[str, bytes]]


class RecordStatus(BaseModel):
    """Per-record result of a batched send."""
    index: int
    partition_key: str
    partition_id: Optional[int] = None
    sequence_id: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_code is None


class DeadLetterEntry(BaseModel):
    """
    A batch whose handler retries were exhausted.
    Payloads are kept base64-encoded so an operator can replay them.
    """
    consumer_group: str
    partition_id: int
    first_sequence_id: int
    last_sequence_id: int
    last_error: str
    attempts: int
    failed_at: datetime = Field(default_factory=utcnow)
    payloads: List[str] = Field(default_factory=list)

    @classmethod
    def from_batch(cls, consumer_group: str, batch: Batch, last_error: str, attempts: int) -> "DeadLetterEntry":
        return cls(
            consumer_group=consumer_group,
            partition_id=batch.partition_id,
            first_sequence_id=batch.first_sequence_id,
            last_sequence_id=batch.last_sequence_id,
            last_error=last_error,
            attempts=attempts,
            payloads=[base64.b64encode(r.payload).decode("ascii") for r in batch.records],
        )


class OutcomeKind(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"
    EXPIRED = "expired"


class BatchOutcome(BaseModel):
    """Event reported to observability hooks after each dispatch step."""
    kind: OutcomeKind
    consumer_group: str
    partition_id: int
    first_sequence_id: int
    last_sequence_id: int
    record_count: int = 0
    attempt: int = 0
    error: Optional[str] = None
    duration_s: float = 0.0
    batch: Optional[Batch] = None
