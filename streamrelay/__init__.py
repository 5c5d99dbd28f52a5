from streamrelay.partitioner import assign, Partitioner
from streamrelay.models import Record, Batch, SendResult, RecordStatus, DeadLetterEntry, BatchOutcome
from streamrelay.log.memory_log import InMemoryLog
from streamrelay.log.local_log import LocalLog
from streamrelay.producer import ProducerClient
from streamrelay.checkpoints import InMemoryCheckpointStore, FileCheckpointStore, SQLiteCheckpointStore
from streamrelay.dispatcher import ConsumerDispatcher, DispatcherConfig, PartitionState
from streamrelay.relay import StreamRelay
from streamrelay.settings import settings

__version__ = "0.1.0"

__all__ = [
    "assign",
    "Partitioner",
    "Record",
    "Batch",
    "SendResult",
    "RecordStatus",
    "DeadLetterEntry",
    "BatchOutcome",
    "InMemoryLog",
    "LocalLog",
    "ProducerClient",
    "InMemoryCheckpointStore",
    "FileCheckpointStore",
    "SQLiteCheckpointStore",
    "ConsumerDispatcher",
    "DispatcherConfig",
    "PartitionState",
    "StreamRelay",
    "settings",
]
