import json
from typing import Any, List

from streamrelay.errors import HandlerFailure
from streamrelay.models import Batch
from streamrelay.utils.logging import get_logger

logger = get_logger("handlers")


def decode_record_payload(payload: bytes) -> Any:
    """UTF-8 JSON payload -> Python object. Raises ValueError on bad input."""
    return json.loads(payload.decode("utf-8"))


async def log_records(batch: Batch) -> None:
    """
    Default consumer: decode every record of the batch as UTF-8 JSON and log it.

    The batch is decoded up front, so a single undecodable record fails the
    whole batch (and, after retries, dead-letters it) instead of being
    logged and forgotten.
    """
    decoded: List[Any] = []
    for record in batch.records:
        try:
            decoded.append(decode_record_payload(record.payload))
        except ValueError as e:
            raise HandlerFailure(
                f"Record {record.sequence_id} of partition {record.partition_id} is not UTF-8 JSON: {e}"
            ) from e

    for record, value in zip(batch.records, decoded):
        logger.info(
            f"[partitionKey={record.partition_key}]:[sequenceNumber={record.sequence_id}] {json.dumps(value)}",
            extra={"partition_id": record.partition_id, "enqueue_time": record.enqueue_time.isoformat()},
        )
