import base64
import binascii
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from streamrelay.dispatcher import Handler, PartitionState
from streamrelay.errors import (
    DataExpired,
    DeliveryFailed,
    InvalidArgument,
    InvalidState,
    RelayError,
    Throttled,
)
from streamrelay.models import DeadLetterEntry
from streamrelay.relay import StreamRelay
from streamrelay.utils.logging import get_logger
from streamrelay.utils.metrics import MetricsManager

logger = get_logger("API")

_STATUS_BY_ERROR = {
    InvalidArgument: 400,
    InvalidState: 404,
    DataExpired: 410,
    Throttled: 429,
    DeliveryFailed: 503,
}


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _decode_base64(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise ValueError(f"payload must be base64: {e}")


class PutRecordRequest(CamelModel):
    partition_key: str
    payload: bytes = Field(description="Base64-encoded record payload")

    @field_validator("payload", mode="before")
    @classmethod
    def _payload_from_base64(cls, v: Any) -> bytes:
        if isinstance(v, str):
            return _decode_base64(v)
        raise ValueError("payload must be a base64 string")


class PutRecordResponse(CamelModel):
    sequence_id: int
    partition_id: int


class PutRecordsRequest(CamelModel):
    records: List[PutRecordRequest] = Field(min_length=1)


class PutRecordsResultEntry(CamelModel):
    partition_id: Optional[int] = None
    sequence_id: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class PutRecordsResponse(CamelModel):
    failed_record_count: int
    records: List[PutRecordsResultEntry]


class RecordView(CamelModel):
    sequence_id: int
    partition_key: str
    payload: str
    enqueue_time: datetime


class CheckpointView(CamelModel):
    consumer_group: str
    partition_id: int
    sequence_id: Optional[int] = None


class CheckpointReset(CamelModel):
    sequence_id: Optional[int] = None


def _problem(status: int, title: str, detail: str) -> Dict[str, Any]:
    return {"type": "about:blank", "status": status, "title": title, "detail": detail}


def create_app(relay: StreamRelay, consumers: Optional[Dict[str, Handler]] = None) -> FastAPI:
    """
    Creates the ingest and admin API around a relay.
    The relay is started on application startup and closed on shutdown.

    Args:
        relay: The relay whose producer, log and stores are exposed.
        consumers: Handlers to run in-process, keyed by consumer group.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await relay.start()
        for group, handler in (consumers or {}).items():
            await relay.consumer(handler, group).start()
        try:
            yield
        finally:
            await relay.close()

    app = FastAPI(title="streamrelay API", version="0.1.0", lifespan=lifespan)

    @app.exception_handler(RelayError)
    async def relay_error_handler(_: Request, exc: RelayError) -> JSONResponse:
        status = next((s for cls, s in _STATUS_BY_ERROR.items() if isinstance(exc, cls)), 500)
        if status >= 500:
            logger.error(f"{exc.code}: {exc}")
        return JSONResponse(status_code=status, content=_problem(status, exc.code, str(exc)),
                            media_type="application/problem+json")

    @app.post("/records", response_model=PutRecordResponse)
    async def put_record(body: PutRecordRequest) -> PutRecordResponse:
        """Append one record; the partition is derived from the partition key."""
        result = await relay.producer.send(body.partition_key, body.payload)
        return PutRecordResponse(sequence_id=result.sequence_id, partition_id=result.partition_id)

    @app.post("/records/batch", response_model=PutRecordsResponse)
    async def put_records(body: PutRecordsRequest) -> PutRecordsResponse:
        """Append several records; failures are reported per record."""
        statuses = await relay.producer.send_batch([(r.partition_key, r.payload) for r in body.records])
        return PutRecordsResponse(
            failed_record_count=sum(1 for s in statuses if not s.ok),
            records=[
                PutRecordsResultEntry(
                    partition_id=s.partition_id,
                    sequence_id=s.sequence_id,
                    error_code=s.error_code,
                    error_message=s.error_message,
                )
                for s in statuses
            ],
        )

    @app.get("/partitions/{partition_id}/records", response_model=List[RecordView])
    async def read_records(partition_id: int,
                           from_sequence_id: int = Query(0, alias="fromSequenceId"),
                           limit: int = Query(100, gt=0, le=10_000)) -> List[RecordView]:
        return [
            RecordView(
                sequence_id=r.sequence_id,
                partition_key=r.partition_key,
                payload=base64.b64encode(r.payload).decode("ascii"),
                enqueue_time=r.enqueue_time,
            )
            async for r in relay.log.read(partition_id, from_sequence_id, limit)
        ]

    @app.get("/checkpoints/{consumer_group}/{partition_id}", response_model=CheckpointView)
    async def get_checkpoint(consumer_group: str, partition_id: int) -> CheckpointView:
        sequence_id = await relay.checkpoints.get(consumer_group, partition_id)
        return CheckpointView(consumer_group=consumer_group, partition_id=partition_id, sequence_id=sequence_id)

    @app.put("/checkpoints/{consumer_group}/{partition_id}", response_model=CheckpointView)
    async def reset_checkpoint(consumer_group: str, partition_id: int, body: CheckpointReset) -> CheckpointView:
        """Operator reset. May move the checkpoint backward or clear it."""
        await relay.checkpoints.reset(consumer_group, partition_id, body.sequence_id)
        return CheckpointView(consumer_group=consumer_group, partition_id=partition_id,
                              sequence_id=body.sequence_id)

    @app.get("/dead-letters", response_model=List[DeadLetterEntry])
    async def list_dead_letters(limit: Optional[int] = Query(None, gt=0)) -> List[DeadLetterEntry]:
        return await relay.dead_letter.list(limit)

    @app.get("/health")
    async def health_check() -> Dict[str, Any]:
        halted = [
            f"{group}/{p}"
            for group, d in relay.dispatchers.items()
            for p, s in d.status().items()
            if s.state is PartitionState.HALTED
        ]
        return {"status": "degraded" if halted else "ok", "halted_partitions": halted}

    @app.get("/control/status")
    async def control_status() -> Dict[str, Any]:
        return {
            group: {str(p): s.model_dump(mode="json") for p, s in d.status().items()}
            for group, d in relay.dispatchers.items()
        }

    @app.post("/control/{consumer_group}/partitions/{partition_id}/resume")
    async def resume_partition(consumer_group: str, partition_id: int) -> Dict[str, str]:
        await relay.dispatcher(consumer_group).resume_partition(partition_id)
        return {"status": "resumed"}

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=MetricsManager().exposition(), media_type=CONTENT_TYPE_LATEST)

    return app
