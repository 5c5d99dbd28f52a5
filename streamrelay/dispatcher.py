import asyncio
import inspect
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Literal, Optional, Sequence, Union

from opentelemetry import trace
from pydantic import BaseModel

from streamrelay.checkpoints import CheckpointStore
from streamrelay.dead_letter import DeadLetterSink, InMemoryDeadLetterSink
from streamrelay.errors import DataExpired, HandlerFailure, InvalidState
from streamrelay.hooks import LoggingHook, MetricsHook, ObservabilityHook
from streamrelay.log.interfaces import Log
from streamrelay.models import Batch, BatchOutcome, DeadLetterEntry, OutcomeKind
from streamrelay.utils.logging import get_logger
from streamrelay.utils.metrics import MetricsManager
from streamrelay.utils.retry import backoff_delay
from streamrelay.utils.tracing import get_tracer

logger = get_logger("Dispatcher")

Handler = Callable[[Batch], Union[Awaitable[Optional[bool]], Optional[bool]]]


class PartitionState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    DELIVERING = "delivering"
    RETRYING = "retrying"
    COMMITTING = "committing"
    HALTED = "halted"
    STOPPED = "stopped"


@dataclass
class DispatcherConfig:
    """
    Attributes:
        batch_size: Max records handed to the handler at once.
        poll_interval_s: Sleep after an empty poll.
        max_retries: Retries of a failed batch before it is dead-lettered
            (a batch gets max_retries + 1 attempts in total).
        retry_backoff_s: Delay before the first retry; doubles per retry.
        retry_backoff_max_s: Upper bound for the retry delay.
        handler_timeout_s: Deadline per handler call. None disables it.
        start_position: Where a group with no checkpoint starts reading.
        partitions: Subset of partitions to consume. None means all.
    """
    batch_size: int = 100
    poll_interval_s: float = 0.5
    max_retries: int = 5
    retry_backoff_s: float = 0.5
    retry_backoff_max_s: float = 30.0
    handler_timeout_s: Optional[float] = 30.0
    start_position: Literal["earliest", "latest"] = "earliest"
    partitions: Optional[Sequence[int]] = None


class PartitionStatus(BaseModel):
    partition_id: int
    state: PartitionState
    position: Optional[int] = None
    last_error: Optional[str] = None


class PartitionWorker:
    """
    Drives one partition through POLLING -> DELIVERING -> COMMITTING.

    Exactly one worker exists per partition at a time; the dispatcher enforces
    it. The stop signal is only honoured between batches, so a checkpoint is
    never written for a batch the handler has not fully accepted.
    """

    def __init__(self, dispatcher: "ConsumerDispatcher", partition_id: int, resume_from: Optional[int] = None):
        self.dispatcher = dispatcher
        self.partition_id = partition_id
        # Position of the previous worker of this partition, if any
        self.resume_from = resume_from
        self.state = PartitionState.IDLE
        # Next sequence id to read
        self.position: Optional[int] = None
        self.last_error: Optional[str] = None

    @property
    def _cfg(self) -> DispatcherConfig:
        return self.dispatcher.config

    @property
    def _group(self) -> str:
        return self.dispatcher.consumer_group

    async def run(self) -> None:
        stop = self.dispatcher._stop_event
        try:
            self.position = await self._initial_position()
            logger.info(f"Partition {self.partition_id} ({self._group}) starting at sequence {self.position}")

            while not stop.is_set():
                self.state = PartitionState.POLLING
                batch = await self._poll()
                if batch is None:
                    self.state = PartitionState.IDLE
                    await self._idle()
                    continue

                if not await self._deliver(batch):
                    self.state = PartitionState.HALTED
                    logger.error(f"Partition {self.partition_id} ({self._group}) halted; operator action required")
                    return

                self.state = PartitionState.COMMITTING
                if not await self._commit(batch):
                    # Stopped while the commit kept failing; the batch will be redelivered.
                    break
                self.position = batch.last_sequence_id + 1
                self.state = PartitionState.IDLE

            self.state = PartitionState.STOPPED
        except asyncio.CancelledError:
            self.state = PartitionState.STOPPED
            raise
        except Exception as e:
            self.state = PartitionState.HALTED
            self.last_error = f"{type(e).__name__}: {e}"
            self.dispatcher.metrics.partition_halted.labels(
                group=self._group, partition=str(self.partition_id)
            ).set(1)
            logger.exception(f"Partition {self.partition_id} ({self._group}) worker crashed")

    async def _initial_position(self) -> int:
        d = self.dispatcher
        committed = await d.checkpoints.get(self._group, self.partition_id)
        if committed is not None:
            return committed + 1
        if self.resume_from is not None:
            return self.resume_from
        if self._cfg.start_position == "latest":
            return await d.log.get_high_watermark(self.partition_id)
        return await d.log.get_low_watermark(self.partition_id)

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self.dispatcher._stop_event.wait(), timeout=self._cfg.poll_interval_s)
        except asyncio.TimeoutError:
            pass

    async def _poll(self) -> Optional[Batch]:
        d = self.dispatcher
        try:
            records = [r async for r in d.log.read(self.partition_id, self.position, self._cfg.batch_size)]
        except DataExpired as e:
            # Re-sync to the oldest retained record; the gap is reported, not skipped silently.
            d._report(BatchOutcome(
                kind=OutcomeKind.EXPIRED, consumer_group=self._group, partition_id=self.partition_id,
                first_sequence_id=e.requested, last_sequence_id=e.horizon - 1,
                record_count=e.horizon - e.requested, error=str(e),
            ))
            self.position = e.horizon
            return None
        if not records:
            return None
        return Batch(partition_id=self.partition_id, records=tuple(records))

    async def _call_handler(self, batch: Batch) -> Optional[bool]:
        d = self.dispatcher
        if d._handler_is_async:
            result = d.handler(batch)
        else:
            # Off the event loop; the deadline in _invoke still applies.
            result = await asyncio.to_thread(d.handler, batch)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _invoke(self, batch: Batch, attempt: int) -> None:
        timeout = self._cfg.handler_timeout_s
        try:
            call = self._call_handler(batch)
            result = await asyncio.wait_for(call, timeout=timeout) if timeout else await call
        except asyncio.TimeoutError as e:
            raise HandlerFailure(f"Handler timed out after {timeout}s", attempt=attempt, cause=e)
        except Exception as e:
            raise HandlerFailure(f"{type(e).__name__}: {e}", attempt=attempt, cause=e)
        if result is False:
            raise HandlerFailure("Handler reported failure", attempt=attempt)

    async def _deliver(self, batch: Batch) -> bool:
        """
        Hand the batch to the handler, retrying the whole batch on failure.
        Returns False when retries ran out and the batch was dead-lettered.
        """
        d = self.dispatcher
        attempts = self._cfg.max_retries + 1
        last_error: Optional[HandlerFailure] = None

        for attempt in range(1, attempts + 1):
            self.state = PartitionState.DELIVERING
            started = time.monotonic()
            with d.tracer.start_as_current_span(
                "dispatcher.deliver",
                attributes={
                    "messaging.consumer.group.name": self._group,
                    "messaging.destination.partition.id": self.partition_id,
                    "messaging.batch.message_count": len(batch),
                    "streamrelay.attempt": attempt,
                },
            ) as span:
                try:
                    await self._invoke(batch, attempt)
                except HandlerFailure as e:
                    last_error = e
                    span.record_exception(e)
                    span.set_status(trace.Status(trace.StatusCode.ERROR))
                    self.last_error = str(e)
                    d._report(self._outcome(OutcomeKind.FAILED, batch, attempt, started, error=str(e)))
                else:
                    self.last_error = None
                    d._report(self._outcome(OutcomeKind.DELIVERED, batch, attempt, started))
                    return True

            if attempt < attempts:
                self.state = PartitionState.RETRYING
                await asyncio.sleep(backoff_delay(attempt, self._cfg.retry_backoff_s, self._cfg.retry_backoff_max_s))

        entry = DeadLetterEntry.from_batch(self._group, batch, str(last_error), attempts)
        try:
            await d.dead_letter.put(entry)
        except Exception as e:
            self.last_error = f"Dead-letter write failed: {e}; handler error: {last_error}"
            logger.critical(
                f"Could not dead-letter partition {self.partition_id} "
                f"[{batch.first_sequence_id}..{batch.last_sequence_id}]: {e}"
            )
            return False

        d._report(self._outcome(OutcomeKind.DEAD_LETTERED, batch, attempts, None, error=str(last_error)))
        return False

    async def _commit(self, batch: Batch) -> bool:
        d = self.dispatcher
        failures = 0
        while True:
            try:
                await d.checkpoints.commit(self._group, self.partition_id, batch.last_sequence_id)
                break
            except Exception as e:
                failures += 1
                self.last_error = f"Checkpoint commit failed: {e}"
                logger.warning(f"Partition {self.partition_id}: checkpoint commit failed ({failures}): {e}")
                if d._stop_event.is_set():
                    return False
                await asyncio.sleep(backoff_delay(failures, self._cfg.poll_interval_s, self._cfg.retry_backoff_max_s))

        high = await d.log.get_high_watermark(self.partition_id)
        d.metrics.set_lag(self._group, self.partition_id, max(0, high - batch.last_sequence_id - 1))
        return True

    def _outcome(self, kind: OutcomeKind, batch: Batch, attempt: int,
                 started: Optional[float], error: Optional[str] = None) -> BatchOutcome:
        return BatchOutcome(
            kind=kind,
            consumer_group=self._group,
            partition_id=self.partition_id,
            first_sequence_id=batch.first_sequence_id,
            last_sequence_id=batch.last_sequence_id,
            record_count=len(batch),
            attempt=attempt,
            error=error,
            duration_s=time.monotonic() - started if started is not None else 0.0,
            batch=batch,
        )

    def status(self) -> PartitionStatus:
        return PartitionStatus(
            partition_id=self.partition_id,
            state=self.state,
            position=self.position,
            last_error=self.last_error,
        )


class ConsumerDispatcher:
    """
    Polls partitions of a Log, delivers batches to a handler and advances
    checkpoints on success.

    Features:
    - One worker task per partition; partitions progress independently
    - Whole-batch retry with exponential backoff, then dead-letter and halt
    - Handler deadline (a timeout counts as a failure)
    - Cooperative stop between batches
    - Observability hooks on every batch outcome

    Handler signature: (batch: Batch) -> Awaitable[bool | None]. Raising,
    returning False, or timing out is a failure.
    """

    def __init__(self,
                 log: Log,
                 checkpoints: CheckpointStore,
                 handler: Handler,
                 consumer_group: str = "default",
                 dead_letter: Optional[DeadLetterSink] = None,
                 config: Optional[DispatcherConfig] = None,
                 hooks: Optional[List[ObservabilityHook]] = None):
        self.log = log
        self.checkpoints = checkpoints
        self.handler = handler
        self.consumer_group = consumer_group
        self.dead_letter = dead_letter or InMemoryDeadLetterSink()
        self.config = config or DispatcherConfig()
        self.hooks = hooks if hooks is not None else [LoggingHook(), MetricsHook()]
        self._handler_is_async = inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
            getattr(handler, "__call__", None)
        )
        self.metrics = MetricsManager()
        self.tracer = get_tracer("dispatcher")
        self._stop_event = asyncio.Event()
        self._workers: Dict[int, PartitionWorker] = {}
        self._tasks: Dict[int, asyncio.Task] = {}

    def _partition_ids(self) -> List[int]:
        if self.config.partitions is None:
            return list(range(self.log.partitions()))
        return list(self.config.partitions)

    def _spawn(self, partition_id: int, resume_from: Optional[int] = None) -> None:
        if not 0 <= partition_id < self.log.partitions():
            raise InvalidState(f"Partition {partition_id} does not exist")
        task = self._tasks.get(partition_id)
        if task is not None and not task.done():
            raise InvalidState(f"Partition {partition_id} already has an active worker")
        worker = PartitionWorker(self, partition_id, resume_from=resume_from)
        self._workers[partition_id] = worker
        self._tasks[partition_id] = asyncio.create_task(
            worker.run(), name=f"streamrelay-{self.consumer_group}-p{partition_id}"
        )

    async def start(self) -> None:
        """Start one worker per partition."""
        self._stop_event.clear()
        partitions = self._partition_ids()
        logger.info(f"Starting dispatcher for group {self.consumer_group} on partitions {partitions}")
        for p in partitions:
            self._spawn(p)

    async def wait(self) -> None:
        """Wait until every worker has stopped or halted."""
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                return
            await asyncio.wait(pending)

    async def run(self) -> None:
        await self.start()
        await self.wait()

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Signal every worker to stop after its current batch and wait for them.
        Workers still busy after `timeout` seconds are cancelled.
        """
        self._stop_event.set()
        pending = [t for t in self._tasks.values() if not t.done()]
        if not pending:
            return
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            logger.warning(f"Cancelling {task.get_name()} after stop timeout")
            task.cancel()
        if still_pending:
            await asyncio.gather(*still_pending, return_exceptions=True)
        logger.info(f"Dispatcher for group {self.consumer_group} stopped")

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    async def resume_partition(self, partition_id: int) -> None:
        """
        Restart a halted partition. It resumes from its checkpoint, or from
        where the halted worker stopped when nothing is committed, so the
        dead-lettered batch is redelivered unless the checkpoint was reset
        past it first.
        """
        worker = self._workers.get(partition_id)
        if worker is None or worker.state is not PartitionState.HALTED:
            raise InvalidState(f"Partition {partition_id} is not halted")
        if self._stop_event.is_set():
            raise InvalidState("Dispatcher is stopping")
        logger.info(f"Resuming partition {partition_id} ({self.consumer_group})")
        self.metrics.partition_halted.labels(group=self.consumer_group, partition=str(partition_id)).set(0)
        self._spawn(partition_id, resume_from=worker.position)

    def status(self) -> Dict[int, PartitionStatus]:
        return {p: w.status() for p, w in sorted(self._workers.items())}

    def _report(self, outcome: BatchOutcome) -> None:
        for hook in self.hooks:
            try:
                hook.on_outcome(outcome)
            except Exception:
                logger.exception(f"Observability hook {type(hook).__name__} failed")

    async def __aenter__(self) -> "ConsumerDispatcher":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
