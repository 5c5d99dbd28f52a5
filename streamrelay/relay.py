import asyncio
import signal
from typing import Dict, List, Optional

from streamrelay.checkpoints import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
    SQLiteCheckpointStore,
    ValkeyCheckpointStore,
)
from streamrelay.dead_letter import (
    DeadLetterSink,
    FileDeadLetterSink,
    InMemoryDeadLetterSink,
    ValkeyDeadLetterSink,
)
from streamrelay.dispatcher import ConsumerDispatcher, DispatcherConfig, Handler
from streamrelay.errors import InvalidState
from streamrelay.hooks import ObservabilityHook
from streamrelay.log.interfaces import Log
from streamrelay.log.local_log import LocalLog
from streamrelay.log.memory_log import InMemoryLog
from streamrelay.producer import ProducerClient
from streamrelay.settings import Settings
from streamrelay.utils.logging import get_logger
from streamrelay.utils.tracing import init_tracer

logger = get_logger("Relay")


class StreamRelay:
    """
    Composition root: owns the log, checkpoint store, dead-letter sink,
    producer and the dispatchers of each consumer group.

    Use as an async context manager so connections and files are released:

        async with StreamRelay.from_settings(settings) as relay:
            await relay.producer.send("key", b"payload")
    """

    def __init__(self,
                 log: Log,
                 checkpoints: CheckpointStore,
                 dead_letter: DeadLetterSink,
                 producer: Optional[ProducerClient] = None,
                 dispatcher_config: Optional[DispatcherConfig] = None,
                 retention_interval_s: float = 60.0):
        self.log = log
        self.checkpoints = checkpoints
        self.dead_letter = dead_letter
        self.producer = producer or ProducerClient(log)
        self.dispatcher_config = dispatcher_config or DispatcherConfig()
        self.retention_interval_s = retention_interval_s
        self.dispatchers: Dict[str, ConsumerDispatcher] = {}
        self._retention_task: Optional[asyncio.Task] = None
        self._started = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "StreamRelay":
        """Build every component from process-wide settings."""
        if settings.LOG_BACKEND == "memory":
            log: Log = InMemoryLog(
                num_partitions=settings.NUM_PARTITIONS,
                retention_seconds=settings.RETENTION_SECONDS,
                max_records_per_partition=settings.MAX_RECORDS_PER_PARTITION,
                write_limit_per_second=settings.WRITE_LIMIT_PER_SECOND,
            )
        else:
            log = LocalLog(
                settings.DATA_DIR,
                num_partitions=settings.NUM_PARTITIONS,
                max_segment_bytes=settings.MAX_SEGMENT_BYTES,
                retention_seconds=settings.RETENTION_SECONDS,
                retention_bytes=settings.RETENTION_BYTES,
                write_limit_per_second=settings.WRITE_LIMIT_PER_SECOND,
            )

        checkpoints: CheckpointStore
        if settings.CHECKPOINT_BACKEND == "memory":
            checkpoints = InMemoryCheckpointStore()
        elif settings.CHECKPOINT_BACKEND == "file":
            checkpoints = FileCheckpointStore(settings.CHECKPOINT_DIR)
        elif settings.CHECKPOINT_BACKEND == "valkey":
            checkpoints = ValkeyCheckpointStore(settings.VALKEY_HOST, settings.VALKEY_PORT, settings.VALKEY_PASSWORD)
        else:
            checkpoints = SQLiteCheckpointStore(settings.CHECKPOINT_PATH)

        dead_letter: DeadLetterSink
        if settings.DLQ_BACKEND == "memory":
            dead_letter = InMemoryDeadLetterSink()
        elif settings.DLQ_BACKEND == "valkey":
            dead_letter = ValkeyDeadLetterSink(settings.VALKEY_HOST, settings.VALKEY_PORT,
                                               settings.VALKEY_PASSWORD, queue_key=settings.DLQ_KEY)
        else:
            dead_letter = FileDeadLetterSink(settings.DLQ_PATH)

        producer = ProducerClient(
            log,
            max_attempts=settings.PRODUCER_MAX_ATTEMPTS,
            base_delay_s=settings.PRODUCER_BASE_DELAY_S,
            max_delay_s=settings.PRODUCER_MAX_DELAY_S,
        )
        dispatcher_config = DispatcherConfig(
            batch_size=settings.BATCH_SIZE,
            poll_interval_s=settings.POLL_INTERVAL_S,
            max_retries=settings.MAX_RETRIES,
            retry_backoff_s=settings.RETRY_BACKOFF_S,
            retry_backoff_max_s=settings.RETRY_BACKOFF_MAX_S,
            handler_timeout_s=settings.HANDLER_TIMEOUT_S,
            start_position=settings.START_POSITION,
        )

        if settings.OTEL_ENABLED:
            init_tracer("streamrelay")

        return cls(log, checkpoints, dead_letter, producer, dispatcher_config,
                   retention_interval_s=settings.RETENTION_CHECK_INTERVAL_S)

    async def start(self) -> None:
        if self._started:
            return
        await self.checkpoints.start()
        await self.dead_letter.start()
        if self.retention_interval_s > 0:
            self._retention_task = asyncio.create_task(self._retention_loop())
        self._started = True

    async def close(self) -> None:
        """Stop every dispatcher, then release stores and the log."""
        for dispatcher in self.dispatchers.values():
            await dispatcher.stop()
        if self._retention_task:
            self._retention_task.cancel()
            try:
                await self._retention_task
            except asyncio.CancelledError:
                pass
            self._retention_task = None
        await self.dead_letter.close()
        await self.checkpoints.close()
        await self.log.close()
        self._started = False

    async def __aenter__(self) -> "StreamRelay":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def consumer(self,
                 handler: Handler,
                 consumer_group: str = "default",
                 hooks: Optional[List[ObservabilityHook]] = None,
                 config: Optional[DispatcherConfig] = None) -> ConsumerDispatcher:
        """Create (but do not start) the dispatcher of a consumer group."""
        if consumer_group in self.dispatchers:
            raise InvalidState(f"Consumer group {consumer_group} already has a dispatcher")
        dispatcher = ConsumerDispatcher(
            self.log,
            self.checkpoints,
            handler,
            consumer_group=consumer_group,
            dead_letter=self.dead_letter,
            config=config or self.dispatcher_config,
            hooks=hooks,
        )
        self.dispatchers[consumer_group] = dispatcher
        return dispatcher

    def dispatcher(self, consumer_group: str) -> ConsumerDispatcher:
        try:
            return self.dispatchers[consumer_group]
        except KeyError:
            raise InvalidState(f"No dispatcher for consumer group {consumer_group}") from None

    async def run_consumer(self, handler: Handler, consumer_group: str = "default",
                           hooks: Optional[List[ObservabilityHook]] = None) -> None:
        """
        Consume until SIGTERM/SIGINT (or until every partition halted).
        """
        dispatcher = self.consumer(handler, consumer_group, hooks=hooks)
        self._setup_signals(dispatcher)
        await dispatcher.run()

    def _setup_signals(self, dispatcher: ConsumerDispatcher) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, lambda: asyncio.create_task(self._on_signal(dispatcher)))
            except NotImplementedError:
                # Windows support or special environments
                pass

    async def _on_signal(self, dispatcher: ConsumerDispatcher) -> None:
        logger.info("Shutdown signal received. Finishing current batches...")
        await dispatcher.stop()

    async def _retention_loop(self) -> None:
        while True:
            await asyncio.sleep(self.retention_interval_s)
            try:
                purged = await self.log.enforce_retention()
                if purged:
                    logger.info(f"Retention purged {purged} records")
            except Exception as e:
                logger.error(f"Retention pass failed: {e}")
