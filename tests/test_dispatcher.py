import asyncio
import time
import unittest

from helpers import CountingCheckpointStore, RecordingHook, wait_until
from streamrelay.dead_letter import InMemoryDeadLetterSink
from streamrelay.dispatcher import ConsumerDispatcher, DispatcherConfig, PartitionState
from streamrelay.errors import InvalidState
from streamrelay.log.memory_log import InMemoryLog
from streamrelay.producer import ProducerClient
from streamrelay.utils.metrics import MetricsManager


def fast_config(**kwargs):
    kwargs.setdefault("poll_interval_s", 0.01)
    kwargs.setdefault("retry_backoff_s", 0.0)
    kwargs.setdefault("retry_backoff_max_s", 0.0)
    kwargs.setdefault("handler_timeout_s", 2.0)
    return DispatcherConfig(**kwargs)


class FlakyHandler:
    """Fails the first `failures` calls, then succeeds."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0
        self.delivered = []

    async def __call__(self, batch):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"failure #{self.calls}")
        self.delivered.append(batch)


class DispatcherTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.log = InMemoryLog(num_partitions=1)
        self.checkpoints = CountingCheckpointStore()
        self.dlq = InMemoryDeadLetterSink()
        self.hook = RecordingHook()
        self.dispatchers = []

    async def asyncTearDown(self):
        for d in self.dispatchers:
            await d.stop(timeout=2.0)

    def make_dispatcher(self, handler, **config):
        d = ConsumerDispatcher(
            self.log, self.checkpoints, handler,
            consumer_group="groupX", dead_letter=self.dlq,
            config=fast_config(**config), hooks=[self.hook],
        )
        self.dispatchers.append(d)
        return d


class TestDelivery(DispatcherTestCase):
    async def test_round_trip_payloads_byte_for_byte(self):
        producer = ProducerClient(self.log)
        payloads = [b"A", b"B", bytes(range(256)), "ünïcode".encode()]
        for p in payloads:
            await producer.send("key", p)

        received = []

        async def handler(batch):
            received.extend(r.payload for r in batch.records)

        d = self.make_dispatcher(handler)
        await d.start()
        await wait_until(lambda: len(received) == len(payloads))

        self.assertEqual(received, payloads)
        await wait_until(lambda: self.checkpoints._store.get(("groupX", 0)) == 3)

    async def test_batches_respect_batch_size_and_order(self):
        for i in range(7):
            await self.log.append(0, str(i).encode())
        batches = []

        async def handler(batch):
            batches.append([r.sequence_id for r in batch.records])

        d = self.make_dispatcher(handler, batch_size=3)
        await d.start()
        await wait_until(lambda: sum(len(b) for b in batches) == 7)

        self.assertEqual(batches, [[0, 1, 2], [3, 4, 5], [6]])
        await wait_until(lambda: len(self.checkpoints.commits) == 3)
        self.assertEqual([c[2] for c in self.checkpoints.commits], [2, 5, 6])

    async def test_resumes_after_committed_checkpoint(self):
        for i in range(4):
            await self.log.append(0, str(i).encode())
        await self.checkpoints.commit("groupX", 0, 1)
        seen = []

        async def handler(batch):
            seen.extend(r.sequence_id for r in batch.records)

        d = self.make_dispatcher(handler)
        await d.start()
        await wait_until(lambda: seen == [2, 3])

    async def test_latest_start_position_skips_existing(self):
        await self.log.append(0, b"old")
        seen = []

        async def handler(batch):
            seen.extend(r.payload for r in batch.records)

        d = self.make_dispatcher(handler, start_position="latest")
        await d.start()
        await wait_until(lambda: d.status()[0].position == 1)
        await self.log.append(0, b"new")
        await wait_until(lambda: seen == [b"new"])

    async def test_sync_handler_supported(self):
        await self.log.append(0, b"x")
        seen = []
        d = self.make_dispatcher(lambda batch: seen.append(batch.last_sequence_id))
        await d.start()
        await wait_until(lambda: seen == [0])


class TestRetryAndDeadLetter(DispatcherTestCase):
    async def test_fails_three_times_then_succeeds(self):
        await self.log.append(0, b"A")
        await self.log.append(0, b"B")
        handler = FlakyHandler(failures=3)

        d = self.make_dispatcher(handler, max_retries=5)
        await d.start()
        await wait_until(lambda: len(self.checkpoints.commits) == 1)
        await asyncio.sleep(0.05)

        self.assertEqual(handler.calls, 4)
        self.assertEqual(self.checkpoints.commits, [("groupX", 0, 1)])
        self.assertEqual(await self.checkpoints.get("groupX", 0), 1)
        self.assertEqual(self.hook.kinds(), ["failed", "failed", "failed", "delivered"])
        # Every attempt received the same, whole batch
        self.assertEqual([r.payload for r in handler.delivered[0].records], [b"A", b"B"])
        self.assertEqual(self.dlq.entries, [])

    async def test_fails_six_times_dead_letters_and_halts(self):
        await self.log.append(0, b"A")
        await self.log.append(0, b"B")
        handler = FlakyHandler(failures=100)

        d = self.make_dispatcher(handler, max_retries=5)
        await d.start()
        await wait_until(lambda: d.status()[0].state is PartitionState.HALTED)

        self.assertEqual(handler.calls, 6)
        self.assertEqual(len(self.dlq.entries), 1)
        entry = self.dlq.entries[0]
        self.assertEqual((entry.partition_id, entry.first_sequence_id, entry.last_sequence_id), (0, 0, 1))
        self.assertEqual(entry.attempts, 6)
        self.assertIn("failure #6", entry.last_error)
        self.assertIsNone(await self.checkpoints.get("groupX", 0))
        self.assertEqual(self.checkpoints.commits, [])
        self.assertEqual(self.hook.kinds()[-1], "dead_lettered")

        # The halted worker does not pick up new records
        await self.log.append(0, b"C")
        await asyncio.sleep(0.05)
        self.assertEqual(handler.calls, 6)

    async def test_returning_false_is_a_failure(self):
        await self.log.append(0, b"A")
        calls = []

        async def handler(batch):
            calls.append(batch)
            return len(calls) > 1

        d = self.make_dispatcher(handler, max_retries=2)
        await d.start()
        await wait_until(lambda: len(self.checkpoints.commits) == 1)
        self.assertEqual(len(calls), 2)

    async def test_timeout_counts_as_failure(self):
        await self.log.append(0, b"slow")

        async def handler(batch):
            await asyncio.sleep(1.0)

        d = self.make_dispatcher(handler, max_retries=0, handler_timeout_s=0.05)
        await d.start()
        await wait_until(lambda: d.status()[0].state is PartitionState.HALTED)

        self.assertIn("timed out", self.dlq.entries[0].last_error)
        self.assertIsNone(await self.checkpoints.get("groupX", 0))

    async def test_sync_handler_timeout_counts_as_failure(self):
        await self.log.append(0, b"slow")

        def handler(batch):
            time.sleep(0.3)

        d = self.make_dispatcher(handler, max_retries=0, handler_timeout_s=0.05)
        await d.start()
        await wait_until(lambda: d.status()[0].state is PartitionState.HALTED)

        self.assertIn("timed out", self.dlq.entries[0].last_error)
        self.assertIsNone(await self.checkpoints.get("groupX", 0))

    async def test_resume_after_operator_reset(self):
        await self.log.append(0, b"poison")
        await self.log.append(0, b"fine")

        async def handler(batch):
            if any(r.payload == b"poison" for r in batch.records):
                raise ValueError("cannot parse")

        d = self.make_dispatcher(handler, max_retries=1, batch_size=1)
        await d.start()
        await wait_until(lambda: d.status()[0].state is PartitionState.HALTED)

        # Operator skips the poison record, then resumes the partition
        await self.checkpoints.reset("groupX", 0, 0)
        await d.resume_partition(0)
        await wait_until(lambda: self.checkpoints._store.get(("groupX", 0)) == 1)

    async def test_resume_under_latest_keeps_halted_position(self):
        failing = {b"A"}
        seen = []

        async def handler(batch):
            payload = batch.records[0].payload
            if payload in failing:
                raise ValueError("cannot parse")
            seen.append(payload)

        d = self.make_dispatcher(handler, start_position="latest", max_retries=0, batch_size=1)
        await d.start()
        await wait_until(lambda: d.status()[0].position == 0)
        await self.log.append(0, b"A")
        await wait_until(lambda: d.status()[0].state is PartitionState.HALTED)

        await self.log.append(0, b"B")
        await self.log.append(0, b"C")
        failing.clear()
        await d.resume_partition(0)

        # The dead-lettered record and everything appended while halted
        await wait_until(lambda: seen == [b"A", b"B", b"C"])
        self.assertEqual(len(self.dlq.entries), 1)
        await wait_until(lambda: self.checkpoints._store.get(("groupX", 0)) == 2)

    async def test_resume_requires_halted_partition(self):
        d = self.make_dispatcher(FlakyHandler(0))
        await d.start()
        with self.assertRaises(InvalidState):
            await d.resume_partition(0)


class TestConcurrencyAndStop(DispatcherTestCase):
    async def test_single_worker_per_partition(self):
        d = self.make_dispatcher(FlakyHandler(0))
        await d.start()
        with self.assertRaises(InvalidState):
            await d.start()

    async def test_partitions_progress_independently(self):
        self.log = InMemoryLog(num_partitions=2)
        await self.log.append(0, b"stuck")
        await self.log.append(1, b"fine")
        seen = []

        async def handler(batch):
            if batch.partition_id == 0:
                raise RuntimeError("partition 0 is broken")
            seen.append(batch.partition_id)

        d = self.make_dispatcher(handler, max_retries=1)
        await d.start()
        await wait_until(lambda: d.status()[0].state is PartitionState.HALTED)
        await wait_until(lambda: seen == [1])
        self.assertEqual(await self.checkpoints.get("groupX", 1), 0)

    async def test_crashed_worker_sets_halted_gauge(self):
        class BrokenStore(CountingCheckpointStore):
            async def get(self, consumer_group, partition_id):
                raise RuntimeError("store unavailable")

        d = ConsumerDispatcher(
            self.log, BrokenStore(), FlakyHandler(0), consumer_group="crashed-group",
            dead_letter=self.dlq, config=fast_config(), hooks=[self.hook],
        )
        self.dispatchers.append(d)
        await d.start()
        await wait_until(lambda: d.status()[0].state is PartitionState.HALTED)

        self.assertIn("store unavailable", d.status()[0].last_error)
        halted = MetricsManager().registry.get_sample_value(
            "streamrelay_partition_halted", {"group": "crashed-group", "partition": "0"}
        )
        self.assertEqual(halted, 1.0)

    async def test_stop_waits_for_batch_in_flight(self):
        await self.log.append(0, b"first")
        started = asyncio.Event()
        release = asyncio.Event()
        delivered = []

        async def handler(batch):
            started.set()
            await release.wait()
            delivered.append(batch.last_sequence_id)

        d = self.make_dispatcher(handler)
        await d.start()
        await started.wait()

        stop_task = asyncio.create_task(d.stop())
        await asyncio.sleep(0.02)
        self.assertFalse(stop_task.done())
        await self.log.append(0, b"second")
        release.set()
        await stop_task

        self.assertEqual(delivered, [0])
        self.assertEqual(await self.checkpoints.get("groupX", 0), 0)
        self.assertEqual(d.status()[0].state, PartitionState.STOPPED)

    async def test_stop_timeout_cancels_without_commit(self):
        await self.log.append(0, b"never finishes")

        async def handler(batch):
            await asyncio.sleep(10)

        d = self.make_dispatcher(handler, handler_timeout_s=None)
        await d.start()
        await wait_until(lambda: d.status()[0].state is PartitionState.DELIVERING)
        await d.stop(timeout=0.05)

        self.assertIsNone(await self.checkpoints.get("groupX", 0))
        self.assertEqual(self.checkpoints.commits, [])


class TestExpiry(DispatcherTestCase):
    async def test_resyncs_after_expired_position(self):
        self.log = InMemoryLog(num_partitions=1, max_records_per_partition=2)
        for i in range(5):
            await self.log.append(0, str(i).encode())
        await self.checkpoints.commit("groupX", 0, 0)
        seen = []

        async def handler(batch):
            seen.extend(r.sequence_id for r in batch.records)

        d = self.make_dispatcher(handler)
        await d.start()
        await wait_until(lambda: seen == [3, 4])

        expired = [o for o in self.hook.outcomes if o.kind.value == "expired"]
        self.assertEqual(len(expired), 1)
        self.assertEqual((expired[0].first_sequence_id, expired[0].last_sequence_id), (1, 2))


if __name__ == "__main__":
    unittest.main()
