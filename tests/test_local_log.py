import os
import shutil
import tempfile
import time
import unittest

from streamrelay.errors import DataExpired, InvalidState
from streamrelay.log.local_log import LocalLog


async def collect(log, partition, start, count):
    return [r async for r in log.read(partition, start, count)]


class TestLocalLog(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp(prefix="streamrelay_log_")

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    async def test_append_and_read(self):
        log = LocalLog(self.test_dir, num_partitions=2)
        await log.append(0, b"A", partition_key="k1")
        await log.append(0, b"B", partition_key="k2")

        records = await collect(log, 0, 0, 10)
        self.assertEqual([(r.payload, r.sequence_id) for r in records], [(b"A", 0), (b"B", 1)])
        self.assertEqual(records[1].partition_key, "k2")
        self.assertEqual(await collect(log, 1, 0, 10), [])

    async def test_binary_payload_round_trip(self):
        log = LocalLog(self.test_dir, num_partitions=1)
        payload = bytes(range(256))
        await log.append(0, payload)
        (record,) = await collect(log, 0, 0, 1)
        self.assertEqual(record.payload, payload)

    async def test_reopen_recovers_tail(self):
        log = LocalLog(self.test_dir, num_partitions=1)
        for i in range(5):
            await log.append(0, f"msg-{i}".encode())

        reopened = LocalLog(self.test_dir, num_partitions=1)
        self.assertEqual(await reopened.get_high_watermark(0), 5)
        record = await reopened.append(0, b"msg-5")
        self.assertEqual(record.sequence_id, 5)
        self.assertEqual(len(await collect(reopened, 0, 0, 100)), 6)

    async def test_torn_write_is_truncated(self):
        log = LocalLog(self.test_dir, num_partitions=1)
        await log.append(0, b"complete")
        await log.append(0, b"also complete")

        segment = os.path.join(self.test_dir, "partition_0_0.bin")
        with open(segment, "ab") as f:
            f.write(b"\x00\x00\x01\x00\xde\xad")  # header without a body

        reopened = LocalLog(self.test_dir, num_partitions=1)
        self.assertEqual(await reopened.get_high_watermark(0), 2)
        record = await reopened.append(0, b"after crash")
        self.assertEqual(record.sequence_id, 2)
        payloads = [r.payload for r in await collect(reopened, 0, 0, 10)]
        self.assertEqual(payloads, [b"complete", b"also complete", b"after crash"])

    async def test_segment_rotation_and_read_across_segments(self):
        log = LocalLog(self.test_dir, num_partitions=1, max_segment_bytes=64)
        for i in range(10):
            await log.append(0, f"payload-{i:02d}".encode())

        segments = [f for f in os.listdir(self.test_dir) if f.startswith("partition_0_")]
        self.assertGreater(len(segments), 1)

        records = await collect(log, 0, 3, 5)
        self.assertEqual([r.sequence_id for r in records], [3, 4, 5, 6, 7])
        self.assertEqual(records[0].payload, b"payload-03")

    async def test_size_retention_sets_horizon(self):
        log = LocalLog(self.test_dir, num_partitions=1, max_segment_bytes=64, retention_bytes=100)
        for i in range(10):
            await log.append(0, f"payload-{i:02d}".encode())

        purged = await log.enforce_retention()
        self.assertGreater(purged, 0)
        horizon = await log.get_low_watermark(0)
        self.assertEqual(horizon, purged)

        with self.assertRaises(DataExpired):
            await collect(log, 0, 0, 10)
        remaining = await collect(log, 0, horizon, 100)
        self.assertEqual(remaining[-1].sequence_id, 9)

    async def test_age_retention_keeps_active_segment(self):
        log = LocalLog(self.test_dir, num_partitions=1, max_segment_bytes=64, retention_seconds=60)
        for i in range(6):
            await log.append(0, f"payload-{i:02d}".encode())

        old = time.time() - 3600
        for name in os.listdir(self.test_dir):
            os.utime(os.path.join(self.test_dir, name), (old, old))

        await log.enforce_retention()
        remaining = [f for f in os.listdir(self.test_dir) if f.startswith("partition_0_")]
        self.assertEqual(len(remaining), 1)
        self.assertEqual(await log.get_high_watermark(0), 6)

    async def test_missing_partition(self):
        log = LocalLog(self.test_dir, num_partitions=1)
        with self.assertRaises(InvalidState):
            await log.append(1, b"x")


if __name__ == "__main__":
    unittest.main()
