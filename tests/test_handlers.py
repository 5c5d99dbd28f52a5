import json
import logging
import unittest
from datetime import datetime, timezone

from streamrelay.errors import HandlerFailure
from streamrelay.handlers import decode_record_payload, log_records
from streamrelay.models import Batch, Record


def batch_of(*payloads):
    now = datetime.now(timezone.utc)
    return Batch(partition_id=0, records=tuple(
        Record(partition_key="PartitionKey1", payload=p, sequence_id=i, enqueue_time=now, partition_id=0)
        for i, p in enumerate(payloads)
    ))


class TestLogRecordsHandler(unittest.IsolatedAsyncioTestCase):
    def test_decode(self):
        self.assertEqual(decode_record_payload(b'{"a": 1}'), {"a": 1})
        with self.assertRaises(ValueError):
            decode_record_payload(b"\xff")

    async def test_logs_each_record(self):
        batch = batch_of(json.dumps({"name": "Emi"}).encode(), b"[1, 2]")
        with self.assertLogs("streamrelay.handlers", level=logging.INFO) as cm:
            await log_records(batch)
        self.assertEqual(len(cm.records), 2)
        self.assertIn("[partitionKey=PartitionKey1]:[sequenceNumber=0]", cm.output[0])
        self.assertIn('"name": "Emi"', cm.output[0])

    async def test_undecodable_record_fails_batch(self):
        batch = batch_of(b'{"ok": true}', b"Hello, Emi")
        with self.assertRaises(HandlerFailure) as cm:
            await log_records(batch)
        self.assertIn("Record 1", str(cm.exception))


if __name__ == "__main__":
    unittest.main()
