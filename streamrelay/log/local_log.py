import asyncio
import bisect
import msgpack
import struct
import time
import zlib
import aiofiles
from datetime import datetime
from typing import AsyncIterator, List, Dict, Optional, Tuple
from pathlib import Path

from streamrelay.errors import DataExpired, InvalidState
from streamrelay.log.interfaces import Log
from streamrelay.log.throttle import WriteThrottle
from streamrelay.models import Record, utcnow
from streamrelay.utils.logging import get_logger
from streamrelay.utils.metrics import MetricsManager

logger = get_logger("LocalLog")

HEADER = struct.Struct(">II")


class LocalLog(Log):
    """
    File-based implementation of the Log interface.

    Features:
    - Append-only segment files per partition
    - Binary MessagePack frames with CRC32 checksums
    - Startup recovery & safe truncation of a torn tail
    - Segment-granular retention by age and by size

    Format:
    [Length (4B Big Endian)][CRC32 (4B Big Endian)][Payload (MsgPack)]

    Segment files are named partition_{p}_{first_sequence_id}.bin. The purge
    horizon of a partition is the first sequence id of its oldest segment.
    """

    def __init__(self,
                 data_dir: str,
                 num_partitions: int = 4,
                 max_segment_bytes: int = 64 * 1024 * 1024,
                 retention_seconds: Optional[float] = None,
                 retention_bytes: Optional[int] = None,
                 write_limit_per_second: Optional[int] = None):
        self._data_dir = Path(data_dir)
        self._num_partitions = num_partitions
        self._max_segment_bytes = max_segment_bytes
        self._retention_seconds = retention_seconds
        self._retention_bytes = retention_bytes
        self._throttle = WriteThrottle(write_limit_per_second)
        self._locks = [asyncio.Lock() for _ in range(num_partitions)]
        self._metrics = MetricsManager()
        # Next assignable sequence id per partition
        self._next_seq: Dict[int, int] = {}
        # Sorted (first_sequence_id, path) per partition
        self._segments: Dict[int, List[Tuple[int, Path]]] = {}

        self._data_dir.mkdir(parents=True, exist_ok=True)

        for p in range(num_partitions):
            self._recover_partition_sync(p)

    def partitions(self) -> int:
        return self._num_partitions

    def _segment_path(self, partition: int, start: int) -> Path:
        return self._data_dir / f"partition_{partition}_{start}.bin"

    def _scan_segments(self, partition: int) -> List[Tuple[int, Path]]:
        segments = []
        for p in self._data_dir.glob(f"partition_{partition}_*.bin"):
            parts = p.stem.split('_')
            try:
                segments.append((int(parts[2]), p))
            except (IndexError, ValueError):
                logger.warning(f"Ignoring invalid segment file: {p.name}")
        segments.sort(key=lambda x: x[0])
        return segments

    def _recover_partition_sync(self, partition: int) -> None:
        """
        Synchronous startup recovery.
        Scans the active (last) segment to find the tail and truncates a
        partial or corrupt frame. Older segments are immutable.
        """
        segments = self._scan_segments(partition)

        if not segments:
            first = self._segment_path(partition, 0)
            first.touch()
            self._segments[partition] = [(0, first)]
            self._next_seq[partition] = 0
            return

        last_start, last_path = segments[-1]
        valid = 0

        with open(last_path, 'r+b') as f:
            while True:
                pos = f.tell()
                header = f.read(HEADER.size)
                if len(header) < HEADER.size:
                    if header:
                        logger.warning(f"Truncating partial header at end of {last_path.name} (offset {pos})")
                        f.seek(pos)
                        f.truncate()
                    break

                length, stored_crc = HEADER.unpack(header)
                body = f.read(length)
                if len(body) < length:
                    logger.warning(f"Truncating partial payload at end of {last_path.name} (offset {pos})")
                    f.seek(pos)
                    f.truncate()
                    break

                if zlib.crc32(body) & 0xffffffff != stored_crc:
                    logger.error(f"CRC mismatch at offset {pos} in {last_path.name}. Truncating.")
                    f.seek(pos)
                    f.truncate()
                    break

                valid += 1

        self._segments[partition] = segments
        self._next_seq[partition] = last_start + valid
        logger.info(f"Partition {partition} recovered. Next sequence id: {self._next_seq[partition]}")

    async def append(self, partition_id: int, payload: bytes, partition_key: str = "") -> Record:
        self._check_partition(partition_id)
        self._check_payload(payload)

        async with self._locks[partition_id]:
            self._throttle.acquire(partition_id)
            segments = self._segments[partition_id]
            seq = self._next_seq[partition_id]
            active_path = segments[-1][1]

            # Rotate BEFORE writing if the active segment is full
            if active_path.exists() and active_path.stat().st_size >= self._max_segment_bytes:
                active_path = self._segment_path(partition_id, seq)
                active_path.touch()
                segments.append((seq, active_path))

            record = Record(
                partition_key=partition_key,
                payload=bytes(payload),
                sequence_id=seq,
                enqueue_time=utcnow(),
                partition_id=partition_id,
            )
            body = msgpack.packb({
                "key": record.partition_key,
                "payload": record.payload,
                "seq": seq,
                "ts": record.enqueue_time.isoformat(),
            }, use_bin_type=True)
            frame = HEADER.pack(len(body), zlib.crc32(body) & 0xffffffff) + body

            async with aiofiles.open(active_path, mode='ab') as f:
                await f.write(frame)

            self._next_seq[partition_id] = seq + 1

        self._metrics.records_appended.labels(partition=str(partition_id)).inc()
        return record

    async def read(self, partition_id: int, from_sequence_id: int, max_count: int) -> AsyncIterator[Record]:
        self._check_partition(partition_id)
        self._check_read_args(from_sequence_id, max_count)

        segments = list(self._segments[partition_id])
        horizon = segments[0][0]
        if from_sequence_id < horizon:
            raise DataExpired(partition_id, from_sequence_id, horizon)

        end = min(self._next_seq[partition_id], from_sequence_id + max_count)
        if from_sequence_id >= end:
            return

        # Segment holding from_sequence_id: the last one starting at or before it.
        starts = [s for s, _ in segments]
        idx = bisect.bisect_right(starts, from_sequence_id) - 1
        seq = from_sequence_id

        for start, path in segments[idx:]:
            if seq >= end:
                break
            if not path.exists():
                # Purged by retention while we were reading.
                raise DataExpired(partition_id, seq, self._segments[partition_id][0][0])

            current = start
            async with aiofiles.open(path, mode='rb') as f:
                while current < end:
                    header = await f.read(HEADER.size)
                    if len(header) < HEADER.size:
                        break
                    length, stored_crc = HEADER.unpack(header)
                    body = await f.read(length)
                    if len(body) < length:
                        break

                    # Records before the requested position are skipped without decoding
                    if current >= seq:
                        if zlib.crc32(body) & 0xffffffff != stored_crc:
                            raise InvalidState(f"CRC mismatch reading {path.name} at sequence {current}")
                        data = msgpack.unpackb(body, raw=False)
                        yield Record(
                            partition_key=data.get("key", ""),
                            payload=data["payload"],
                            sequence_id=data.get("seq", current),
                            enqueue_time=datetime.fromisoformat(data["ts"]),
                            partition_id=partition_id,
                        )
                        seq = current + 1
                    current += 1

    async def get_high_watermark(self, partition_id: int) -> int:
        self._check_partition(partition_id)
        return self._next_seq[partition_id]

    async def get_low_watermark(self, partition_id: int) -> int:
        self._check_partition(partition_id)
        return self._segments[partition_id][0][0]

    async def enforce_retention(self) -> int:
        """
        Deletes whole segments that fall outside the retention policy.
        The active (last) segment is never deleted.
        """
        purged = 0
        cutoff = time.time() - self._retention_seconds if self._retention_seconds else None

        for p in range(self._num_partitions):
            async with self._locks[p]:
                segments = self._segments[p]
                total_bytes = sum(path.stat().st_size for _, path in segments)

                while len(segments) > 1:
                    start, path = segments[0]
                    size = path.stat().st_size
                    expired = cutoff is not None and path.stat().st_mtime < cutoff
                    oversized = self._retention_bytes is not None and total_bytes > self._retention_bytes
                    if not (expired or oversized):
                        break

                    next_start = segments[1][0]
                    logger.info(f"Deleting segment {path.name} (sequence {start}..{next_start - 1})")
                    path.unlink()
                    segments.pop(0)
                    total_bytes -= size
                    purged += next_start - start

        return purged
