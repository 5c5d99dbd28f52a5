import asyncio
import json
import os
import shutil
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, Optional, Tuple

import aiofiles
import aiosqlite
import valkey.asyncio as valkey

from streamrelay.errors import InvalidArgument, InvalidState
from streamrelay.utils.logging import get_logger

logger = get_logger("Checkpoints")


class CheckpointStore(ABC):
    """
    Durable per-(consumer group, partition) position tracking.

    A checkpoint is the highest sequence id a group has fully processed.
    `commit` only ever moves it forward; `reset` is the operator escape hatch.
    """

    @abstractmethod
    async def commit(self, consumer_group: str, partition_id: int, sequence_id: int) -> bool:
        """
        Advance the checkpoint. Committing a sequence id lower than or equal to
        the current one is a no-op. Returns True if the checkpoint moved.
        """
        pass

    @abstractmethod
    async def get(self, consumer_group: str, partition_id: int) -> Optional[int]:
        """Committed sequence id, or None when the group never committed."""
        pass

    @abstractmethod
    async def reset(self, consumer_group: str, partition_id: int, sequence_id: Optional[int]) -> None:
        """Operator reset: set the checkpoint to any value, or clear it with None."""
        pass

    @abstractmethod
    async def list(self, consumer_group: str) -> Dict[int, int]:
        """All checkpoints of a group, keyed by partition id."""
        pass

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def __aenter__(self) -> "CheckpointStore":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @staticmethod
    def _check(consumer_group: str, partition_id: int, sequence_id: Optional[int]) -> None:
        if not consumer_group:
            raise InvalidArgument("Consumer group must be a non-empty string")
        if partition_id < 0:
            raise InvalidArgument(f"Partition id must be >= 0, got {partition_id}")
        if sequence_id is not None and sequence_id < 0:
            raise InvalidArgument(f"Sequence id must be >= 0, got {sequence_id}")


class InMemoryCheckpointStore(CheckpointStore):
    """Memory-only checkpoint store (for testing/development)."""

    def __init__(self) -> None:
        self._store: Dict[Tuple[str, int], int] = {}
        self._locks: Dict[Tuple[str, int], asyncio.Lock] = defaultdict(asyncio.Lock)

    async def commit(self, consumer_group: str, partition_id: int, sequence_id: int) -> bool:
        self._check(consumer_group, partition_id, sequence_id)
        key = (consumer_group, partition_id)
        async with self._locks[key]:
            current = self._store.get(key)
            if current is not None and sequence_id <= current:
                return False
            self._store[key] = sequence_id
            return True

    async def get(self, consumer_group: str, partition_id: int) -> Optional[int]:
        return self._store.get((consumer_group, partition_id))

    async def reset(self, consumer_group: str, partition_id: int, sequence_id: Optional[int]) -> None:
        self._check(consumer_group, partition_id, sequence_id)
        key = (consumer_group, partition_id)
        async with self._locks[key]:
            if sequence_id is None:
                self._store.pop(key, None)
            else:
                self._store[key] = sequence_id
        logger.warning(f"Checkpoint for {consumer_group}/{partition_id} reset to {sequence_id}")

    async def list(self, consumer_group: str) -> Dict[int, int]:
        return {p: seq for (g, p), seq in self._store.items() if g == consumer_group}


class FileCheckpointStore(CheckpointStore):
    """
    Durable file-based checkpoint store.
    One JSON document per consumer group, replaced atomically on every write.
    """

    def __init__(self, directory: str = ".streamrelay_checkpoints"):
        self.directory = directory
        os.makedirs(self.directory, exist_ok=True)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _get_path(self, consumer_group: str) -> str:
        return os.path.join(self.directory, f"{consumer_group}.json")

    async def _load(self, consumer_group: str) -> Dict[int, int]:
        path = self._get_path(consumer_group)
        if not os.path.exists(path):
            return {}
        async with aiofiles.open(path, 'r') as f:
            raw = json.loads(await f.read())
        return {int(p): int(seq) for p, seq in raw.items()}

    async def _save(self, consumer_group: str, state: Dict[int, int]) -> None:
        path = self._get_path(consumer_group)
        temp_path = f"{path}.tmp"
        async with aiofiles.open(temp_path, 'w') as f:
            await f.write(json.dumps({str(p): seq for p, seq in state.items()}))
        # Atomic rename
        shutil.move(temp_path, path)

    async def commit(self, consumer_group: str, partition_id: int, sequence_id: int) -> bool:
        self._check(consumer_group, partition_id, sequence_id)
        async with self._locks[consumer_group]:
            state = await self._load(consumer_group)
            current = state.get(partition_id)
            if current is not None and sequence_id <= current:
                return False
            state[partition_id] = sequence_id
            await self._save(consumer_group, state)
            return True

    async def get(self, consumer_group: str, partition_id: int) -> Optional[int]:
        async with self._locks[consumer_group]:
            return (await self._load(consumer_group)).get(partition_id)

    async def reset(self, consumer_group: str, partition_id: int, sequence_id: Optional[int]) -> None:
        self._check(consumer_group, partition_id, sequence_id)
        async with self._locks[consumer_group]:
            state = await self._load(consumer_group)
            if sequence_id is None:
                state.pop(partition_id, None)
            else:
                state[partition_id] = sequence_id
            await self._save(consumer_group, state)
        logger.warning(f"Checkpoint for {consumer_group}/{partition_id} reset to {sequence_id}")

    async def list(self, consumer_group: str) -> Dict[int, int]:
        async with self._locks[consumer_group]:
            return await self._load(consumer_group)


class SQLiteCheckpointStore(CheckpointStore):
    """
    Persistent checkpoint store using SQLite.
    Monotonicity is enforced by a conditional upsert, so the row is the unit
    of compare-and-set.
    """

    def __init__(self, path: str, table_name: str = "checkpoints"):
        self.path = path
        self.table_name = table_name
        self._db: Optional[aiosqlite.Connection] = None

    async def start(self) -> None:
        dirname = os.path.dirname(self.path)
        if dirname and not os.path.exists(dirname):
            os.makedirs(dirname)

        self._db = await aiosqlite.connect(self.path)
        await self._db.execute(
            f"CREATE TABLE IF NOT EXISTS {self.table_name} ("
            "consumer_group TEXT NOT NULL, "
            "partition_id INTEGER NOT NULL, "
            "sequence_id INTEGER NOT NULL, "
            "PRIMARY KEY (consumer_group, partition_id))"
        )
        await self._db.commit()
        logger.info(f"Opened SQLite checkpoint store at {self.path}")

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if not self._db:
            raise InvalidState("Checkpoint store not started")
        return self._db

    async def commit(self, consumer_group: str, partition_id: int, sequence_id: int) -> bool:
        self._check(consumer_group, partition_id, sequence_id)
        db = self._conn()
        cursor = await db.execute(
            f"INSERT INTO {self.table_name} (consumer_group, partition_id, sequence_id) VALUES (?, ?, ?) "
            f"ON CONFLICT (consumer_group, partition_id) DO UPDATE SET sequence_id = excluded.sequence_id "
            f"WHERE excluded.sequence_id > {self.table_name}.sequence_id",
            (consumer_group, partition_id, sequence_id),
        )
        await db.commit()
        return cursor.rowcount > 0

    async def get(self, consumer_group: str, partition_id: int) -> Optional[int]:
        async with self._conn().execute(
            f"SELECT sequence_id FROM {self.table_name} WHERE consumer_group = ? AND partition_id = ?",
            (consumer_group, partition_id),
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else None

    async def reset(self, consumer_group: str, partition_id: int, sequence_id: Optional[int]) -> None:
        self._check(consumer_group, partition_id, sequence_id)
        db = self._conn()
        if sequence_id is None:
            await db.execute(
                f"DELETE FROM {self.table_name} WHERE consumer_group = ? AND partition_id = ?",
                (consumer_group, partition_id),
            )
        else:
            await db.execute(
                f"INSERT OR REPLACE INTO {self.table_name} (consumer_group, partition_id, sequence_id) "
                "VALUES (?, ?, ?)",
                (consumer_group, partition_id, sequence_id),
            )
        await db.commit()
        logger.warning(f"Checkpoint for {consumer_group}/{partition_id} reset to {sequence_id}")

    async def list(self, consumer_group: str) -> Dict[int, int]:
        async with self._conn().execute(
            f"SELECT partition_id, sequence_id FROM {self.table_name} WHERE consumer_group = ?",
            (consumer_group,),
        ) as cursor:
            return {row[0]: row[1] async for row in cursor}


# KEYS[1] = group hash, ARGV[1] = partition, ARGV[2] = sequence id
_COMMIT_SCRIPT = """
local current = redis.call("hget", KEYS[1], ARGV[1])
if current and tonumber(current) >= tonumber(ARGV[2]) then
    return 0
end
redis.call("hset", KEYS[1], ARGV[1], ARGV[2])
return 1
"""


class ValkeyCheckpointStore(CheckpointStore):
    """
    Durable checkpoint store backed by Valkey.
    Structure: HASH {prefix}:{consumer_group} -> {partition} -> {sequence_id}
    Commits run as a Lua script so the compare-and-set is atomic server-side.
    """

    def __init__(self, host: str = 'localhost', port: int = 6379,
                 password: Optional[str] = None, prefix: str = 'streamrelay:checkpoints'):
        self.host = host
        self.port = port
        self.password = password
        self.prefix = prefix
        self.client: Optional[valkey.Valkey] = None

    async def start(self) -> None:
        self.client = valkey.Valkey(host=self.host, port=self.port, password=self.password,
                                    decode_responses=True)
        await self.client.ping()
        logger.info(f"Connected checkpoint store to Valkey at {self.host}:{self.port}")

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None

    def _conn(self) -> valkey.Valkey:
        if not self.client:
            raise InvalidState("Checkpoint store not started")
        return self.client

    def _key(self, consumer_group: str) -> str:
        return f"{self.prefix}:{consumer_group}"

    async def commit(self, consumer_group: str, partition_id: int, sequence_id: int) -> bool:
        self._check(consumer_group, partition_id, sequence_id)
        result = await self._conn().eval(
            _COMMIT_SCRIPT, 1, self._key(consumer_group), str(partition_id), str(sequence_id)
        )
        return bool(result)

    async def get(self, consumer_group: str, partition_id: int) -> Optional[int]:
        val = await self._conn().hget(self._key(consumer_group), str(partition_id))
        return int(val) if val is not None else None

    async def reset(self, consumer_group: str, partition_id: int, sequence_id: Optional[int]) -> None:
        self._check(consumer_group, partition_id, sequence_id)
        if sequence_id is None:
            await self._conn().hdel(self._key(consumer_group), str(partition_id))
        else:
            await self._conn().hset(self._key(consumer_group), str(partition_id), str(sequence_id))
        logger.warning(f"Checkpoint for {consumer_group}/{partition_id} reset to {sequence_id}")

    async def list(self, consumer_group: str) -> Dict[int, int]:
        raw = await self._conn().hgetall(self._key(consumer_group))
        return {int(p): int(seq) for p, seq in raw.items()}
