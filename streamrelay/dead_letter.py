import asyncio
import os
from abc import ABC, abstractmethod
from typing import List, Optional

import aiofiles
import valkey.asyncio as valkey

from streamrelay.errors import InvalidState
from streamrelay.models import DeadLetterEntry


class DeadLetterSink(ABC):
    """Append-only destination for batches whose handler retries ran out."""

    @abstractmethod
    async def put(self, entry: DeadLetterEntry) -> None:
        pass

    @abstractmethod
    async def list(self, limit: Optional[int] = None) -> List[DeadLetterEntry]:
        """Oldest first."""
        pass

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass


class InMemoryDeadLetterSink(DeadLetterSink):
    def __init__(self) -> None:
        self.entries: List[DeadLetterEntry] = []

    async def put(self, entry: DeadLetterEntry) -> None:
        self.entries.append(entry)

    async def list(self, limit: Optional[int] = None) -> List[DeadLetterEntry]:
        return list(self.entries[:limit])


class FileDeadLetterSink(DeadLetterSink):
    """
    Appends one JSON document per line to a local file.
    """
    def __init__(self, path: str):
        self.path = path
        self._lock = asyncio.Lock()
        dirname = os.path.dirname(self.path)
        if dirname:
            os.makedirs(dirname, exist_ok=True)

    async def put(self, entry: DeadLetterEntry) -> None:
        line = entry.model_dump_json() + "\n"
        async with self._lock:
            async with aiofiles.open(self.path, mode='a') as f:
                await f.write(line)

    async def list(self, limit: Optional[int] = None) -> List[DeadLetterEntry]:
        if not os.path.exists(self.path):
            return []
        entries = []
        async with aiofiles.open(self.path, mode='r') as f:
            async for line in f:
                if limit is not None and len(entries) >= limit:
                    break
                if line.strip():
                    entries.append(DeadLetterEntry.model_validate_json(line))
        return entries


class ValkeyDeadLetterSink(DeadLetterSink):
    """
    Saves failed batches to a Valkey list for later inspection.
    """
    def __init__(self, host: str = "localhost", port: int = 6379,
                 password: Optional[str] = None, queue_key: str = "streamrelay:dlq"):
        self.host = host
        self.port = port
        self.password = password
        self.queue_key = queue_key
        self.client: Optional[valkey.Valkey] = None

    async def start(self) -> None:
        self.client = valkey.Valkey(host=self.host, port=self.port, password=self.password,
                                    decode_responses=True)
        await self.client.ping()

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None

    def _conn(self) -> valkey.Valkey:
        if not self.client:
            raise InvalidState("Dead-letter sink not started")
        return self.client

    async def put(self, entry: DeadLetterEntry) -> None:
        await self._conn().rpush(self.queue_key, entry.model_dump_json())

    async def list(self, limit: Optional[int] = None) -> List[DeadLetterEntry]:
        end = -1 if limit is None else limit - 1
        raw = await self._conn().lrange(self.queue_key, 0, end)
        return [DeadLetterEntry.model_validate_json(item) for item in raw]
