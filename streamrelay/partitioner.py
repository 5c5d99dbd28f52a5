import hashlib

from streamrelay.errors import InvalidArgument


def assign(key: str, partition_count: int) -> int:
    """
    Map a partition key onto a partition id in [0, partition_count).

    The key is hashed with MD5 and read as a 128-bit unsigned integer, the
    same way managed streams map keys onto shard hash ranges. Unlike the
    builtin `hash()`, the result is stable across processes.
    """
    if not isinstance(key, str):
        raise InvalidArgument(f"Partition key must be a string, got {type(key).__name__}")
    if isinstance(partition_count, bool) or not isinstance(partition_count, int) or partition_count <= 0:
        raise InvalidArgument(f"Partition count must be a positive integer, got {partition_count!r}")
    digest = hashlib.md5(key.encode("utf-8")).digest()
    return int.from_bytes(digest, "big") % partition_count


class Partitioner:
    """Binds `assign` to a fixed partition count."""

    def __init__(self, partition_count: int):
        if partition_count <= 0:
            raise InvalidArgument(f"Partition count must be a positive integer, got {partition_count!r}")
        self.partition_count = partition_count

    def __call__(self, key: str) -> int:
        return assign(key, self.partition_count)
