from __future__ import annotations

import hashlib


def stable_hash_int(value: str) -> int:
    """Positive integer from the first 8 bytes of the SHA-256 of ``value``.

    Unlike ``hash()``, the result does not change between interpreter runs,
    so the same key always lands in the same reduce partition.
    """
    digest = hashlib.sha256(value.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], byteorder="big")


def partition_for(key: str, num_partitions: int) -> int:
    if num_partitions < 1:
        raise ValueError("num_partitions must be at least 1")
    return stable_hash_int(key) % num_partitions
