"""Stable user partitioning across engine workers."""

import hashlib


def partition_for(user_id: str, worker_count: int) -> int:
    """Worker index (0..worker_count-1) responsible for user_id."""
    if worker_count < 1:
        raise ValueError("worker_count must be at least 1")
    if worker_count == 1:
        return 0
    digest = hashlib.sha256(user_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % worker_count


def owns(user_id: str, worker_index: int, worker_count: int) -> bool:
    """Whether the worker at worker_index handles user_id."""
    return partition_for(user_id, worker_count) == worker_index
