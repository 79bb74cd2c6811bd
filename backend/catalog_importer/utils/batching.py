"""Helper functions for chunking record sets into import batches."""
from collections.abc import Sequence
from typing import NamedTuple, TypeVar

T = TypeVar("T")


class BatchRange(NamedTuple):
    number: int  # 1-based
    start: int
    end: int  # exclusive

    @property
    def size(self) -> int:
        return self.end - self.start


def batch_ranges(total: int, size: int) -> list[BatchRange]:
    """Split ``total`` items into fixed-size ranges; the last one may be short.

    >>> [r.size for r in batch_ranges(25, 10)]
    [10, 10, 5]
    """
    if size < 1:
        raise ValueError("Batch size must be at least 1")
    return [
        BatchRange(number, start, min(start + size, total))
        for number, start in enumerate(range(0, total, size), start=1)
    ]


def take(items: Sequence[T], batch: BatchRange) -> Sequence[T]:
    return items[batch.start : batch.end]
