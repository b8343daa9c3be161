"""Grouping of content records into insertion batches."""

import math
from dataclasses import dataclass
from typing import List, Sequence

from ..core.config import settings
from ..core.logging import logger
from ..models.record import ContentRecord


@dataclass
class Batch:
    """Non-empty, ordered group of records; lives for one attempt and its retries."""

    index: int
    records: List[ContentRecord]

    @property
    def size(self) -> int:
        return len(self.records)

    @property
    def size_bytes(self) -> int:
        return sum(r.size_bytes for r in self.records)


def partition_fixed(records: Sequence[ContentRecord], batch_size: int) -> List[Batch]:
    """Consecutive groups of ``batch_size``; the last one may be shorter."""
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    return [
        Batch(index=i, records=list(records[start:start + batch_size]))
        for i, start in enumerate(range(0, len(records), batch_size))
    ]


def take_by_bytes(records: Sequence[ContentRecord], start: int, max_count: int, max_bytes: int) -> int:
    """
    Greedy cut starting at ``start``.

    Returns the exclusive end index of the next batch: at most ``max_count``
    records whose summed ``size_bytes`` stays within ``max_bytes``. A record
    that alone exceeds the budget is returned as a batch of one.
    """
    end = start
    total = 0
    while end < len(records) and end - start < max_count:
        size = records[end].size_bytes
        if end > start and total + size > max_bytes:
            break
        total += size
        end += 1
        if total > max_bytes:
            # oversized record, isolate it
            break
    return end


def partition_content_aware(records: Sequence[ContentRecord], max_bytes: int) -> List[Batch]:
    """Greedy accumulation under a byte budget."""
    if max_bytes < 1:
        raise ValueError("max_bytes must be >= 1")
    batches: List[Batch] = []
    position = 0
    while position < len(records):
        end = take_by_bytes(records, position, len(records), max_bytes)
        batches.append(Batch(index=len(batches), records=list(records[position:end])))
        position = end
    return batches


class AdaptiveBatchSizer:
    """
    Tunes the next batch size from the latency and outcome of the last one.

    Shrinks when a batch was slow, needed retries or failed; grows when it
    was fast and clean; otherwise holds steady.
    """

    def __init__(
        self,
        initial_size: int = settings.ADAPTIVE_INITIAL_BATCH_SIZE,
        min_size: int = settings.ADAPTIVE_MIN_BATCH_SIZE,
        max_size: int = settings.ADAPTIVE_MAX_BATCH_SIZE,
        target_latency_ms: float = settings.ADAPTIVE_TARGET_LATENCY_MS,
        slow_latency_ms: float = settings.ADAPTIVE_SLOW_LATENCY_MS,
        growth_factor: float = settings.ADAPTIVE_GROWTH_FACTOR,
        shrink_factor: float = settings.ADAPTIVE_SHRINK_FACTOR,
    ):
        if not 1 <= min_size <= max_size:
            raise ValueError("Adaptive batch bounds must satisfy 1 <= min_size <= max_size")
        self.min_size = min_size
        self.max_size = max_size
        self.target_latency_ms = target_latency_ms
        self.slow_latency_ms = slow_latency_ms
        self.growth_factor = growth_factor
        self.shrink_factor = shrink_factor
        self.current_size = min(max_size, max(min_size, initial_size))

    def observe(self, latency_ms: float, retried: bool = False, failed: bool = False) -> int:
        """Feed one batch outcome; returns the size for the next batch."""
        previous = self.current_size
        if failed or retried or latency_ms > self.slow_latency_ms:
            self.current_size = max(self.min_size, math.floor(self.current_size * self.shrink_factor + 1e-9))
        elif latency_ms < self.target_latency_ms:
            self.current_size = min(self.max_size, math.ceil(self.current_size * self.growth_factor - 1e-9))

        if self.current_size != previous:
            logger.debug(
                f"Adaptive batch size {previous} -> {self.current_size} "
                f"(latency={latency_ms:.0f}ms, retried={retried}, failed={failed})"
            )
        return self.current_size
