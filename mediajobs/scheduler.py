"""Concurrency cap and FIFO promotion policy for queued jobs."""
from typing import List

from .constants import MAX_CONCURRENT_JOBS
from .jobs import MediaJob
from .registry import JobRegistry


class Scheduler:
    """Decides which queued jobs may start, given the jobs already running."""

    def __init__(self, max_concurrent: int = MAX_CONCURRENT_JOBS):
        self.set_max_concurrent(max_concurrent)

    def set_max_concurrent(self, max_concurrent: int):
        # Lowering the cap never stops running jobs; it only delays promotions.
        self.max_concurrent = max(1, int(max_concurrent))

    def available_slots(self, registry: JobRegistry) -> int:
        return self.max_concurrent - registry.running_count()

    def select_next(self, registry: JobRegistry) -> List[MediaJob]:
        """The oldest queued jobs that fit in the free slots, oldest first."""
        available = self.available_slots(registry)
        if available <= 0:
            return []
        return registry.queued_fifo()[:available]
