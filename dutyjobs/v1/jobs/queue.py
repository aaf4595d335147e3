"""
Priority ready queue for pending jobs.
"""

import heapq
import itertools
from datetime import datetime

from dutyjobs.v1.jobs.schemas import Job


class ReadyQueue:
    """
    Pending jobs ordered by (priority descending, created ascending).

    Jobs whose ``run_at`` lies in the future wait in a separate heap until
    their backoff elapses. Removal is lazy: superseded heap entries are
    skipped when popped.

    There is no aging across priority tiers, so a steady stream of urgent
    jobs can starve low priority ones.
    """

    def __init__(self):
        self._ready: list[tuple[int, datetime, int, str]] = []
        self._delayed: list[tuple[datetime, int, int, datetime, str]] = []
        # job_id -> (sequence of the live entry, waiting on backoff)
        self._entries: dict[str, tuple[int, bool]] = {}
        self._sequence = itertools.count()

    def push(self, job: Job, now: datetime) -> None:
        """Add or reposition a pending job."""
        seq = next(self._sequence)
        rank = job.priority.rank
        created = job.timestamps.created

        if job.run_at is not None and job.run_at > now:
            heapq.heappush(self._delayed, (job.run_at, seq, rank, created, job.id))
            self._entries[job.id] = (seq, True)
        else:
            heapq.heappush(self._ready, (-rank, created, seq, job.id))
            self._entries[job.id] = (seq, False)

    def discard(self, job_id: str) -> bool:
        return self._entries.pop(job_id, None) is not None

    def pop(self, now: datetime) -> str | None:
        """Remove and return the best eligible job id, or None."""
        self._promote(now)

        while self._ready:
            _, _, seq, job_id = heapq.heappop(self._ready)
            if self._entries.get(job_id) == (seq, False):
                del self._entries[job_id]
                return job_id

        return None

    def next_due_in(self, now: datetime) -> float | None:
        """Seconds until the earliest delayed job becomes eligible."""
        while self._delayed:
            run_at, seq, _, _, job_id = self._delayed[0]
            if self._entries.get(job_id) == (seq, True):
                return max(0.0, (run_at - now).total_seconds())
            heapq.heappop(self._delayed)
        return None

    @property
    def ready_count(self) -> int:
        return sum(1 for _, delayed in self._entries.values() if not delayed)

    @property
    def delayed_count(self) -> int:
        return sum(1 for _, delayed in self._entries.values() if delayed)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def _promote(self, now: datetime) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, seq, rank, created, job_id = heapq.heappop(self._delayed)
            if self._entries.get(job_id) != (seq, True):
                continue
            heapq.heappush(self._ready, (-rank, created, seq, job_id))
            self._entries[job_id] = (seq, False)
