"""In-memory table of known jobs and the subprocesses currently running them."""
import asyncio
from typing import Dict, List, Optional

from .jobs import JobStatus, MediaJob


class JobRegistry:
    """
    Holds every job of the session (including those reloaded from history)
    and the subprocess handle of each running job.

    The dict preserves insertion order, which breaks `created_at` ties so
    FIFO order is stable.
    """

    def __init__(self):
        self.jobs: Dict[str, MediaJob] = {}
        self.processes: Dict[str, asyncio.subprocess.Process] = {}

    def __len__(self) -> int:
        return len(self.jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self.jobs

    def add(self, job: MediaJob):
        self.jobs[job.id] = job

    def get(self, job_id: str) -> Optional[MediaJob]:
        return self.jobs.get(job_id)

    def replace(self, jobs: Dict[str, MediaJob]):
        """Swaps in a freshly loaded job table. Process handles are kept."""
        self.jobs = dict(jobs)

    def with_status(self, *statuses: JobStatus) -> List[MediaJob]:
        return [job for job in self.jobs.values() if job.status in statuses]

    def running_count(self) -> int:
        return sum(1 for job in self.jobs.values() if job.status is JobStatus.RUNNING)

    def queued_fifo(self) -> List[MediaJob]:
        return sorted(self.with_status(JobStatus.QUEUED), key=lambda job: job.created_at)

    def active_fifo(self) -> List[MediaJob]:
        return sorted(self.with_status(JobStatus.QUEUED, JobStatus.RUNNING), key=lambda job: job.created_at)

    def finished_recent(self, limit: int) -> List[MediaJob]:
        finished = [job for job in self.jobs.values() if job.status.is_terminal]
        finished.sort(key=lambda job: job.completed_at or job.created_at, reverse=True)
        return finished[:limit]

    # --- Process handles ---

    def attach_process(self, job_id: str, process: asyncio.subprocess.Process):
        self.processes[job_id] = process

    def detach_process(self, job_id: str) -> Optional[asyncio.subprocess.Process]:
        return self.processes.pop(job_id, None)

    def get_process(self, job_id: str) -> Optional[asyncio.subprocess.Process]:
        return self.processes.get(job_id)
