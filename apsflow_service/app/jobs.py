"""
In-memory registry of background workitem jobs.

Jobs live only as long as the process. Finished jobs beyond ``max_jobs`` are
dropped oldest first; running jobs are never evicted.
"""

import threading
from collections import OrderedDict
from typing import Any, Dict, List

from apsflow import NotFoundError, WorkitemJob


class JobRegistry:

    def __init__(self, max_jobs: int = 100):
        self._max = max(1, max_jobs)
        self._jobs: "OrderedDict[str, WorkitemJob]" = OrderedDict()
        self._lock = threading.Lock()

    def add(self, job: WorkitemJob) -> WorkitemJob:
        with self._lock:
            self._jobs[job.job_id] = job
            self._evict()
        return job

    def _evict(self) -> None:
        excess = len(self._jobs) - self._max
        if excess <= 0:
            return
        for job_id in [jid for jid, j in self._jobs.items() if j.done][:excess]:
            del self._jobs[job_id]

    def get(self, job_id: str) -> WorkitemJob:
        """
        Raises:
            NotFoundError: unknown or evicted job id
        """
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job '{job_id}' not found", status_code=404)
        return job

    def cancel(self, job_id: str) -> WorkitemJob:
        """Stop watching the job's workitem. The remote workitem keeps running."""
        job = self.get(job_id)
        job.cancel()
        return job

    def snapshots(self) -> List[Dict[str, Any]]:
        with self._lock:
            jobs = list(self._jobs.values())
        return [j.snapshot() for j in jobs]

    def clear(self) -> None:
        """Cancel and forget every job."""
        with self._lock:
            jobs = list(self._jobs.values())
            self._jobs.clear()
        for job in jobs:
            job.cancel()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
