from __future__ import annotations

"""Abstract base class for job storage.

The pipeline only talks to jobs through this interface, so the in-process
registry can later be swapped for a shared store without touching the
orchestrator.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from ..errors import JobNotFoundError

if TYPE_CHECKING:
    from .models import JobStatus, TranscodeJob


class JobStore(ABC):
    """Keyed store of TranscodeJob records that owns the job state machine.

    Implementations must provide:
    - Snapshot reads: callers never observe a partially-applied update
    - Per-job serialized writes: two updates to the same id never interleave
    - Independent ids: updates to different jobs never block each other
    """

    @abstractmethod
    def create_job(
        self, video_id: str, source_path: str = "", output_dir: str = ""
    ) -> "TranscodeJob":
        """Allocate a new pending job.

        Args:
            video_id: Caller-supplied video identifier
            source_path: Source video path (informational)
            output_dir: Job output directory (may be set later via update_job)

        Returns:
            Snapshot of the created job

        Implementation notes:
        - The job MUST be visible to get_job/list_jobs before this returns
        - Ids MUST be unique for the lifetime of the store
        """
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional["TranscodeJob"]:
        """Return a snapshot of the job, or None if unknown."""
        pass

    def require_job(self, job_id: str) -> "TranscodeJob":
        """Like get_job, but raises JobNotFoundError for unknown ids."""
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    @abstractmethod
    def list_jobs(self, status: Optional["JobStatus"] = None) -> List["TranscodeJob"]:
        """Return snapshots of all jobs, optionally filtered by status.

        Ordering is not part of the contract.
        """
        pass

    @abstractmethod
    def update_job(
        self, job_id: str, mutation: Callable[["TranscodeJob"], None]
    ) -> "TranscodeJob":
        """Atomically apply ``mutation`` to the job and publish the result.

        Args:
            job_id: Job identifier
            mutation: Callable that edits a draft copy in place

        Returns:
            Snapshot of the job after the update

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidTransitionError: If the mutation breaks the state machine

        Implementation notes:
        - A rejected mutation MUST leave the stored job untouched
        - While processing, progress MUST NOT decrease
        """
        pass

    @abstractmethod
    def evict_older_than(self, max_age: timedelta, now: Optional[datetime] = None) -> int:
        """Remove finished jobs whose completed_at is older than ``max_age``.

        Jobs that have not finished are never evicted, however old.

        Returns:
            Number of evicted jobs
        """
        pass

    @abstractmethod
    def stats(self) -> Dict[str, int]:
        """Count jobs per status (plus 'total')."""
        pass
