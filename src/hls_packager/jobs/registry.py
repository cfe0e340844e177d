"""In-process job registry with per-job locking.

Concurrency model:
- ``_map_lock`` guards the dictionaries themselves and is only held for
  lookups, inserts and deletes (never while a mutation runs)
- each job has its own lock; update_job holds it while the mutation runs
  against a private draft copy
- published jobs are never mutated again (copy-on-write), so readers can
  take a reference under the map lock and copy it outside any job lock
"""

import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..errors import InvalidTransitionError, JobNotFoundError
from .backends import JobStore
from .models import JobStatus, TranscodeJob, can_transition

logger = logging.getLogger(__name__)


class JobRegistry(JobStore):
    """Thread-safe keyed store of TranscodeJob records.

    Example:
        >>> registry = JobRegistry()
        >>> job = registry.create_job("video-123")
        >>> registry.update_job(job.id, lambda j: j.mark_processing())
        >>> registry.get_job(job.id).status
        <JobStatus.PROCESSING: 'processing'>
    """

    def __init__(self):
        self._jobs: Dict[str, TranscodeJob] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._map_lock = threading.Lock()

    def create_job(
        self, video_id: str, source_path: str = "", output_dir: str = ""
    ) -> TranscodeJob:
        with self._map_lock:
            job_id = str(uuid.uuid4())
            while job_id in self._jobs:
                job_id = str(uuid.uuid4())

            job = TranscodeJob(
                id=job_id,
                video_id=video_id,
                source_path=source_path,
                output_dir=output_dir,
            )
            self._jobs[job_id] = job
            self._locks[job_id] = threading.Lock()

        logger.debug("Created job %s for video %s", job_id, video_id)
        return job.model_copy(deep=True)

    def get_job(self, job_id: str) -> Optional[TranscodeJob]:
        with self._map_lock:
            job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job is not None else None

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[TranscodeJob]:
        with self._map_lock:
            jobs = list(self._jobs.values())
        if status is not None:
            jobs = [job for job in jobs if job.status == status]
        return [job.model_copy(deep=True) for job in jobs]

    def update_job(
        self, job_id: str, mutation: Callable[[TranscodeJob], None]
    ) -> TranscodeJob:
        with self._map_lock:
            lock = self._locks.get(job_id)
        if lock is None:
            raise JobNotFoundError(job_id)

        with lock:
            with self._map_lock:
                current = self._jobs.get(job_id)
            if current is None:
                # Evicted between the lock lookup and acquiring it
                raise JobNotFoundError(job_id)

            draft = current.model_copy(deep=True)
            mutation(draft)
            self._validate(current, draft)

            with self._map_lock:
                if job_id not in self._jobs:
                    raise JobNotFoundError(job_id)
                self._jobs[job_id] = draft

            if draft.status != current.status:
                logger.debug(
                    "Job %s: %s -> %s", job_id, current.status.value, draft.status.value
                )

        return draft.model_copy(deep=True)

    def evict_older_than(self, max_age: timedelta, now: Optional[datetime] = None) -> int:
        cutoff = (now or datetime.now()) - max_age

        with self._map_lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.completed_at is not None and job.completed_at < cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]
                del self._locks[job_id]

        for job_id in expired:
            logger.debug("Evicted finished job %s", job_id)
        if expired:
            logger.info("Evicted %d job(s) finished before %s", len(expired), cutoff.isoformat())
        return len(expired)

    def stats(self) -> Dict[str, int]:
        with self._map_lock:
            statuses = [job.status for job in self._jobs.values()]

        counts = {status.value: 0 for status in JobStatus}
        for status in statuses:
            counts[status.value] += 1
        counts["total"] = len(statuses)
        return counts

    @staticmethod
    def _validate(current: TranscodeJob, draft: TranscodeJob) -> None:
        """Reject state-machine violations and enforce progress monotonicity."""
        if draft.id != current.id:
            raise ValueError(f"Job id is immutable ({current.id} -> {draft.id})")

        if not can_transition(current.status, draft.status):
            raise InvalidTransitionError(current.id, current.status.value, draft.status.value)

        if current.status == JobStatus.PROCESSING and draft.status == JobStatus.PROCESSING:
            if draft.progress_percent < current.progress_percent:
                draft.progress_percent = current.progress_percent

        if draft.status == JobStatus.COMPLETED:
            draft.progress_percent = 100
