"""Packaging service facade used by the upload/API layer and the CLI.

Wraps a RenditionOrchestrator and its registry behind plain-dict results and
runs the periodic eviction of finished jobs on a background thread.
"""

import logging
import os
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional

from .jobs import JobRegistry, JobStatus, JobStore
from .models import PackagerConfig
from .orchestrator import RenditionOrchestrator

logger = logging.getLogger(__name__)


class PackagingService:
    """Submit videos, poll job status and evict old jobs.

    Example:
        >>> with PackagingService(config) as service:
        ...     job_id = service.submit("upload.mp4", "video-42")
        ...     service.get_job(job_id)["status"]
        'pending'
    """

    def __init__(
        self,
        config: Optional[PackagerConfig] = None,
        registry: Optional[JobStore] = None,
        orchestrator: Optional[RenditionOrchestrator] = None,
    ):
        self.config = config or PackagerConfig()
        if orchestrator is not None:
            self.orchestrator = orchestrator
            self.registry = orchestrator.registry
        else:
            self.registry = registry if registry is not None else JobRegistry()
            self.orchestrator = RenditionOrchestrator(self.registry, config=self.config)

        self._cleanup_thread: Optional[threading.Thread] = None
        self._stop_cleanup = threading.Event()

    def submit(self, source_path: str, video_id: str) -> str:
        """Queue ``source_path`` for packaging and return the job id.

        Raises:
            FileNotFoundError: If the source does not exist
            ValueError: If video_id is not usable as a directory name
        """
        if not os.path.isfile(source_path):
            raise FileNotFoundError(f"Source video not found: {source_path}")
        return self.orchestrator.submit(source_path, video_id)

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self.registry.get_job(job_id)
        return job.to_summary() if job is not None else None

    def list_jobs(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        status_filter = JobStatus(status) if status else None
        jobs = self.registry.list_jobs(status_filter)
        jobs.sort(key=lambda job: job.started_at)
        return [job.to_summary() for job in jobs]

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        return self.orchestrator.wait(job_id, timeout=timeout).to_summary()

    def cancel(self, job_id: str) -> bool:
        return self.orchestrator.cancel(job_id)

    def cleanup(self, max_age_hours: float = 24) -> int:
        """Evict jobs that finished more than ``max_age_hours`` ago."""
        return self.registry.evict_older_than(timedelta(hours=max_age_hours))

    def stats(self) -> Dict[str, int]:
        return self.registry.stats()

    def start(self) -> None:
        """Start the periodic eviction thread (idempotent)."""
        if self._cleanup_thread is None or not self._cleanup_thread.is_alive():
            self._stop_cleanup.clear()
            self._cleanup_thread = threading.Thread(
                target=self._cleanup_loop,
                daemon=True,
                name="hls-job-cleanup",
            )
            self._cleanup_thread.start()
            logger.info(
                "Job cleanup every %ss (retention %sh)",
                self.config.jobs.cleanup_interval_s,
                self.config.jobs.retention_hours,
            )

    def stop(self, wait: bool = True) -> None:
        """Stop the eviction thread and shut the orchestrator down."""
        self._stop_cleanup.set()
        if self._cleanup_thread:
            self._cleanup_thread.join(timeout=5)
            self._cleanup_thread = None
        self.orchestrator.shutdown(wait=wait)

    def _cleanup_loop(self) -> None:
        while not self._stop_cleanup.wait(self.config.jobs.cleanup_interval_s):
            try:
                self.cleanup(self.config.jobs.retention_hours)
            except Exception:
                logger.exception("Error in job cleanup loop")

    def __enter__(self) -> "PackagingService":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
