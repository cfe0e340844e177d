"""Pydantic models for transcode job records.

A TranscodeJob is only ever mutated through JobRegistry.update_job, which
hands the mutation a private draft copy. The helper methods below encode the
state machine rules so callers never write raw status strings.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models import VideoMetadata


class JobStatus(str, Enum):
    """Job processing states.

    State transitions:
        pending → processing   (worker picks the job up)
        pending → failed       (cancelled or failed before any encode started)
        processing → completed (every rendition succeeded, master published)
        processing → failed    (any rendition failed, timed out or was cancelled)

    completed and failed are terminal.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def can_transition(from_status: JobStatus, to_status: JobStatus) -> bool:
    """Whether the state machine allows moving from one status to another."""
    if from_status == to_status:
        return True
    return to_status in ALLOWED_TRANSITIONS[from_status]


class TranscodeJob(BaseModel):
    """One source video being packaged into an HLS bundle."""

    id: str = Field(..., description="Unique job identifier (UUID)")
    video_id: str = Field(..., description="Caller-supplied video identifier")
    status: JobStatus = Field(default=JobStatus.PENDING, description="Current job state")
    progress_percent: int = Field(default=0, ge=0, le=100, description="Aggregate progress")
    started_at: datetime = Field(default_factory=datetime.now, description="Submission time")
    completed_at: Optional[datetime] = Field(default=None, description="Terminal state time")
    error_message: Optional[str] = Field(default=None, description="Fatal error, if failed")
    output_paths: List[str] = Field(
        default_factory=list, description="Artifacts in the order they were written"
    )
    source_path: str = Field(default="", description="Source video path")
    output_dir: str = Field(default="", description="Job output directory")
    metadata: VideoMetadata = Field(default_factory=VideoMetadata)

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    def mark_processing(self) -> None:
        self.status = JobStatus.PROCESSING

    def record_progress(self, percent: int) -> None:
        """Raise progress to ``percent``; never lowers it, ignored unless processing.

        Capped at 99: only mark_completed reports 100.
        """
        if self.status != JobStatus.PROCESSING:
            return
        self.progress_percent = max(self.progress_percent, min(99, max(0, int(percent))))

    def add_output(self, path: str) -> None:
        if path not in self.output_paths:
            self.output_paths.append(path)

    def mark_completed(self, master_playlist_path: str) -> None:
        self.add_output(master_playlist_path)
        self.status = JobStatus.COMPLETED
        self.progress_percent = 100
        self.completed_at = datetime.now()

    def mark_failed(self, error: str) -> None:
        self.status = JobStatus.FAILED
        self.error_message = error or "Unknown error"
        self.completed_at = datetime.now()

    def to_summary(self) -> Dict[str, Any]:
        """Status view consumed by the upload/API layer."""
        result = {
            "id": self.id,
            "videoId": self.video_id,
            "status": self.status.value,
            "progressPercent": self.progress_percent,
            "outputPaths": list(self.output_paths),
            "startedAt": self.started_at.isoformat(),
            "metadata": self.metadata.model_dump(),
        }
        if self.completed_at:
            result["completedAt"] = self.completed_at.isoformat()
        if self.error_message:
            result["errorMessage"] = self.error_message
        return result
