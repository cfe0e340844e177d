"""Exception taxonomy for the packaging pipeline.

Fatal vs. non-fatal is decided by the orchestrator, not here:
- MetadataExtractionError, ThumbnailError: logged and swallowed
- EncodeError (and EncodeTimeoutError): fail the enclosing job
- JobNotFoundError: surfaced as a not-found result at the service layer
"""

from typing import Optional


class PackagerError(Exception):
    """Base class for all packaging pipeline errors."""


class MetadataExtractionError(PackagerError):
    """ffprobe failed or produced output we could not interpret."""


class EncodeError(PackagerError):
    """A single rendition failed to encode.

    Args:
        rendition: Name of the rendition that failed (e.g. "360p")
        message: Human-readable failure reason
        error_type: Optional FfmpegErrorType classification
    """

    def __init__(self, rendition: str, message: str, error_type: Optional[object] = None):
        self.rendition = rendition
        self.message = message
        self.error_type = error_type
        super().__init__(f"{rendition}: {message}")


class EncodeTimeoutError(EncodeError):
    """Rendition exceeded its deadline, stalled, or was cancelled."""


class ThumbnailError(PackagerError):
    """Frame extraction failed."""


class JobNotFoundError(PackagerError, KeyError):
    """No job with the given id exists in the registry."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")

    def __str__(self) -> str:
        return f"Job not found: {self.job_id}"


class InvalidTransitionError(PackagerError):
    """Attempted a job status change the state machine does not allow."""

    def __init__(self, job_id: str, from_status: str, to_status: str):
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Job {job_id}: illegal transition {from_status} -> {to_status}"
        )
