"""Job records, state machine and the in-process job registry."""

from .backends import JobStore
from .models import ALLOWED_TRANSITIONS, JobStatus, TranscodeJob, can_transition
from .registry import JobRegistry

__all__ = [
    "JobStore",
    "JobStatus",
    "TranscodeJob",
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "JobRegistry",
]
